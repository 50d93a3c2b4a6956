from __future__ import annotations

import pytest

from delivery_pipeline.domain import ids


def test_generate_ulid_is_deterministic_with_injected_inputs() -> None:
    value = ids.generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=lambda size: b"\x00" * size)

    assert len(value) == ids.ULID_LENGTH
    assert set(value) <= set(ids.ULID_ALPHABET)
    assert value.endswith("0" * 16)
    assert ids.ulid_timestamp_ms(value) == 1_700_000_000_000
    assert value == ids.generate_ulid(
        timestamp_ms=1_700_000_000_000, randbytes=lambda size: b"\x00" * size
    )


def test_ulids_sort_by_time() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000)
    later = ids.generate_ulid(timestamp_ms=2_000)

    assert earlier < later


def test_largest_ulid_round_trips() -> None:
    value = ids.generate_ulid(timestamp_ms=(1 << 48) - 1, randbytes=lambda size: b"\xff" * size)

    assert value == "7" + "Z" * 25
    ids.validate_ulid(value.lower())


@pytest.mark.parametrize(
    "bad",
    ["", "0" * 25, "0" * 27, "I" * 26, "8" + "0" * 25],
)
def test_validate_ulid_rejects_bad_values(bad: str) -> None:
    with pytest.raises(ValueError):
        ids.validate_ulid(bad)


@pytest.mark.parametrize("timestamp_ms", [-1, 1 << 48, True])
def test_timestamp_range_is_enforced(timestamp_ms: int) -> None:
    with pytest.raises(ValueError, match="timestamp_ms"):
        ids.generate_ulid(timestamp_ms=timestamp_ms)


def test_run_and_event_ids() -> None:
    run_id = ids.generate_run_id()
    event_id = ids.generate_event_id()

    assert run_id.startswith("run-")
    assert event_id.startswith("evt-")
    ids.validate_run_id(run_id)
    ids.validate_event_id(event_id)
    with pytest.raises(ValueError, match="expected a run-<ulid> id"):
        ids.validate_run_id(event_id)
    with pytest.raises(ValueError, match="ULID"):
        ids.check_id(ids.IdKind.RUN, "run-not-a-ulid")


def test_new_id_embeds_timestamp() -> None:
    run_id = ids.new_id(ids.IdKind.RUN, timestamp_ms=42)

    assert ids.ulid_timestamp_ms(run_id.removeprefix("run-")) == 42


def test_randbytes_length_is_enforced() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x01")


@pytest.mark.parametrize("name", ["intake", "manual-verify", "fix_2", "a"])
def test_stage_names_accepted(name: str) -> None:
    ids.validate_stage_name(name)


@pytest.mark.parametrize("name", ["", "Intake", "2fast", "has space", "x" * 65, "build@v1"])
def test_stage_names_rejected(name: str) -> None:
    with pytest.raises(ValueError):
        ids.validate_stage_name(name)
