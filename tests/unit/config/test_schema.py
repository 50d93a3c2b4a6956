from __future__ import annotations

import pytest

from delivery_pipeline.config import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    is_sensitive_key,
    merge_config,
    redact_config,
    validate_config,
)


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_defaults_are_valid() -> None:
    config = assert_valid_config(default_config())

    assert config["pipeline"]["max_review_attempts"] == 3
    assert config["pipeline"]["gate_timeout_seconds"] is None
    assert config["subagents"]["module"] is None
    assert sorted(config["profiles"]) == sorted(BUILTIN_PROFILE_NAMES)


def test_default_config_is_a_copy() -> None:
    first = default_config()
    first["pipeline"]["max_review_attempts"] = 99

    assert default_config()["pipeline"]["max_review_attempts"] == 3


def test_unknown_and_secret_fields_are_reported() -> None:
    config = merge_config(
        default_config(), {"pipeline": {"retries": 2}, "subagents": {"api_key": "sk-live"}}
    )

    result = validate_config(config)

    assert not result.is_valid
    messages = {issue.path: issue.message for issue in result.issues}
    assert messages["pipeline.retries"] == "unknown field"
    assert messages["subagents.api_key"] == "embedded secret values are forbidden in config files"


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"pipeline": {"max_review_attempts": 0}}, "pipeline.max_review_attempts"),
        ({"pipeline": {"subagent_timeout_seconds": -1}}, "pipeline.subagent_timeout_seconds"),
        ({"pipeline": {"gate_timeout_seconds": "soon"}}, "pipeline.gate_timeout_seconds"),
        ({"subagents": {"module": "not a module"}}, "subagents.module"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"observability": {"log_format": "xml"}}, "observability.log_format"),
        ({"observability": {"redact_secrets": "yes"}}, "observability.redact_secrets"),
        ({"meta": {"schema_version": 2}}, "meta.schema_version"),
    ],
)
def test_invalid_values_are_located(overlay: dict[str, object], path: str) -> None:
    assert path in _issue_paths(merge_config(default_config(), overlay))


def test_missing_sections_are_reported() -> None:
    config = default_config()
    del config["paths"]  # type: ignore[misc]

    assert _issue_paths(config) == ["paths"]


def test_validation_error_lists_every_issue() -> None:
    config = merge_config(
        default_config(),
        {"pipeline": {"max_review_attempts": 0}, "observability": {"log_level": "TRACE"}},
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert len(excinfo.value.issues) == 2
    assert "- pipeline.max_review_attempts:" in str(excinfo.value)


def test_profile_overlay_applies_on_top() -> None:
    config = apply_profile_overlay(default_config(), "exploration")

    assert config["pipeline"]["max_review_attempts"] == 5
    assert config["pipeline"]["subagent_timeout_seconds"] == 900.0
    assert config["observability"]["log_level"] == "DEBUG"
    assert config["observability"]["log_format"] == "json"


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'turbo' is not defined"):
        apply_profile_overlay(default_config(), "turbo")


def test_redaction_hides_secret_looking_keys() -> None:
    redacted = redact_config(
        {"subagents": {"module": "team.agents", "auth_token": "abc"}, "password": "hunter2"}
    )

    assert redacted == {
        "password": "<redacted>",
        "subagents": {"auth_token": "<redacted>", "module": "team.agents"},
    }
    assert redact_config("not a mapping") == {}


@pytest.mark.parametrize(
    ("key", "sensitive"),
    [
        ("authToken", True),
        ("client-secret", True),
        ("db_password", True),
        ("token_env", False),
        ("redact_secrets", False),
        ("max_review_attempts", False),
    ],
)
def test_sensitive_key_detection(key: str, sensitive: bool) -> None:
    assert is_sensitive_key(key) is sensitive


def test_profile_overlay_values_are_checked() -> None:
    config = merge_config(
        default_config(), {"profiles": {"slow": {"pipeline": {"subagent_timeout_seconds": 0}}}}
    )

    assert _issue_paths(config) == ["profiles.slow.pipeline.subagent_timeout_seconds"]
