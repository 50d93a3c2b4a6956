"""Subprocess-level tests for the delivery-pipeline command."""
