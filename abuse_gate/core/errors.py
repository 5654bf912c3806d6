"""
abuse_gate/core/errors.py — Error taxonomy of the admission gate
None of these ever reaches a protected worker: the engine converts them
into verdicts, and admin operations into AdminResult.
Malformed stored records are not an error at all: the record adapter
returns them as absent.
"""
from __future__ import annotations


class AbuseGateError(Exception):
    """Base class for all gate errors."""


class StoreError(AbuseGateError):
    """A read, write or delete against the durable store failed (store unavailable)."""

    def __init__(self, operation: str, key: str, message: str = "") -> None:
        self.operation = operation
        self.key = key
        super().__init__(message or f"store {operation} failed for {key!r}")


class ConfigUnavailable(AbuseGateError):
    """The configuration resolver could not produce a config."""


class ConfigValidationError(AbuseGateError):
    """A proposed rate-limit config violates ordering rules."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("; ".join(errors))
