"""
abuse_gate/utils/validators.py — Config validation and safe record parsing
Stored records are never trusted: a record that fails to parse is treated
as absent, and a rate-limit config must satisfy its ordering rules before
the engine will use it.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

# Warn (do not reject) above these values
HIGH_HOURLY_LIMIT = 100
HIGH_SOFT_THRESHOLD = 5


def safe_parse_json(text: Optional[str]) -> Optional[dict[str, Any]]:
    """
    Safely parse a JSON object. Returns None on failure (no exception raised).
    Non-object JSON (lists, numbers) is also rejected.
    """
    if text is None:
        return None
    text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.debug(f"JSON parse failed: {exc} | Text: {text[:200]!r}")
        return None
    if not isinstance(data, dict):
        logger.debug(f"Expected JSON object, got {type(data).__name__}")
        return None
    return data


def parse_model_safe(
    model_class: Type[T],
    data: Optional[dict[str, Any]],
    context: str = "",
) -> Optional[T]:
    """
    Parse and validate a dict into a Pydantic model. Returns None on validation failure.
    Logs the validation errors for debugging.
    """
    if data is None:
        return None
    try:
        return model_class.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            f"Malformed stored record for {model_class.__name__} "
            f"(context: {context}): {exc.error_count()} error(s)"
        )
        return None
    except (TypeError, ValueError) as exc:
        logger.warning(f"Unexpected parse error for {model_class.__name__}: {exc}")
        return None


def parse_int_safe(value: Optional[str], default: int = 0) -> int:
    """Parse a stored counter. Missing or garbage values count as `default`."""
    if value is None:
        return default
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning(f"Malformed counter value {value!r}; treating as {default}")
        return default
    return max(parsed, 0)


# ──────────────────────────────────────────────────────────────────────────────
# Rate-limit config validation
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def validate_config(payload: dict[str, Any]) -> ValidationReport:
    """
    Check a flat rate-limit config payload.
    Errors: hourly >= 1 and hourly <= daily <= weekly <= monthly;
    soft < hard < ban when thresholds are present.
    Warnings: very high hourly limit, lax soft threshold.
    """
    errors: list[str] = []
    warnings: list[str] = []

    hourly = _as_int(payload.get("hourly_limit"))
    daily = _as_int(payload.get("daily_limit"))
    weekly = _as_int(payload.get("weekly_limit"))
    monthly = _as_int(payload.get("monthly_limit"))

    if hourly is None or hourly < 1:
        errors.append("Hourly limit must be at least 1")
    if daily is None or (hourly is not None and daily < hourly):
        errors.append("Daily limit must be greater than or equal to hourly limit")
    if weekly is None or (daily is not None and weekly < daily):
        errors.append("Weekly limit must be greater than or equal to daily limit")
    if monthly is None or (weekly is not None and monthly < weekly):
        errors.append("Monthly limit must be greater than or equal to weekly limit")

    thresholds = payload.get("violation_thresholds")
    if thresholds is not None:
        if not isinstance(thresholds, dict):
            errors.append("Violation thresholds must be an object")
        else:
            soft = _as_int(thresholds.get("soft"))
            hard = _as_int(thresholds.get("hard"))
            ban = _as_int(thresholds.get("ban"))
            if soft is None or hard is None or ban is None:
                errors.append("Violation thresholds need integer soft, hard and ban")
            else:
                if soft < 1:
                    errors.append("Soft violation threshold must be at least 1")
                if soft >= hard:
                    errors.append("Soft violation threshold must be less than hard threshold")
                if hard >= ban:
                    errors.append("Hard violation threshold must be less than ban threshold")
                if soft > HIGH_SOFT_THRESHOLD:
                    warnings.append(
                        "High soft violation threshold may not effectively prevent abuse"
                    )

    if hourly is not None and hourly > HIGH_HOURLY_LIMIT:
        warnings.append("High hourly limit may impact AI costs")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)
