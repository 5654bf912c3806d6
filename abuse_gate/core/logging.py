"""
abuse_gate/core/logging.py — loguru structured JSON logging setup
Every decision, violation, penalty, flush and config change is emitted as a
JSON record {timestamp, component, operation, ...} on stdout.
"""
from __future__ import annotations

import json
import sys
import traceback
from typing import Any, Optional

from loguru import logger

from abuse_gate.utils.timezone import utc_now


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure loguru for structured JSON output to stdout.
    """
    # Remove default loguru handler
    logger.remove()

    logger.add(
        sys.stdout,
        level=log_level.upper(),
        format="{message}",
        serialize=True,       # loguru built-in JSON serialization
        backtrace=True,
        diagnose=False,       # Disable in production for safety
        colorize=False,
    )


def _build_log_record(
    component: str,
    operation: str,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build a base structured log record."""
    record: dict[str, Any] = {
        "timestamp": utc_now().isoformat().replace("+00:00", "Z"),
        "component": component,
        "operation": operation,
    }
    if extra:
        record.update(extra)
    return record


def _emit(level: str, record: dict[str, Any]) -> None:
    logger.log(level, json.dumps(record, default=str))


# ──────────────────────────────────────────────────────────────────────────────
# Event helpers
# ──────────────────────────────────────────────────────────────────────────────

def log_verdict(
    identity: str,
    worker: str,
    allowed: bool,
    reason: str,
    duration_ms: float,
    exceeded_window: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Admissions at DEBUG, denials at INFO, fail-open fallbacks at WARNING."""
    record = _build_log_record("engine", "evaluate", {
        "identity": identity,
        "worker": worker,
        "allowed": allowed,
        "reason": reason,
        "exceeded_window": exceeded_window,
        "duration_ms": round(duration_ms, 2),
        "error": error,
    })
    if error:
        _emit("WARNING", record)
    elif allowed:
        _emit("DEBUG", record)
    else:
        _emit("INFO", record)


def log_violation(
    identity: str,
    violation_type: str,
    worker: str,
    recent_count: int,
) -> None:
    record = _build_log_record("violation_ledger", "record_violation", {
        "identity": identity,
        "violation_type": violation_type,
        "worker": worker,
        "recent_count": recent_count,
    })
    _emit("INFO", record)


def log_penalty(
    identity: str,
    worker: str,
    duration_seconds: int,
    prior_violations: int,
    banned: bool,
) -> None:
    record = _build_log_record("penalty_escalator", "apply_penalty", {
        "identity": identity,
        "worker": worker,
        "duration_seconds": duration_seconds,
        "prior_violations": prior_violations,
        "banned": banned,
    })
    _emit("WARNING" if banned else "INFO", record)


def log_flush(
    written: int,
    failed: int,
    trigger: str,
    latency_ms: float,
) -> None:
    record = _build_log_record("write_coalescing_cache", "flush", {
        "written": written,
        "failed": failed,
        "trigger": trigger,
        "latency_ms": round(latency_ms, 2),
    })
    _emit("WARNING" if failed else "DEBUG", record)


def log_config_change(
    target: str,
    action: str,
    updated_by: str,
    version: Optional[int] = None,
) -> None:
    record = _build_log_record("config_resolver", action, {
        "target": target,
        "updated_by": updated_by,
        "version": version,
    })
    _emit("INFO", record)


def log_admin_action(
    action: str,
    identity: str,
    success: bool,
    actor: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    record = _build_log_record("admin", action, {
        "identity": identity,
        "actor": actor,
        "success": success,
        "error": error,
    })
    _emit("INFO" if success else "ERROR", record)


def log_error(
    component: str,
    operation: str,
    error: BaseException,
    context: Optional[dict[str, Any]] = None,
) -> None:
    """Every swallowed error is logged with full context."""
    tb = traceback.format_exc()
    record = _build_log_record(component, operation, {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "stack_trace": tb[:2000] if tb and tb != "NoneType: None\n" else "",
        "context": context or {},
    })
    _emit("ERROR", record)
