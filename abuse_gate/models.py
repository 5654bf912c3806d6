"""
abuse_gate/models.py — All Pydantic data schemas
Stored records (list entries, blocks, violations, configs), the engine's
verdict, and the request/response bodies of the HTTP surface.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from abuse_gate.utils.timezone import utc_now
from abuse_gate.utils.validators import validate_config


# ──────────────────────────────────────────────────────────────────────────────
# Enumerations
# ──────────────────────────────────────────────────────────────────────────────

class Window(str, Enum):
    """Usage accounting periods, in the order they are checked."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


WINDOWS: tuple[Window, ...] = (Window.HOURLY, Window.DAILY, Window.WEEKLY, Window.MONTHLY)


class ConfigSource(str, Enum):
    CUSTOM = "custom"
    DEFAULT = "default"
    FALLBACK = "fallback"


class VerdictReason(str, Enum):
    BLACKLISTED = "BLACKLISTED"
    WHITELISTED = "WHITELISTED"
    TEMPORARILY_BLOCKED = "TEMPORARILY_BLOCKED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    WITHIN_LIMITS = "WITHIN_LIMITS"
    ERROR_FALLBACK = "ERROR_FALLBACK"
    RATE_LIMITING_DISABLED = "RATE_LIMITING_DISABLED"
    # Degraded sampled mode admitted without reading usage
    SAMPLED_SKIP = "SAMPLED_SKIP"


class ViolationType(str, Enum):
    BLACKLIST_ACCESS = "blacklist_access"
    BLOCKED_ACCESS_ATTEMPT = "blocked_access_attempt"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


class ListKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


# ──────────────────────────────────────────────────────────────────────────────
# Rate-limit configuration
# ──────────────────────────────────────────────────────────────────────────────

class ViolationThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    soft: int = 3
    hard: int = 6
    ban: int = 12


class PenaltySchedule(BaseModel):
    """Block durations in seconds by number of prior violations in 24h."""
    model_config = ConfigDict(frozen=True)

    first_violation: int = 300          # 5 minutes
    second_violation: int = 1800        # 30 minutes
    third_violation: int = 7200         # 2 hours
    persistent_violator: int = 86400    # 24 hours

    @model_validator(mode="after")
    def _strictly_increasing(self) -> "PenaltySchedule":
        steps = [
            self.first_violation,
            self.second_violation,
            self.third_violation,
            self.persistent_violator,
        ]
        if steps[0] < 1 or any(a >= b for a, b in zip(steps, steps[1:])):
            raise ValueError("penalty durations must be positive and strictly increasing")
        return self


class RateLimitConfig(BaseModel):
    """Immutable per-worker snapshot used for one decision."""
    model_config = ConfigDict(frozen=True)

    worker: str = "unknown-worker"
    hourly_limit: int
    daily_limit: int
    weekly_limit: int
    monthly_limit: int
    violation_thresholds: ViolationThresholds = Field(default_factory=ViolationThresholds)
    penalties: PenaltySchedule = Field(default_factory=PenaltySchedule)
    source: ConfigSource = ConfigSource.DEFAULT
    version: int = 1
    last_updated: Optional[datetime] = None
    updated_by: Optional[str] = None
    enabled: bool = True

    @model_validator(mode="after")
    def _check_ordering(self) -> "RateLimitConfig":
        report = validate_config(self.model_dump(mode="python"))
        if not report.valid:
            raise ValueError("; ".join(report.errors))
        return self

    def limits(self) -> dict[Window, int]:
        return {
            Window.HOURLY: self.hourly_limit,
            Window.DAILY: self.daily_limit,
            Window.WEEKLY: self.weekly_limit,
            Window.MONTHLY: self.monthly_limit,
        }


class GlobalSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable_rate_limiting: bool = True
    enable_ip_whitelist: bool = True
    enable_ip_blacklist: bool = True
    enable_violation_tracking: bool = True
    enable_analytics: bool = True
    admin_notification_email: str = ""
    notify_on_violations: bool = True
    violation_notification_threshold: int = 5
    source: ConfigSource = ConfigSource.DEFAULT
    version: int = 0
    last_updated: Optional[datetime] = None
    updated_by: Optional[str] = None


class ConfigChangeEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    target: str
    action: str
    data: dict[str, Any] = {}
    updated_by: str = "admin"


# ──────────────────────────────────────────────────────────────────────────────
# Stored records
# ──────────────────────────────────────────────────────────────────────────────

class ListEntry(BaseModel):
    """Allow-list or deny-list entry. No expiry; admin action only."""
    identity: str
    reason: str = ""
    added_by: str = "admin"
    added_at: datetime = Field(default_factory=utc_now)
    active: bool = True


class BlockRecord(BaseModel):
    identity: str
    expires_at: datetime
    reason: str
    violation_count: int = 1
    worker: str = "unknown-worker"
    applied_at: datetime = Field(default_factory=utc_now)

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, math.ceil((self.expires_at - now).total_seconds()))


class ViolationRecord(BaseModel):
    identity: str
    type: ViolationType
    worker: str = "unknown-worker"
    timestamp: datetime = Field(default_factory=utc_now)
    context: dict[str, Any] = {}


class ViolationSummary(BaseModel):
    identity: str
    violations: list[ViolationRecord] = []
    total_count: int = 0
    last_violation_at: Optional[datetime] = None

    def count_since(self, cutoff: datetime) -> int:
        return sum(1 for v in self.violations if v.timestamp > cutoff)

    def count_within(self, now: datetime, window: timedelta) -> int:
        return self.count_since(now - window)


# ──────────────────────────────────────────────────────────────────────────────
# Verdict
# ──────────────────────────────────────────────────────────────────────────────

class Verdict(BaseModel):
    allowed: bool
    reason: VerdictReason
    identity: str = ""
    worker: str = ""
    usage: Optional[dict[str, int]] = None
    limits: Optional[dict[str, int]] = None
    reset_times: Optional[dict[str, datetime]] = None
    exceeded_window: Optional[Window] = None
    retry_after_seconds: Optional[int] = None
    block_expires_at: Optional[datetime] = None
    error: Optional[str] = None
    config_source: Optional[ConfigSource] = None
    duration_ms: float = 0.0

    def http_status(self) -> int:
        """403 for deny-listed, 429 for blocks and limit breaches, 200 otherwise."""
        if self.allowed:
            return 200
        if self.reason == VerdictReason.BLACKLISTED:
            return 403
        return 429

    def headers(self) -> dict[str, str]:
        if self.retry_after_seconds is not None and not self.allowed:
            return {"Retry-After": str(self.retry_after_seconds)}
        return {}


class AdminResult(BaseModel):
    success: bool
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────────────────────
# API Request / Response bodies
# ──────────────────────────────────────────────────────────────────────────────

class ListEntryRequest(BaseModel):
    identity: str = Field(min_length=1, max_length=128)
    reason: str = Field(default="", max_length=500)
    added_by: str = Field(default="admin", max_length=100)


class CommitRequest(BaseModel):
    identity: Optional[str] = Field(default=None, max_length=128)


class ConfigUpdateRequest(BaseModel):
    updated_by: str = Field(default="admin", max_length=100)
    config: dict[str, Any]


class IdentityStatus(BaseModel):
    identity: str
    worker: str
    allow_entry: Optional[ListEntry] = None
    deny_entry: Optional[ListEntry] = None
    block: Optional[BlockRecord] = None
    usage: dict[str, int] = {}
    violations: Optional[ViolationSummary] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    store_ok: bool
    pending_writes: int
    cached_identities: int
    timestamp: datetime = Field(default_factory=utc_now)
