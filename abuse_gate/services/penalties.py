"""
abuse_gate/services/penalties.py — Progressive penalty escalation
Block duration depends on how many violations the identity already has in
the trailing 24 hours (not counting the one being penalised now):

    0 prior  →   300s  (5 minutes)
    1 prior  →  1800s  (30 minutes)
    2 prior  →  7200s  (2 hours)
    3+ prior → 86400s  (24 hours)

When the updated 24h count reaches the ban threshold the identity is also
put on the deny list. That ban is permanent until an admin removes it.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from abuse_gate.core.logging import log_penalty
from abuse_gate.models import (
    BlockRecord,
    PenaltySchedule,
    RateLimitConfig,
    ViolationSummary,
    ViolationThresholds,
)
from abuse_gate.services.access_lists import AccessList
from abuse_gate.services.block_gate import BlockGate
from abuse_gate.services.violations import ESCALATION_WINDOW
from abuse_gate.utils.timezone import Clock, utc_now

AUTO_BAN_REASON = "persistent violator — automatic ban"
AUTO_BAN_ACTOR = "system"


# ──────────────────────────────────────────────────────────────────────────────
# Pure functions
# ──────────────────────────────────────────────────────────────────────────────

def escalate(prior_violations: int, schedule: PenaltySchedule = PenaltySchedule()) -> int:
    """Map the prior 24h violation count to a block duration in seconds."""
    if prior_violations <= 0:
        return schedule.first_violation
    if prior_violations == 1:
        return schedule.second_violation
    if prior_violations == 2:
        return schedule.third_violation
    return schedule.persistent_violator


def count_recent(
    summary: ViolationSummary,
    now: datetime,
    window: timedelta = ESCALATION_WINDOW,
) -> int:
    return summary.count_within(now, window)


def should_ban(updated_count: int, thresholds: ViolationThresholds) -> bool:
    return updated_count >= thresholds.ban


# ──────────────────────────────────────────────────────────────────────────────
# Escalator
# ──────────────────────────────────────────────────────────────────────────────

class PenaltyEscalator:
    """Turns a violation into a block, and a persistent violator into a ban."""

    def __init__(self, blocks: BlockGate, deny_list: AccessList, clock: Clock = utc_now) -> None:
        self._blocks = blocks
        self._deny_list = deny_list
        self._clock = clock

    async def apply(
        self,
        identity: str,
        worker: str,
        reason: str,
        summary_before: ViolationSummary,
        config: RateLimitConfig,
    ) -> tuple[BlockRecord, bool]:
        """
        Block `identity` according to its history. Returns (block, banned).
        `summary_before` must not include the violation being penalised.
        """
        prior = count_recent(summary_before, self._clock())
        duration = escalate(prior, config.penalties)
        block = await self._blocks.apply(
            identity,
            duration,
            reason=reason,
            worker=worker,
            violation_count=prior + 1,
        )

        banned = should_ban(prior + 1, config.violation_thresholds)
        if banned:
            await self._deny_list.add(identity, AUTO_BAN_REASON, AUTO_BAN_ACTOR)

        log_penalty(identity, worker, duration, prior, banned)
        return block, banned
