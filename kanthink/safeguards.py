"""
Automation safeguards.

Automatic triggers can cascade (a rule creates a card, the new card
triggers the rule again). Before an automatic run the engine checks:
enabled, cooldown, daily cap, loop prevention. After every run the
rule's execution bookkeeping is updated.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel

from kanthink.config_loader import SafeguardConfig
from kanthink.models import Card, ExecutionRecord, InstructionCard

HISTORY_LIMIT = 10

SafeguardReason = Literal["not_enabled", "cooldown_active", "daily_cap_reached", "loop_prevention"]


class SafeguardCheck(BaseModel):
    can_execute: bool
    reason: SafeguardReason | None = None
    details: str = ""


def _parse(ts: str | None) -> datetime | None:
    if not ts:
        return None
    try:
        parsed = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _todays_count(instruction: InstructionCard, now: datetime) -> int:
    reset = _parse(instruction.daily_count_reset_at)
    if reset is None or reset.date() != now.date():
        return 0
    return instruction.daily_execution_count


def check_safeguards(
    instruction: InstructionCard,
    config: SafeguardConfig,
    triggering_card: Card | None = None,
    now: datetime | None = None,
) -> SafeguardCheck:
    now = now or datetime.now(timezone.utc)

    if not instruction.is_enabled:
        return SafeguardCheck(can_execute=False, reason="not_enabled", details="Automatic execution is disabled")

    last = _parse(instruction.last_executed_at)
    if last is not None:
        cooldown = timedelta(minutes=config.cooldown_minutes)
        elapsed = now - last
        if elapsed < cooldown:
            remaining = int((cooldown - elapsed).total_seconds() // 60) + 1
            return SafeguardCheck(
                can_execute=False,
                reason="cooldown_active",
                details=f"Cooldown active. {remaining} minute(s) remaining.",
            )

    if _todays_count(instruction, now) >= config.daily_cap:
        return SafeguardCheck(
            can_execute=False,
            reason="daily_cap_reached",
            details=f"Daily cap of {config.daily_cap} executions reached.",
        )

    if config.prevent_loops and triggering_card is not None:
        if triggering_card.created_by_instruction_id == instruction.id:
            return SafeguardCheck(
                can_execute=False,
                reason="loop_prevention",
                details="Card was created by this instruction. Loop prevention active.",
            )

    return SafeguardCheck(can_execute=True)


def record_execution(
    instruction: InstructionCard,
    trigger: Literal["manual", "automatic"],
    success: bool,
    cards_affected: int,
    now: datetime | None = None,
) -> InstructionCard:
    """Bump the daily counter and push onto the bounded history. Mutates and returns `instruction`."""
    now = now or datetime.now(timezone.utc)
    stamp = now.isoformat()

    instruction.daily_execution_count = _todays_count(instruction, now) + 1
    instruction.daily_count_reset_at = stamp
    instruction.last_executed_at = stamp
    record = ExecutionRecord(timestamp=stamp, triggered_by=trigger, success=success, cards_affected=cards_affected)
    instruction.execution_history = [record, *instruction.execution_history][:HISTORY_LIMIT]
    return instruction
