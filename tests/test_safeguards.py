from datetime import datetime, timedelta, timezone

from kanthink.config_loader import SafeguardConfig
from kanthink.models import Card, InstructionCard
from kanthink.safeguards import HISTORY_LIMIT, check_safeguards, record_execution

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _rule(**kwargs):
    return InstructionCard(id="rule_1", title="Auto", run_mode="automatic", **kwargs)


def test_fresh_rule_can_run():
    assert check_safeguards(_rule(), SafeguardConfig(), now=NOW).can_execute


def test_disabled_rule_is_blocked():
    check = check_safeguards(_rule(is_enabled=False), SafeguardConfig(), now=NOW)
    assert not check.can_execute
    assert check.reason == "not_enabled"


def test_cooldown_blocks_recent_runs():
    recent = _rule(last_executed_at=(NOW - timedelta(minutes=2, seconds=30)).isoformat())
    check = check_safeguards(recent, SafeguardConfig(cooldown_minutes=5), now=NOW)
    assert check.reason == "cooldown_active"
    assert "3 minute(s) remaining" in check.details

    old = _rule(last_executed_at=(NOW - timedelta(minutes=10)).isoformat())
    assert check_safeguards(old, SafeguardConfig(cooldown_minutes=5), now=NOW).can_execute


def test_daily_cap_counts_only_today():
    today = _rule(daily_execution_count=3, daily_count_reset_at=NOW.isoformat())
    check = check_safeguards(today, SafeguardConfig(cooldown_minutes=0, daily_cap=3), now=NOW)
    assert check.reason == "daily_cap_reached"

    yesterday = _rule(daily_execution_count=3, daily_count_reset_at=(NOW - timedelta(days=1)).isoformat())
    assert check_safeguards(yesterday, SafeguardConfig(cooldown_minutes=0, daily_cap=3), now=NOW).can_execute


def test_loop_prevention():
    spawned = Card(title="Spawned", created_by_instruction_id="rule_1")
    check = check_safeguards(_rule(), SafeguardConfig(), triggering_card=spawned, now=NOW)
    assert check.reason == "loop_prevention"

    unrelated = Card(title="Other", created_by_instruction_id="rule_2")
    assert check_safeguards(_rule(), SafeguardConfig(), triggering_card=unrelated, now=NOW).can_execute
    assert check_safeguards(_rule(), SafeguardConfig(prevent_loops=False), triggering_card=spawned, now=NOW).can_execute


def test_checks_run_in_order():
    blocked_twice = _rule(is_enabled=False, last_executed_at=NOW.isoformat())
    assert check_safeguards(blocked_twice, SafeguardConfig(), now=NOW).reason == "not_enabled"


def test_record_execution_updates_bookkeeping():
    rule = _rule()
    record_execution(rule, "automatic", True, 3, now=NOW)

    assert rule.last_executed_at == NOW.isoformat()
    assert rule.daily_execution_count == 1
    assert rule.execution_history[0].cards_affected == 3
    assert rule.execution_history[0].triggered_by == "automatic"


def test_daily_count_resets_on_a_new_day():
    rule = _rule()
    record_execution(rule, "manual", True, 1, now=NOW - timedelta(days=1))
    record_execution(rule, "manual", True, 1, now=NOW - timedelta(days=1, hours=-1))
    assert rule.daily_execution_count == 2

    record_execution(rule, "manual", True, 1, now=NOW)
    assert rule.daily_execution_count == 1


def test_history_is_bounded_newest_first():
    rule = _rule()
    for i in range(HISTORY_LIMIT + 3):
        record_execution(rule, "manual", True, i, now=NOW + timedelta(minutes=i))

    assert len(rule.execution_history) == HISTORY_LIMIT
    assert rule.execution_history[0].cards_affected == HISTORY_LIMIT + 2
