import json

import pytest
from conftest import FakeRouter, cards_json

from kanthink.engine import BOARD_NOT_FOUND, INSTRUCTION_NOT_FOUND, InstructionRuleEngine
from kanthink.event_bus import EventBus
from kanthink.ledger import RunLedger
from kanthink.models import (
    Board,
    Card,
    CardCreated,
    CardEdited,
    CardMoved,
    CardProperty,
    ColumnsTarget,
    ColumnTarget,
    GenerateAction,
    InstructionCard,
    ModifyAction,
    MoveAction,
    SelectedColumns,
)
from kanthink.store import BoardStoreError, InMemoryBoardRepository


def _rule(repo, action, column_id="col_inbox", **kwargs):
    rule = InstructionCard(
        board_id="board_1",
        title=kwargs.pop("title", "Test rule"),
        instructions=kwargs.pop("instructions", "Make it better."),
        action=action,
        target=kwargs.pop("target", ColumnTarget(column_id=column_id)),
        **kwargs,
    )
    return repo.save_instruction(rule)


def _engine(repo, router, config, bus=None):
    return InstructionRuleEngine(repo, router, RunLedger(), config, bus=bus)


def _column(repo, column_id):
    return repo.get_board("board_1").column(column_id).card_ids


def test_generate_appends_cards_to_target_column(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=3), column_id="col_doing", target_column_name="Doing")
    router = FakeRouter([cards_json("First", "Second", "Third", "Fourth")])
    engine = _engine(board_repo, router, config)

    result = engine.run(rule.id)

    assert result.status == "completed"
    assert len(result.changes) == 3
    assert all(isinstance(c, CardCreated) for c in result.changes)
    created = [c.card_id for c in result.changes]
    assert _column(board_repo, "col_doing") == created
    assert [board_repo.get_card(i).title for i in created] == ["First", "Second", "Third"]

    for card in board_repo.cards_by_id("board_1").values():
        assert rule.id not in card.processed_by_instructions
        if card.id in created:
            assert card.created_by_instruction_id == rule.id
            assert card.source == "ai"


def test_generation_prompt_sees_the_board(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=1), column_id="col_doing")
    router = FakeRouter([cards_json("A")])

    _engine(board_repo, router, config).run(rule.id, system_instructions="Be concise.")

    user = router.calls[0]["messages"][1]["content"]
    assert "- Dark mode:" in user
    assert "General guidance:\nBe concise." in user
    assert "**Instructions:**\nMake it better." in user


def test_generate_fallback_still_inserts_stub_cards(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=3), column_id="col_doing")
    engine = _engine(board_repo, FakeRouter(default="not json"), config)

    result = engine.run(rule.id)

    assert result.status == "completed"
    assert result.is_fallback
    assert len(_column(board_repo, "col_doing")) == 3


def test_modify_then_undo_restores_card_exactly(board_repo, config):
    before = board_repo.get_card("card_a")
    rule = _rule(board_repo, ModifyAction())
    router = FakeRouter([
        json.dumps({"title": "Dark mode everywhere", "content": "Ship it **now**."}),
        json.dumps({"changed": False}),
    ])
    engine = _engine(board_repo, router, config)

    result = engine.run(rule.id)

    assert len(router.calls) == 2
    assert [type(c) for c in result.changes] == [CardEdited]
    edited = board_repo.get_card("card_a")
    assert edited.title == "Dark mode everywhere"
    assert len(edited.messages) == 2
    assert edited.messages[-1].type == "ai_response"
    assert "<strong>now</strong>" in edited.messages[-1].content
    assert rule.id in edited.processed_by_instructions
    assert rule.id not in board_repo.get_card("card_b").processed_by_instructions

    report = engine.undo(result.run.id)

    assert report.clean
    assert report.reverted == ["card_a"]
    restored = board_repo.get_card("card_a")
    assert restored.title == before.title
    assert restored.messages == before.messages
    assert restored.tags == before.tags
    assert restored.processed_by_instructions == {}


def test_tags_only_change_when_instructions_mention_them(board_repo, config):
    rule = _rule(board_repo, ModifyAction(), instructions="Add tags for the platform.")
    router = FakeRouter([json.dumps({"tags": ["ui", "mobile"]}), json.dumps({"changed": False})])

    _engine(board_repo, router, config).run(rule.id)

    assert board_repo.get_card("card_a").tags == ["ui", "mobile"]


def test_modify_sets_properties_and_adds_tasks_then_undo(board_repo, config):
    board_repo.update_card("card_a", properties=[CardProperty(key="area", value="web")])
    before = board_repo.get_card("card_a")
    rule = _rule(board_repo, ModifyAction(), instructions="Categorize each idea and add tasks for next steps.")
    router = FakeRouter([
        json.dumps({
            "properties": [
                {"key": "area", "value": "mobile", "displayType": "field"},
                {"key": "priority", "value": "high", "color": "red"},
                {"value": "no key"},
            ],
            "tasks": [{"title": "Draft spec", "description": "One page"}, {"title": "draft spec"}, {"nope": 1}],
        }),
        json.dumps({"changed": False}),
    ])
    engine = _engine(board_repo, router, config)

    result = engine.run(rule.id)

    edited = board_repo.get_card("card_a")
    assert [(p.key, p.value, p.display_type) for p in edited.properties] == [
        ("area", "mobile", "field"),
        ("priority", "high", "chip"),
    ]
    assert [(t.title, t.description, t.status) for t in edited.tasks] == [("Draft spec", "One page", "not_started")]
    system = router.calls[0]["messages"][0]["content"]
    assert '"properties": [{"key": "category"' in system
    assert '"tasks": [{"title": "Action item"' in system

    report = engine.undo(result.run.id)

    assert report.clean
    restored = board_repo.get_card("card_a")
    assert restored.properties == before.properties
    assert restored.tasks == []


def test_properties_and_tasks_need_to_be_asked_for(board_repo, config):
    rule = _rule(board_repo, ModifyAction(), instructions="Sharpen the wording.")
    router = FakeRouter([
        json.dumps({"title": "Dark mode v2", "properties": [{"key": "k", "value": "v"}], "tasks": [{"title": "T"}]}),
        json.dumps({"changed": False}),
    ])

    _engine(board_repo, router, config).run(rule.id)

    card = board_repo.get_card("card_a")
    assert card.title == "Dark mode v2"
    assert card.properties == []
    assert card.tasks == []
    assert "Do NOT create tasks" in router.calls[0]["messages"][0]["content"]


def test_generate_then_undo_removes_only_created_cards(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=2), column_id="col_inbox")
    engine = _engine(board_repo, FakeRouter([cards_json("X", "Y")]), config)
    inbox_before = _column(board_repo, "col_inbox")

    result = engine.run(rule.id)
    assert len(_column(board_repo, "col_inbox")) == len(inbox_before) + 2

    report = engine.undo(result.run.id)
    assert report.status == "undone"
    assert sorted(report.reverted) == sorted(c.card_id for c in result.changes)
    assert _column(board_repo, "col_inbox") == inbox_before
    assert board_repo.get_card("card_a") is not None

    again = engine.undo(result.run.id)
    assert again.status == "already_undone"
    assert again.reverted == []
    assert _column(board_repo, "col_inbox") == inbox_before


def test_move_then_undo_restores_original_position(board_repo, config):
    rule = _rule(board_repo, MoveAction(), instructions="Move finished ideas to Done.")
    router = FakeRouter([
        json.dumps({"move": True, "destinationColumnId": "col_done", "reason": "shipped"}),
        json.dumps({"move": False, "reason": "still open"}),
    ])
    engine = _engine(board_repo, router, config)

    result = engine.run(rule.id)

    assert [type(c) for c in result.changes] == [CardMoved]
    move = result.changes[0]
    assert (move.from_column_id, move.from_index, move.to_column_id) == ("col_inbox", 0, "col_done")
    assert _column(board_repo, "col_inbox") == ["card_b"]
    assert _column(board_repo, "col_done") == ["card_c", "card_a"]

    report = engine.undo(result.run.id)

    assert report.clean
    assert _column(board_repo, "col_inbox") == ["card_a", "card_b"]
    assert _column(board_repo, "col_done") == ["card_c"]
    assert board_repo.get_card("card_a").processed_by_instructions == {}


def test_move_destination_can_be_a_column_name(board_repo, config):
    rule = _rule(board_repo, MoveAction())
    router = FakeRouter([json.dumps({"move": True, "destination": "done"}), json.dumps({"move": False})])

    _engine(board_repo, router, config).run(rule.id)

    assert _column(board_repo, "col_done") == ["card_c", "card_a"]


def test_move_to_current_column_is_not_a_change(board_repo, config):
    rule = _rule(board_repo, MoveAction())
    router = FakeRouter([json.dumps({"move": True, "destinationColumnId": "col_inbox"}), json.dumps({"move": False})])

    result = _engine(board_repo, router, config).run(rule.id)

    assert result.changes == []
    assert result.errors == []


def test_one_failing_card_does_not_stop_the_run(board_repo, config):
    rule = _rule(board_repo, ModifyAction())
    router = FakeRouter([RuntimeError("boom"), json.dumps({"title": "Offline-first sync"})])

    result = _engine(board_repo, router, config).run(rule.id)

    assert result.status == "completed"
    assert [e.card_id for e in result.errors] == ["card_a"]
    assert "boom" in result.errors[0].message
    assert [c.card_id for c in result.changes] == ["card_b"]
    assert board_repo.get_card("card_b").title == "Offline-first sync"


def test_unparseable_edit_is_recorded_as_an_error(board_repo, config):
    rule = _rule(board_repo, ModifyAction())
    router = FakeRouter(["I refuse.", json.dumps({"changed": False})])

    result = _engine(board_repo, router, config).run(rule.id)

    assert [e.card_id for e in result.errors] == ["card_a"]
    assert result.changes == []


def test_renamed_column_resolves_through_configured_name(board_repo, config):
    rule = _rule(
        board_repo,
        GenerateAction(card_count=1),
        target=ColumnTarget(column_id="col_gone"),
        target_column_name="doing",
    )
    engine = _engine(board_repo, FakeRouter([cards_json("A")]), config)

    result = engine.run(rule.id)

    assert result.status == "completed"
    assert result.targets[0].column_id == "col_doing"
    assert result.targets[0].confidence == "case_insensitive"
    assert len(_column(board_repo, "col_doing")) == 1


def test_unknown_column_falls_back_to_first_column(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=1), target=ColumnTarget(column_id="col_gone"))
    result = _engine(board_repo, FakeRouter([cards_json("A")]), config).run(rule.id)

    assert result.targets[0].fell_back
    assert result.targets[0].column_id == "col_inbox"
    assert result.run is not None


def test_board_without_columns_fails_the_run(config):
    repo = InMemoryBoardRepository(boards=[Board(id="board_1", name="Empty")])
    rule = _rule(repo, GenerateAction(card_count=1))
    ledger = RunLedger()
    engine = InstructionRuleEngine(repo, FakeRouter(), ledger, config)

    result = engine.run(rule.id)

    assert result.status == "failed"
    assert "no columns" in result.errors[0].message
    assert len(ledger) == 1


def test_context_columns_narrow_the_scope(board_repo, config):
    rule = _rule(
        board_repo,
        ModifyAction(),
        target=ColumnsTarget(column_ids=["col_inbox", "col_done"]),
        context_columns=SelectedColumns(column_ids=["col_done"]),
    )
    router = FakeRouter([json.dumps({"title": "Login page v2"})])

    result = _engine(board_repo, router, config).run(rule.id)

    assert len(router.calls) == 1
    assert [c.card_id for c in result.changes] == ["card_c"]


def test_triggering_card_limits_the_scope(board_repo, config):
    rule = _rule(board_repo, ModifyAction())
    router = FakeRouter([json.dumps({"title": "Sync"})])

    result = _engine(board_repo, router, config).run(rule.id, triggering_card_id="card_b")

    assert len(router.calls) == 1
    assert [c.card_id for c in result.changes] == ["card_b"]


def test_processed_cards_are_skipped_until_cleared(board_repo, config):
    rule = _rule(board_repo, ModifyAction())
    router = FakeRouter(default=json.dumps({"title": "Touched"}))
    engine = _engine(board_repo, router, config)

    engine.run(rule.id)
    assert len(router.calls) == 2

    engine.run(rule.id, skip_already_processed=True)
    assert len(router.calls) == 2

    card = engine.clear_instruction_run("card_a", rule.id)
    assert rule.id not in card.processed_by_instructions

    result = engine.run(rule.id, skip_already_processed=True)
    assert len(router.calls) == 3
    assert [c.card_id for c in result.changes] == ["card_a"]


def test_manual_runs_reprocess_by_default(board_repo, config):
    rule = _rule(board_repo, ModifyAction())
    router = FakeRouter(default=json.dumps({"title": "Touched"}))
    engine = _engine(board_repo, router, config)

    engine.run(rule.id)
    engine.run(rule.id)

    assert len(router.calls) == 4


def test_clear_unknown_marker_is_a_no_op(board_repo, config):
    engine = _engine(board_repo, FakeRouter(), config)
    card = engine.clear_instruction_run("card_a", "rule_missing")
    assert card.version == board_repo.get_card("card_a").version

    with pytest.raises(BoardStoreError):
        engine.clear_instruction_run("card_missing", "rule_missing")


def test_disabled_automatic_rule_is_skipped(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=1), run_mode="automatic", is_enabled=False)
    router = FakeRouter([cards_json("A")])
    ledger = RunLedger()
    engine = InstructionRuleEngine(board_repo, router, ledger, config)

    result = engine.run(rule.id, trigger="automatic")

    assert result.status == "skipped"
    assert result.reason == "not_enabled"
    assert router.calls == []
    assert len(ledger) == 0


def test_automatic_run_starts_cooldown(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=1), run_mode="automatic")
    engine = _engine(board_repo, FakeRouter(default=cards_json("A")), config)

    first = engine.run(rule.id, trigger="automatic")
    second = engine.run(rule.id, trigger="automatic")

    assert first.status == "completed"
    assert second.status == "skipped"
    assert second.reason == "cooldown_active"
    saved = board_repo.get_instruction(rule.id)
    assert saved.daily_execution_count == 1
    assert saved.execution_history[0].triggered_by == "automatic"


def test_card_created_by_the_rule_cannot_retrigger_it(board_repo, config):
    rule = _rule(board_repo, ModifyAction(), run_mode="automatic")
    board_repo.add_card("board_1", "col_inbox", Card(id="card_gen", title="Spawned", created_by_instruction_id=rule.id))
    router = FakeRouter()

    result = _engine(board_repo, router, config).run(rule.id, trigger="automatic", triggering_card_id="card_gen")

    assert result.status == "skipped"
    assert result.reason == "loop_prevention"
    assert router.calls == []


def test_manual_run_records_execution(board_repo, config):
    rule = _rule(board_repo, GenerateAction(card_count=1))
    _engine(board_repo, FakeRouter([cards_json("A")]), config).run(rule.id)

    saved = board_repo.get_instruction(rule.id)
    assert saved.last_executed_at is not None
    assert saved.execution_history[0].triggered_by == "manual"
    assert saved.execution_history[0].success
    assert saved.execution_history[0].cards_affected == 1


def test_unknown_rule_is_a_failed_result(board_repo, config):
    router = FakeRouter()
    result = _engine(board_repo, router, config).run("rule_missing")

    assert (result.status, result.reason) == ("failed", INSTRUCTION_NOT_FOUND)
    assert result.run is None
    assert router.calls == []


def test_rule_whose_board_is_gone_is_a_failed_result(config):
    orphan = InstructionCard(id="rule_orphan", board_id="board_gone", title="Orphan")
    repo = InMemoryBoardRepository(instructions=[orphan])
    ledger = RunLedger()

    result = InstructionRuleEngine(repo, FakeRouter(), ledger, config).run("rule_orphan")

    assert (result.status, result.reason) == ("failed", BOARD_NOT_FOUND)
    assert len(ledger) == 0


class FlakyRepository(InMemoryBoardRepository):
    """Rejects the n-th card creation."""

    def __init__(self, fail_on, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on
        self.created = 0

    def create_card(self, *args, **kwargs):
        self.created += 1
        if self.created == self.fail_on:
            raise BoardStoreError("disk full")
        return super().create_card(*args, **kwargs)


def test_commit_failure_rolls_back_partial_writes(board_repo, config):
    repo = FlakyRepository(fail_on=2, boards=[board_repo.get_board("board_1")])
    rule = _rule(repo, GenerateAction(card_count=3), column_id="col_doing")
    ledger = RunLedger()
    engine = InstructionRuleEngine(repo, FakeRouter([cards_json("A", "B", "C")]), ledger, config)

    result = engine.run(rule.id)

    assert result.status == "failed"
    assert result.changes == []
    assert "Commit failed: disk full" in result.errors[-1].message
    assert _column(repo, "col_doing") == []
    assert len(ledger) == 1


def test_run_events_reach_the_bus(board_repo, config):
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    rule = _rule(board_repo, GenerateAction(card_count=1), column_id="col_doing")
    engine = _engine(board_repo, FakeRouter([cards_json("A")]), config, bus=bus)

    result = engine.run(rule.id)
    engine.undo(result.run.id)

    types = [e.event_type for e in events]
    assert types == ["generation.completed", "instruction.run.completed", "instruction.run.undone"]
    completed = events[1]
    assert completed.payload["run_id"] == result.run.id
    assert completed.payload["changes"] == 1
    assert completed.board_id == "board_1"
