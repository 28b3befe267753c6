"""
KANTHINK Instruction Rule Engine

Runs a saved rule (generate / modify / move) against the board:

    idle → resolving target → executing → idle (+ one InstructionRun)

Execution is two-phase. Every model call happens first and produces a
plan; only then are the planned mutations written to the store. A
failure on one card is recorded on the run and the rest carry on.
If the store rejects a write mid-commit, the writes already made are
rolled back so the run lands whole or not at all.
"""

from __future__ import annotations

from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from kanthink.agents import AgentContext
from kanthink.agents.editor import CardEdit, CardEditorAgent
from kanthink.agents.generator import GenerationRequest
from kanthink.agents.mover import CardMoverAgent
from kanthink.config_loader import KanthinkConfig
from kanthink.event_bus import EventBus
from kanthink.ledger import RunLedger, UndoReport
from kanthink.models import (
    Board,
    Card,
    CardCreated,
    CardDraft,
    CardEdited,
    CardMessage,
    CardMoved,
    CardProperty,
    CardSnapshot,
    CardTask,
    Change,
    GenerateAction,
    InstructionCard,
    InstructionRun,
    ModifyAction,
    MoveAction,
    RunError,
    SelectedColumns,
    utc_now,
)
from kanthink.pipeline import GenerationPipeline
from kanthink.resolver import ColumnResolution, ColumnResolutionError, ColumnResolver
from kanthink.safeguards import SafeguardCheck, check_safeguards, record_execution
from kanthink.store import BoardRepository, BoardStoreError


INSTRUCTION_NOT_FOUND = "instruction_not_found"
BOARD_NOT_FOUND = "board_not_found"


class InstructionRunResult(BaseModel):
    status: Literal["completed", "skipped", "failed"]
    instruction_id: str
    run: InstructionRun | None = None
    targets: list[ColumnResolution] = Field(default_factory=list)
    reason: str | None = None
    safeguard: SafeguardCheck | None = None
    is_fallback: bool = False

    @property
    def changes(self) -> list[Change]:
        return self.run.changes if self.run else []

    @property
    def errors(self) -> list[RunError]:
        return self.run.errors if self.run else []


# ---------------------------------------------------------------------------
# Plans (what a run intends to write)
# ---------------------------------------------------------------------------

class _Plan(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    drafts: list[CardDraft] = Field(default_factory=list)
    destination_id: str | None = None
    edits: list[tuple[str, CardEdit]] = Field(default_factory=list)
    moves: list[tuple[str, str]] = Field(default_factory=list)
    errors: list[RunError] = Field(default_factory=list)
    is_fallback: bool = False


class InstructionRuleEngine:
    """
    Executes rules against a BoardRepository.

    The engine holds no board state of its own: every run reads a fresh
    snapshot, and every write goes through the repository.
    """

    def __init__(
        self,
        repo: BoardRepository,
        router: Any,
        ledger: RunLedger,
        config: KanthinkConfig,
        pipeline: GenerationPipeline | None = None,
        bus: EventBus | None = None,
    ):
        self.repo = repo
        self.router = router
        self.ledger = ledger
        self.config = config
        self.bus = bus
        self.pipeline = pipeline or GenerationPipeline(router, config, bus=bus)
        self.editor = CardEditorAgent(router)
        self.mover = CardMoverAgent(router)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def run(
        self,
        instruction_id: str,
        trigger: Literal["manual", "automatic"] = "manual",
        triggering_card_id: str | None = None,
        skip_already_processed: bool | None = None,
        system_instructions: str | None = None,
    ) -> InstructionRunResult:
        instruction = self.repo.get_instruction(instruction_id)
        if instruction is None:
            logger.warning(f"[ENGINE] Unknown instruction: {instruction_id}")
            return InstructionRunResult(status="failed", instruction_id=instruction_id, reason=INSTRUCTION_NOT_FOUND)

        if skip_already_processed is None:
            skip_already_processed = trigger == "automatic"

        if trigger == "automatic":
            triggering_card = self.repo.get_card(triggering_card_id) if triggering_card_id else None
            check = check_safeguards(instruction, self.config.safeguards, triggering_card)
            if not check.can_execute:
                logger.info(f"[ENGINE] Skipping '{instruction.title}': {check.details}")
                return InstructionRunResult(
                    status="skipped",
                    instruction_id=instruction_id,
                    reason=check.reason,
                    safeguard=check,
                )

        try:
            board = self.repo.get_board(instruction.board_id)
        except BoardStoreError as e:
            logger.error(f"[ENGINE] Rule '{instruction.title}' has no board: {e}")
            return InstructionRunResult(status="failed", instruction_id=instruction_id, reason=BOARD_NOT_FOUND)
        logger.info(f"[ENGINE] Running '{instruction.title}' ({instruction.action.kind}) on {board.name}")

        # -- resolving target --
        resolver = ColumnResolver(board)
        try:
            targets = resolver.resolve_target(instruction.target, instruction.target_column_name)
        except ColumnResolutionError as e:
            return self._finish(
                instruction, board, trigger, [], [RunError(message=str(e))], [], status="failed"
            )
        for t in targets:
            if t.fell_back:
                logger.warning(f"[ENGINE] Target '{t.query}' fell back to column {t.column_id}")

        # -- executing: plan --
        plan = self._plan(
            instruction, board, resolver, targets, triggering_card_id,
            skip_already_processed, system_instructions,
        )

        # -- executing: commit --
        try:
            changes = self._commit(instruction, board, plan)
        except BoardStoreError as e:
            logger.error(f"[ENGINE] Commit failed for '{instruction.title}', nothing applied: {e}")
            return self._finish(
                instruction, board, trigger, [], [*plan.errors, RunError(message=f"Commit failed: {e}")],
                targets, status="failed",
            )

        return self._finish(
            instruction, board, trigger, changes, plan.errors, targets,
            status="completed", is_fallback=plan.is_fallback,
        )

    def undo(self, run_id: str) -> UndoReport:
        report = self.ledger.undo(run_id, self.repo)
        run = self.ledger.get(run_id)
        if self.bus is not None and report.status == "undone":
            self.bus.emit(
                event_type="instruction.run.undone",
                source="engine",
                board_id=run.board_id if run else "",
                payload=report.model_dump(),
            )
        return report

    def clear_instruction_run(self, card_id: str, instruction_id: str) -> Card:
        """Drop one rule's processed marker from one card so the rule can touch it again."""
        card = self.repo.get_card(card_id)
        if card is None:
            raise BoardStoreError(f"Unknown card: {card_id}")
        if instruction_id not in card.processed_by_instructions:
            return card
        markers = dict(card.processed_by_instructions)
        del markers[instruction_id]
        logger.debug(f"[ENGINE] Cleared marker {instruction_id} on {card_id}")
        return self.repo.update_card(card_id, processed_by_instructions=markers)

    # -----------------------------------------------------------------------
    # Planning
    # -----------------------------------------------------------------------

    def _plan(
        self,
        instruction: InstructionCard,
        board: Board,
        resolver: ColumnResolver,
        targets: list[ColumnResolution],
        triggering_card_id: str | None,
        skip_already_processed: bool,
        system_instructions: str | None,
    ) -> _Plan:
        action = instruction.action
        if isinstance(action, GenerateAction):
            return self._plan_generate(instruction, board, targets[0].column_id, action.card_count, system_instructions)

        cards = self._cards_in_scope(instruction, board, targets, triggering_card_id, skip_already_processed)
        if isinstance(action, ModifyAction):
            return self._plan_modify(instruction, board, cards, system_instructions)
        if isinstance(action, MoveAction):
            return self._plan_move(instruction, board, resolver, cards, system_instructions)
        raise TypeError(f"Unknown action: {action!r}")

    def _plan_generate(
        self,
        instruction: InstructionCard,
        board: Board,
        column_id: str,
        card_count: int,
        system_instructions: str | None,
    ) -> _Plan:
        context = instruction.context_columns
        request = GenerationRequest.for_board(
            board,
            self.repo.cards_by_id(board.id),
            column_id,
            card_count,
            standing_instructions=system_instructions,
            instructions=instruction.instructions,
            excerpt_chars=self.config.limits.excerpt_chars,
            column_ids=context.column_ids if isinstance(context, SelectedColumns) and context.column_ids else None,
        )
        result = self.pipeline.generate(request, board_id=board.id)
        return _Plan(drafts=result.drafts, destination_id=column_id, is_fallback=result.is_fallback)

    def _plan_modify(
        self,
        instruction: InstructionCard,
        board: Board,
        cards: list[Card],
        system_instructions: str | None,
    ) -> _Plan:
        plan = _Plan()
        for card in cards:
            context = AgentContext(
                board=board,
                card=card,
                instructions=instruction.instructions,
                system_instructions=system_instructions,
            )
            try:
                edit = self.editor.run(context)
            except Exception as e:
                logger.warning(f"[ENGINE] Modify failed for {card.id}: {e}")
                plan.errors.append(RunError(card_id=card.id, message=str(e)))
                continue
            if edit is None:
                plan.errors.append(RunError(card_id=card.id, message="Model returned no usable edit"))
            elif edit.changed:
                plan.edits.append((card.id, edit))
        return plan

    def _plan_move(
        self,
        instruction: InstructionCard,
        board: Board,
        resolver: ColumnResolver,
        cards: list[Card],
        system_instructions: str | None,
    ) -> _Plan:
        plan = _Plan()
        for card in cards:
            context = AgentContext(
                board=board,
                card=card,
                instructions=instruction.instructions,
                system_instructions=system_instructions,
            )
            try:
                decision = self.mover.run(context)
            except Exception as e:
                logger.warning(f"[ENGINE] Move decision failed for {card.id}: {e}")
                plan.errors.append(RunError(card_id=card.id, message=str(e)))
                continue
            if decision is None:
                plan.errors.append(RunError(card_id=card.id, message="Model returned no usable decision"))
                continue
            if not decision.move:
                continue

            destination = resolver.resolve(decision.destination)
            located = board.locate(card.id)
            if located and located[0].id == destination.column_id:
                continue
            plan.moves.append((card.id, destination.column_id))
        return plan

    def _cards_in_scope(
        self,
        instruction: InstructionCard,
        board: Board,
        targets: list[ColumnResolution],
        triggering_card_id: str | None,
        skip_already_processed: bool,
    ) -> list[Card]:
        """Front-side cards of the scope columns, in board order."""
        context = instruction.context_columns
        if isinstance(context, SelectedColumns) and context.column_ids:
            column_ids = [c.id for c in board.columns if c.id in context.column_ids]
        else:
            column_ids = [t.column_id for t in targets]

        cards: list[Card] = []
        for column_id in column_ids:
            cards.extend(self.repo.cards_in(board.id, column_id))

        if triggering_card_id is not None:
            cards = [c for c in cards if c.id == triggering_card_id]
        if skip_already_processed:
            cards = [c for c in cards if instruction.id not in c.processed_by_instructions]
        return cards

    # -----------------------------------------------------------------------
    # Commit
    # -----------------------------------------------------------------------

    def _commit(self, instruction: InstructionCard, board: Board, plan: _Plan) -> list[Change]:
        changes: list[Change] = []
        try:
            for draft in plan.drafts:
                card = self.repo.create_card(
                    board.id,
                    plan.destination_id,
                    draft.title,
                    draft.html_body,
                    source="ai",
                    created_by_instruction_id=instruction.id,
                )
                changes.append(CardCreated(card_id=card.id, column_id=plan.destination_id))

            for card_id, edit in plan.edits:
                changes.append(self._apply_edit(instruction, card_id, edit))

            for card_id, destination_id in plan.moves:
                changes.append(self._apply_move(instruction, board.id, card_id, destination_id))
        except BoardStoreError:
            self._rollback(instruction, board, changes)
            raise
        return changes

    def _apply_edit(self, instruction: InstructionCard, card_id: str, edit: CardEdit) -> CardEdited:
        current = self.repo.get_card(card_id)
        if current is None:
            raise BoardStoreError(f"Card {card_id} disappeared before commit")

        messages = list(current.messages)
        if edit.html_body:
            messages.append(CardMessage(type="ai_response", content=edit.html_body))
        markers = {**current.processed_by_instructions, instruction.id: utc_now()}

        updated = self.repo.update_card(
            card_id,
            title=edit.title or current.title,
            messages=messages,
            tags=edit.tags if edit.tags is not None else current.tags,
            properties=_merge_properties(current.properties, edit.properties or []),
            tasks=_append_tasks(current.tasks, edit.tasks or []),
            processed_by_instructions=markers,
        )
        return CardEdited(
            card_id=card_id,
            before=CardSnapshot.of(current),
            after=CardSnapshot.of(updated),
            previous_marker=current.processed_by_instructions.get(instruction.id),
            version_after=updated.version,
        )

    def _apply_move(self, instruction: InstructionCard, board_id: str, card_id: str, destination_id: str) -> CardMoved:
        located = self.repo.get_board(board_id).locate(card_id)
        current = self.repo.get_card(card_id)
        if located is None or current is None:
            raise BoardStoreError(f"Card {card_id} is no longer on the board")
        column, index, _ = located

        self.repo.move_card(card_id, destination_id)
        markers = {**current.processed_by_instructions, instruction.id: utc_now()}
        updated = self.repo.update_card(card_id, processed_by_instructions=markers)
        return CardMoved(
            card_id=card_id,
            from_column_id=column.id,
            from_index=index,
            to_column_id=destination_id,
            previous_marker=current.processed_by_instructions.get(instruction.id),
            version_after=updated.version,
        )

    def _rollback(self, instruction: InstructionCard, board: Board, changes: list[Change]) -> None:
        if not changes:
            return
        partial = InstructionRun(instruction_id=instruction.id, board_id=board.id, changes=changes)
        scratch = RunLedger(max_runs_per_instruction=1)
        scratch.save(partial)
        report = scratch.undo(partial.id, self.repo)
        logger.warning(f"[ENGINE] Rolled back {len(report.reverted)} partial change(s)")

    # -----------------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------------

    def _finish(
        self,
        instruction: InstructionCard,
        board: Board,
        trigger: Literal["manual", "automatic"],
        changes: list[Change],
        errors: list[RunError],
        targets: list[ColumnResolution],
        status: Literal["completed", "failed"],
        is_fallback: bool = False,
    ) -> InstructionRunResult:
        run = InstructionRun(
            instruction_id=instruction.id,
            instruction_title=instruction.title,
            board_id=board.id,
            trigger=trigger,
            changes=changes,
            errors=errors,
        )
        self.ledger.save(run)

        success = status == "completed" and (bool(changes) or not errors)
        record_execution(instruction, trigger, success, len(changes))
        self.repo.save_instruction(instruction)

        logger.info(
            f"[ENGINE] '{instruction.title}' {status}: "
            f"{len(changes)} change(s), {len(errors)} error(s)"
        )

        if self.bus is not None:
            self.bus.emit(
                event_type="instruction.run.completed",
                source="engine",
                board_id=board.id,
                payload={
                    "run_id": run.id,
                    "instruction_id": instruction.id,
                    "action": instruction.action.kind,
                    "status": status,
                    "changes": len(changes),
                    "errors": len(errors),
                    "is_fallback": is_fallback,
                },
            )

        return InstructionRunResult(
            status=status,
            instruction_id=instruction.id,
            run=run,
            targets=targets,
            is_fallback=is_fallback,
        )


def _merge_properties(current: list[CardProperty], updates: list[CardProperty]) -> list[CardProperty]:
    merged = {p.key: p for p in current}
    for prop in updates:
        merged[prop.key] = prop
    return list(merged.values())


def _append_tasks(current: list[CardTask], new: list[CardTask]) -> list[CardTask]:
    seen = {t.title.lower() for t in current}
    tasks = list(current)
    for task in new:
        if task.title.lower() not in seen:
            seen.add(task.title.lower())
            tasks.append(task)
    return tasks
