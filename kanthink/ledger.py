"""
KANTHINK Run/Undo Ledger

Keeps the runs each rule produced and reverses them on request.

Undo replays a run's changes in reverse order:
  - card_created  → delete the card
  - card_edited   → restore the card's prior snapshot and marker
  - card_moved    → reinsert at the original column and index, restore marker

Edits and moves carry the card version they left behind. If the card
has changed since, that change is skipped and reported as a conflict
instead of overwriting the later edit.
"""

from __future__ import annotations

from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from kanthink.models import Card, CardCreated, CardEdited, CardMoved, InstructionRun
from kanthink.store import BoardRepository, BoardStoreError


class RunNotFoundError(Exception):
    pass


class UndoConflict(BaseModel):
    card_id: str
    reason: str


class UndoReport(BaseModel):
    run_id: str
    status: Literal["undone", "already_undone"]
    reverted: list[str] = Field(default_factory=list)
    conflicts: list[UndoConflict] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflicts and not self.missing


def _restored_markers(card: Card, instruction_id: str, previous: str | None) -> dict[str, str]:
    markers = dict(card.processed_by_instructions)
    if previous is None:
        markers.pop(instruction_id, None)
    else:
        markers[instruction_id] = previous
    return markers


class RunLedger:
    def __init__(self, max_runs_per_instruction: int = 10, runs: list[InstructionRun] | None = None):
        self.max_runs_per_instruction = max_runs_per_instruction
        self._runs: dict[str, InstructionRun] = {}
        for run in runs or []:
            self._runs[run.id] = run

    # -- storage --------------------------------------------------------

    def save(self, run: InstructionRun) -> InstructionRun:
        self._runs[run.id] = run
        kept = self.runs_for(run.instruction_id)
        for stale in kept[self.max_runs_per_instruction:]:
            del self._runs[stale.id]
            logger.debug(f"[LEDGER] Pruned run {stale.id} for {run.instruction_id}")
        return run

    def get(self, run_id: str) -> InstructionRun | None:
        return self._runs.get(run_id)

    def runs_for(self, instruction_id: str) -> list[InstructionRun]:
        """Runs of one rule, newest first."""
        runs = [r for r in self._runs.values() if r.instruction_id == instruction_id]
        return list(reversed(sorted(runs, key=lambda r: r.timestamp)))

    def runs_for_board(self, board_id: str) -> list[InstructionRun]:
        runs = [r for r in self._runs.values() if r.board_id == board_id]
        return list(reversed(sorted(runs, key=lambda r: r.timestamp)))

    def __len__(self) -> int:
        return len(self._runs)

    # -- undo -----------------------------------------------------------

    def undo(self, run_id: str, repo: BoardRepository) -> UndoReport:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Unknown run: {run_id}")

        if run.undone:
            logger.info(f"[LEDGER] Run {run_id} is already undone, nothing to do")
            return UndoReport(run_id=run_id, status="already_undone")

        report = UndoReport(run_id=run_id, status="undone")

        for change in reversed(run.changes):
            card = repo.get_card(change.card_id)
            if card is None:
                report.missing.append(change.card_id)
                continue

            if isinstance(change, CardCreated):
                repo.delete_card(change.card_id)
                report.reverted.append(change.card_id)
                continue

            if isinstance(change, (CardEdited, CardMoved)) and card.version != change.version_after:
                report.conflicts.append(UndoConflict(
                    card_id=change.card_id,
                    reason=f"card changed since the run (version {change.version_after} → {card.version})",
                ))
                continue

            if isinstance(change, CardEdited):
                repo.update_card(
                    change.card_id,
                    title=change.before.title,
                    messages=[m.model_copy() for m in change.before.messages],
                    tags=list(change.before.tags),
                    properties=[p.model_copy() for p in change.before.properties],
                    tasks=[t.model_copy() for t in change.before.tasks],
                    processed_by_instructions=_restored_markers(card, run.instruction_id, change.previous_marker),
                )
                report.reverted.append(change.card_id)
            elif isinstance(change, CardMoved):
                try:
                    moved = repo.move_card(change.card_id, change.from_column_id, change.from_index)
                except BoardStoreError as e:
                    report.conflicts.append(UndoConflict(card_id=change.card_id, reason=str(e)))
                    continue
                repo.update_card(
                    change.card_id,
                    processed_by_instructions=_restored_markers(moved, run.instruction_id, change.previous_marker),
                )
                report.reverted.append(change.card_id)
            else:
                raise TypeError(f"Unknown change kind: {change!r}")

        run.undone = True
        logger.info(
            f"[LEDGER] Undid run {run_id}: {len(report.reverted)} reverted, "
            f"{len(report.conflicts)} conflict(s), {len(report.missing)} missing"
        )
        return report

    # -- persistence ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {"runs": [r.model_dump() for r in self._runs.values()]}

    @classmethod
    def from_dict(cls, data: dict[str, Any], max_runs_per_instruction: int = 10) -> "RunLedger":
        runs = [InstructionRun(**r) for r in data.get("runs", []) or []]
        return cls(max_runs_per_instruction=max_runs_per_instruction, runs=runs)
