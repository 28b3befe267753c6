"""
KANTHINK Board Store Boundary

The engine never reaches into ambient board state. It is handed a
BoardRepository: read snapshots, apply discrete mutations. The
in-memory implementation backs the tests and the CLI, and can be
loaded from / written to a YAML or JSON board file.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from kanthink.models import Board, Card, CardMessage, InstructionCard, utc_now


class BoardStoreError(Exception):
    """Raised when a mutation references a board, column or card that does not exist."""
    pass


EDITABLE_CARD_FIELDS = {
    "title",
    "messages",
    "summary",
    "tags",
    "properties",
    "tasks",
    "cover_image_url",
    "processed_by_instructions",
}


class BoardRepository(ABC):
    """Read snapshots and apply mutations against the external board store."""

    @abstractmethod
    def get_board(self, board_id: str) -> Board: ...

    @abstractmethod
    def get_card(self, card_id: str) -> Card | None: ...

    @abstractmethod
    def create_card(
        self,
        board_id: str,
        column_id: str,
        title: str,
        html_body: str = "",
        source: str = "ai",
        created_by_instruction_id: str | None = None,
    ) -> Card: ...

    @abstractmethod
    def update_card(self, card_id: str, **fields: Any) -> Card: ...

    @abstractmethod
    def delete_card(self, card_id: str) -> None: ...

    @abstractmethod
    def move_card(self, card_id: str, to_column_id: str, index: int | None = None) -> Card: ...

    @abstractmethod
    def get_instruction(self, instruction_id: str) -> InstructionCard | None: ...

    @abstractmethod
    def save_instruction(self, instruction: InstructionCard) -> InstructionCard: ...

    @abstractmethod
    def delete_instruction(self, instruction_id: str) -> None: ...

    def cards_in(self, board_id: str, column_id: str, archived: bool = False) -> list[Card]:
        """Cards of one column, in board order. Dangling references are skipped."""
        column = self.get_board(board_id).column(column_id)
        if column is None:
            return []
        ids = column.backside_card_ids if archived else column.card_ids
        cards = [self.get_card(card_id) for card_id in ids]
        return [c for c in cards if c is not None]

    def cards_by_id(self, board_id: str) -> dict[str, Card]:
        board = self.get_board(board_id)
        result: dict[str, Card] = {}
        for column in board.columns:
            for card_id in [*column.card_ids, *column.backside_card_ids]:
                card = self.get_card(card_id)
                if card is not None:
                    result[card_id] = card
        return result

    def list_instructions(self, board_id: str) -> list[InstructionCard]:
        board = self.get_board(board_id)
        found = [self.get_instruction(i) for i in board.instruction_ids]
        return [i for i in found if i is not None]


class InMemoryBoardRepository(BoardRepository):
    """Dict-backed store. Every read returns a copy; only mutations change state."""

    def __init__(
        self,
        boards: list[Board] | None = None,
        cards: list[Card] | None = None,
        instructions: list[InstructionCard] | None = None,
    ):
        self._boards: dict[str, Board] = {b.id: b for b in boards or []}
        self._cards: dict[str, Card] = {c.id: c for c in cards or []}
        self._instructions: dict[str, InstructionCard] = {i.id: i for i in instructions or []}

    # -- boards ---------------------------------------------------------

    def get_board(self, board_id: str) -> Board:
        board = self._boards.get(board_id)
        if board is None:
            raise BoardStoreError(f"Unknown board: {board_id}")
        return board.model_copy(deep=True)

    @property
    def board_ids(self) -> list[str]:
        return list(self._boards)

    # -- cards ----------------------------------------------------------

    def get_card(self, card_id: str) -> Card | None:
        card = self._cards.get(card_id)
        return card.model_copy(deep=True) if card else None

    def add_card(self, board_id: str, column_id: str, card: Card, archived: bool = False) -> Card:
        """Insert a fully-formed card (seeding, imports)."""
        column = self._column(board_id, column_id)
        card.board_id = board_id
        self._cards[card.id] = card.model_copy(deep=True)
        (column.backside_card_ids if archived else column.card_ids).append(card.id)
        return card

    def create_card(
        self,
        board_id: str,
        column_id: str,
        title: str,
        html_body: str = "",
        source: str = "ai",
        created_by_instruction_id: str | None = None,
    ) -> Card:
        column = self._column(board_id, column_id)
        messages = [CardMessage(type="ai_response" if source == "ai" else "note", content=html_body)] if html_body else []
        card = Card(
            board_id=board_id,
            title=title,
            messages=messages,
            source=source,
            created_by_instruction_id=created_by_instruction_id,
        )
        self._cards[card.id] = card
        column.card_ids.append(card.id)
        logger.debug(f"[STORE] Created card {card.id} in {column.name}")
        return card.model_copy(deep=True)

    def update_card(self, card_id: str, **fields: Any) -> Card:
        card = self._require_card(card_id)
        unknown = set(fields) - EDITABLE_CARD_FIELDS
        if unknown:
            raise BoardStoreError(f"Fields not editable: {sorted(unknown)}")
        for name, value in fields.items():
            setattr(card, name, value)
        card.version += 1
        card.updated_at = utc_now()
        return card.model_copy(deep=True)

    def delete_card(self, card_id: str) -> None:
        card = self._require_card(card_id)
        board = self._boards.get(card.board_id)
        if board:
            for column in board.columns:
                if card_id in column.card_ids:
                    column.card_ids.remove(card_id)
                if card_id in column.backside_card_ids:
                    column.backside_card_ids.remove(card_id)
        del self._cards[card_id]
        logger.debug(f"[STORE] Deleted card {card_id}")

    def move_card(self, card_id: str, to_column_id: str, index: int | None = None) -> Card:
        card = self._require_card(card_id)
        destination = self._column(card.board_id, to_column_id)
        self._detach(card)
        if index is None or index >= len(destination.card_ids):
            destination.card_ids.append(card_id)
        else:
            destination.card_ids.insert(max(index, 0), card_id)
        card.version += 1
        card.updated_at = utc_now()
        return card.model_copy(deep=True)

    def archive_card(self, card_id: str) -> Card:
        card = self._require_card(card_id)
        located = self._boards[card.board_id].locate(card_id)
        if located is None:
            raise BoardStoreError(f"Card {card_id} is not on its board")
        column, _, archived = located
        if not archived:
            column.card_ids.remove(card_id)
            column.backside_card_ids.append(card_id)
            card.version += 1
            card.updated_at = utc_now()
        return card.model_copy(deep=True)

    # -- instructions ---------------------------------------------------

    def get_instruction(self, instruction_id: str) -> InstructionCard | None:
        instruction = self._instructions.get(instruction_id)
        return instruction.model_copy(deep=True) if instruction else None

    def save_instruction(self, instruction: InstructionCard) -> InstructionCard:
        board = self._boards.get(instruction.board_id)
        if board is None:
            raise BoardStoreError(f"Unknown board: {instruction.board_id}")
        instruction.updated_at = utc_now()
        self._instructions[instruction.id] = instruction.model_copy(deep=True)
        if instruction.id not in board.instruction_ids:
            board.instruction_ids.append(instruction.id)
        return instruction

    def delete_instruction(self, instruction_id: str) -> None:
        instruction = self._instructions.pop(instruction_id, None)
        if instruction is None:
            return
        board = self._boards.get(instruction.board_id)
        if board and instruction_id in board.instruction_ids:
            board.instruction_ids.remove(instruction_id)

    # -- helpers --------------------------------------------------------

    def _require_card(self, card_id: str) -> Card:
        card = self._cards.get(card_id)
        if card is None:
            raise BoardStoreError(f"Unknown card: {card_id}")
        return card

    def _column(self, board_id: str, column_id: str):
        board = self._boards.get(board_id)
        if board is None:
            raise BoardStoreError(f"Unknown board: {board_id}")
        column = board.column(column_id)
        if column is None:
            raise BoardStoreError(f"Unknown column {column_id} on board {board_id}")
        return column

    def _detach(self, card: Card) -> None:
        board = self._boards[card.board_id]
        for column in board.columns:
            if card.id in column.card_ids:
                column.card_ids.remove(card.id)
            if card.id in column.backside_card_ids:
                column.backside_card_ids.remove(card.id)

    # -- persistence ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "boards": [b.model_dump() for b in self._boards.values()],
            "cards": [c.model_dump() for c in self._cards.values()],
            "instructions": [i.model_dump() for i in self._instructions.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InMemoryBoardRepository":
        boards = [Board(**b) for b in data.get("boards", [])]
        cards = [Card(**c) for c in data.get("cards", [])]
        instructions = [InstructionCard(**i) for i in data.get("instructions", [])]
        return cls(boards=boards, cards=cards, instructions=instructions)

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryBoardRepository":
        return cls.from_dict(read_board_file(path))

    def dump(self, path: Path, extra: dict[str, Any] | None = None) -> None:
        """Write the store back to `path`; `extra` keys (e.g. runs) ride along."""
        write_board_file(path, {**self.to_dict(), **(extra or {})})


def read_board_file(path: Path) -> dict[str, Any]:
    """Board file contents: JSON for .json, YAML otherwise. A missing file reads as empty."""
    path = Path(path)
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        if path.suffix == ".json":
            return json.load(f)
        return yaml.safe_load(f) or {}


def write_board_file(path: Path, data: dict[str, Any]) -> None:
    path = Path(path)
    if path.suffix == ".json":
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
