"""
KANTHINK Board Model

Boards own columns and the ordering of card references.
Cards live in a flat table owned by the board store.
Instruction cards ("rules") and their runs belong to the board
that created them; a card only keeps a back-reference marker
to the rules that processed it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------

class CardMessage(BaseModel):
    """One entry in a card's thread."""
    id: str = Field(default_factory=lambda: new_id("msg_"))
    type: Literal["note", "question", "ai_response"] = "note"
    content: str
    created_at: str = Field(default_factory=utc_now)


class CardProperty(BaseModel):
    key: str
    value: str
    display_type: Literal["chip", "field"] = "chip"
    color: str | None = None


class CardTask(BaseModel):
    """A checklist item attached to a card."""
    id: str = Field(default_factory=lambda: new_id("task_"))
    title: str
    description: str = ""
    status: Literal["not_started", "in_progress", "done"] = "not_started"
    created_at: str = Field(default_factory=utc_now)


class Card(BaseModel):
    id: str = Field(default_factory=lambda: new_id("card_"))
    board_id: str = ""
    title: str
    messages: list[CardMessage] = Field(default_factory=list)
    summary: str | None = None
    tags: list[str] = Field(default_factory=list)
    properties: list[CardProperty] = Field(default_factory=list)
    tasks: list[CardTask] = Field(default_factory=list)
    cover_image_url: str | None = None
    source: Literal["manual", "ai"] = "manual"
    processed_by_instructions: dict[str, str] = Field(default_factory=dict)
    created_by_instruction_id: str | None = None
    # Bumped by the store on every mutation; undo compares against it
    version: int = 0
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def first_message(self) -> str | None:
        return self.messages[0].content if self.messages else None


class CardDraft(BaseModel):
    """A generated card that has not been inserted yet."""
    title: str
    html_body: str = ""
    is_fallback: bool = False


# ---------------------------------------------------------------------------
# Board
# ---------------------------------------------------------------------------

class Column(BaseModel):
    id: str = Field(default_factory=lambda: new_id("col_"))
    name: str
    instructions: str | None = None
    card_ids: list[str] = Field(default_factory=list)
    backside_card_ids: list[str] = Field(default_factory=list)


class Board(BaseModel):
    """A board (channel): an ordered list of columns plus its rules."""
    id: str = Field(default_factory=lambda: new_id("board_"))
    name: str
    description: str = ""
    ai_instructions: str = ""
    include_archived_in_ai: bool = False
    columns: list[Column] = Field(default_factory=list)
    instruction_ids: list[str] = Field(default_factory=list)

    def column(self, column_id: str) -> Column | None:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def locate(self, card_id: str) -> tuple[Column, int, bool] | None:
        """Find (column, index, archived) for a card reference."""
        for column in self.columns:
            if card_id in column.card_ids:
                return column, column.card_ids.index(card_id), False
            if card_id in column.backside_card_ids:
                return column, column.backside_card_ids.index(card_id), True
        return None


# ---------------------------------------------------------------------------
# Instruction cards
# ---------------------------------------------------------------------------

class GenerateAction(BaseModel):
    kind: Literal["generate"] = "generate"
    card_count: int = Field(default=5, ge=1, le=20)


class ModifyAction(BaseModel):
    kind: Literal["modify"] = "modify"


class MoveAction(BaseModel):
    kind: Literal["move"] = "move"


InstructionAction = Annotated[
    Union[GenerateAction, ModifyAction, MoveAction],
    Field(discriminator="kind"),
]

ACTION_NAMES = ("generate", "modify", "move")


def action_from_name(name: str, card_count: int | None = None) -> GenerateAction | ModifyAction | MoveAction:
    """Build the action variant for a plain action name."""
    if name == "generate":
        return GenerateAction(card_count=card_count or 5)
    if name == "modify":
        return ModifyAction()
    if name == "move":
        return MoveAction()
    raise ValueError(f"Unknown action: {name}. Known: {list(ACTION_NAMES)}")


class ColumnTarget(BaseModel):
    type: Literal["column"] = "column"
    column_id: str


class ColumnsTarget(BaseModel):
    type: Literal["columns"] = "columns"
    column_ids: list[str] = Field(min_length=1)


class BoardTarget(BaseModel):
    type: Literal["board"] = "board"


InstructionTarget = Annotated[
    Union[ColumnTarget, ColumnsTarget, BoardTarget],
    Field(discriminator="type"),
]


class AllColumns(BaseModel):
    type: Literal["all"] = "all"


class SelectedColumns(BaseModel):
    type: Literal["columns"] = "columns"
    column_ids: list[str] = Field(default_factory=list)


ContextColumns = Annotated[
    Union[AllColumns, SelectedColumns],
    Field(discriminator="type"),
]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ExecutionRecord(BaseModel):
    timestamp: str = Field(default_factory=utc_now)
    triggered_by: Literal["manual", "automatic"]
    success: bool
    cards_affected: int = 0


class InstructionCard(BaseModel):
    """A saved automation rule."""
    id: str = Field(default_factory=lambda: new_id("rule_"))
    board_id: str = ""
    title: str
    instructions: str = ""
    action: InstructionAction = Field(default_factory=GenerateAction)
    target: InstructionTarget = Field(default_factory=BoardTarget)
    context_columns: ContextColumns | None = None
    run_mode: Literal["manual", "automatic"] = "manual"
    # Name the rule was configured with; re-resolved on every run
    target_column_name: str | None = None
    conversation_history: list[ChatMessage] = Field(default_factory=list)

    # Automation bookkeeping (only meaningful when run_mode == "automatic")
    is_enabled: bool = True
    last_executed_at: str | None = None
    daily_execution_count: int = 0
    daily_count_reset_at: str | None = None
    execution_history: list[ExecutionRecord] = Field(default_factory=list)

    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def card_count(self) -> int | None:
        if isinstance(self.action, GenerateAction):
            return self.action.card_count
        return None


# ---------------------------------------------------------------------------
# Runs & changes
# ---------------------------------------------------------------------------

class CardSnapshot(BaseModel):
    """Full copy of the editable fields of a card."""
    title: str
    messages: list[CardMessage] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    properties: list[CardProperty] = Field(default_factory=list)
    tasks: list[CardTask] = Field(default_factory=list)

    @classmethod
    def of(cls, card: Card) -> "CardSnapshot":
        return cls(
            title=card.title,
            messages=[m.model_copy() for m in card.messages],
            tags=list(card.tags),
            properties=[p.model_copy() for p in card.properties],
            tasks=[t.model_copy() for t in card.tasks],
        )


class CardCreated(BaseModel):
    kind: Literal["card_created"] = "card_created"
    card_id: str
    column_id: str


class CardEdited(BaseModel):
    kind: Literal["card_edited"] = "card_edited"
    card_id: str
    before: CardSnapshot
    after: CardSnapshot
    previous_marker: str | None = None
    version_after: int = 0


class CardMoved(BaseModel):
    kind: Literal["card_moved"] = "card_moved"
    card_id: str
    from_column_id: str
    from_index: int
    to_column_id: str
    previous_marker: str | None = None
    version_after: int = 0


Change = Annotated[
    Union[CardCreated, CardEdited, CardMoved],
    Field(discriminator="kind"),
]


class RunError(BaseModel):
    card_id: str | None = None
    message: str


class InstructionRun(BaseModel):
    id: str = Field(default_factory=lambda: new_id("run_"))
    instruction_id: str
    instruction_title: str = ""
    board_id: str = ""
    timestamp: str = Field(default_factory=utc_now)
    trigger: Literal["manual", "automatic"] = "manual"
    changes: list[Change] = Field(default_factory=list)
    errors: list[RunError] = Field(default_factory=list)
    undone: bool = False
