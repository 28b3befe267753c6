"""
Conversational rule configuration.

A user chats with the configurator until it proposes a rule. The
proposal can be revised by chatting on, or committed: the column name
it mentions is resolved against the board (the same loose matching
rules use at run time) and an InstructionCard is saved.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from kanthink.agents.configurator import ChatReply, ChatRequest, RuleConfiguratorAgent, RuleDraft
from kanthink.models import BoardTarget, ChatMessage, ColumnTarget, InstructionCard, action_from_name
from kanthink.resolver import ColumnResolver
from kanthink.store import BoardRepository

WHOLE_BOARD = "(whole board)"


class InstructionChat:
    def __init__(self, router: Any, repo: BoardRepository | None = None):
        self.agent = RuleConfiguratorAgent(router)
        self.repo = repo

    def respond(self, request: ChatRequest) -> ChatReply:
        """One chat turn. Backend failures propagate; the HTTP layer reports them."""
        reply = self.agent.run(request)
        if reply.config is not None:
            logger.info(f"[CHAT] Draft ready: {reply.config.title}")
        return reply

    def request_for_board(
        self,
        board_id: str,
        user_message: str = "",
        mode: str = "create",
        is_initial_greeting: bool = False,
        conversation_history: list[ChatMessage] | None = None,
        editing: InstructionCard | None = None,
    ) -> ChatRequest:
        """Assemble the chat context from the stored board."""
        if self.repo is None:
            raise ValueError("InstructionChat needs a repository to read boards")
        board = self.repo.get_board(board_id)
        existing = None
        if editing is not None:
            existing = RuleDraft(
                title=editing.title,
                instructions=editing.instructions or editing.title,
                action=editing.action.kind,
                target_column_name=editing.target_column_name or _column_name(board, editing) or WHOLE_BOARD,
                card_count=editing.card_count,
            )
        return ChatRequest(
            user_message=user_message,
            mode=mode,
            is_initial_greeting=is_initial_greeting,
            channel_name=board.name,
            channel_description=board.description,
            current_instructions=board.ai_instructions,
            column_names=[c.name for c in board.columns],
            existing_rules=[i.title for i in self.repo.list_instructions(board_id)],
            existing_config=existing,
            conversation_history=conversation_history or (editing.conversation_history if editing else []),
        )

    def commit(
        self,
        draft: RuleDraft,
        board_id: str,
        conversation_history: list[ChatMessage] | None = None,
        instruction_id: str | None = None,
    ) -> InstructionCard:
        """Save a proposed rule, or overwrite the rule being edited."""
        if self.repo is None:
            raise ValueError("InstructionChat needs a repository to commit rules")
        board = self.repo.get_board(board_id)
        existing = self.repo.get_instruction(instruction_id) if instruction_id else None

        instruction = existing or InstructionCard(board_id=board_id, title=draft.title)
        instruction.title = draft.title
        instruction.instructions = draft.instructions
        instruction.action = action_from_name(draft.action, draft.card_count)
        if _keeps_whole_board(draft, existing):
            instruction.target = BoardTarget()
            instruction.target_column_name = None
            where = "whole board"
        else:
            resolution = ColumnResolver(board).resolve(draft.target_column_name)
            if resolution.fell_back:
                logger.warning(f"[CHAT] Column '{draft.target_column_name}' not found, using first column")
            instruction.target = ColumnTarget(column_id=resolution.column_id)
            instruction.target_column_name = draft.target_column_name
            where = f"column {resolution.column_id} ({resolution.confidence})"
        if conversation_history is not None:
            instruction.conversation_history = list(conversation_history)

        saved = self.repo.save_instruction(instruction)
        logger.info(f"[CHAT] Committed rule '{saved.title}' → {where}")
        return saved


def _keeps_whole_board(draft: RuleDraft, existing: InstructionCard | None) -> bool:
    if draft.target_column_name == WHOLE_BOARD:
        return True
    return (
        existing is not None
        and isinstance(existing.target, BoardTarget)
        and draft.target_column_name == existing.target_column_name
    )


def _column_name(board, instruction: InstructionCard) -> str | None:
    if isinstance(instruction.target, ColumnTarget):
        column = board.column(instruction.target.column_id)
        return column.name if column else None
    return None
