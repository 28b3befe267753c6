"""
Card Generator — turns board context plus instructions into card drafts.

Prompt order matters: general context first, then the current board,
then the task, with column rules last so they carry the most weight.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, Field

from kanthink.agents import BaseAgent
from kanthink.context import EXCERPT_CHARS, build_channel_header, build_column_context
from kanthink.models import Board, Card, CardDraft
from kanthink.parsing import extract_json_array, markdown_to_html
from kanthink.router import RouterResponse


class GenerationRequest(BaseModel):
    """Everything the generator needs, already projected to text."""
    board_name: str = ""
    channel_context: str = ""
    channel_instructions: str | None = None
    board_context: str = ""
    standing_instructions: str | None = None
    instructions: str | None = None
    target_column_name: str | None = None
    target_column_instructions: str | None = None
    requested_count: int = Field(default=5, ge=1, le=20)

    @classmethod
    def for_board(
        cls,
        board: Board,
        cards: dict[str, Card],
        target_column_id: str | None,
        requested_count: int,
        standing_instructions: str | None = None,
        instructions: str | None = None,
        include_archived: bool | None = None,
        excerpt_chars: int = EXCERPT_CHARS,
        column_ids: list[str] | None = None,
    ) -> "GenerationRequest":
        if include_archived is None:
            include_archived = board.include_archived_in_ai
        column = board.column(target_column_id) if target_column_id else None
        return cls(
            board_name=board.name,
            channel_context=build_channel_header(board),
            channel_instructions=board.ai_instructions or None,
            board_context=build_column_context(
                board, cards, target_column_id, include_archived, excerpt_chars, column_ids
            ),
            standing_instructions=standing_instructions,
            instructions=instructions,
            target_column_name=column.name if column else None,
            target_column_instructions=column.instructions if column else None,
            requested_count=requested_count,
        )

    @property
    def combined_instructions(self) -> str:
        """All free text the user wrote, for intent detection."""
        parts = [
            self.channel_instructions,
            self.standing_instructions,
            self.instructions,
            self.target_column_instructions,
        ]
        return "\n".join(p for p in parts if p and p.strip())


class CardGeneratorAgent(BaseAgent):
    role = "generator"

    system_prompt = """Generate {count} cards as a JSON array.

Each card has:
- "title": concise (1-8 words)
- "content": detailed markdown-formatted content (2-4 paragraphs minimum)

Content Guidelines:
- Write substantively - explain each idea thoroughly
- Use markdown: **bold**, *italics*, bullet lists, numbered lists, headers (##)
- Include context, rationale, implications, or examples as appropriate
- Aim for 150-400 words per card - depth matters for planning/brainstorming
- Each card should stand alone as a complete thought
- If web research data is provided, use ONLY real URLs from that data. NEVER fabricate or guess URLs{column_rule}

Respond with ONLY the JSON array:
[{{"title": "Card Title", "content": "## Overview\\n\\nDetailed explanation..."}}]"""

    def build_messages(self, context: GenerationRequest) -> list[dict[str, str]]:
        count = context.requested_count
        column_rule = (
            "\n- IMPORTANT: All generated cards must fit the target column rules"
            if context.target_column_instructions
            else ""
        )
        system = self.system_prompt.format(count=count, column_rule=column_rule)

        parts: list[str] = []

        general = context.channel_context or "## Context"
        if context.standing_instructions and context.standing_instructions.strip():
            general += f"\n\nGeneral guidance:\n{context.standing_instructions.strip()}"
        parts.append(general)

        if context.board_context:
            parts.append(f"## Current Board\n\n{context.board_context}")

        if context.target_column_name:
            task = f'## Your Task\nGenerate {count} cards for the "{context.target_column_name}" column.'
        else:
            task = f"## Your Task\nGenerate {count} new cards."
        if context.instructions and context.instructions.strip():
            task += f"\n\n**Instructions:**\n{context.instructions.strip()}"
        # Column rules go last
        if context.target_column_instructions and context.target_column_instructions.strip():
            task += f"\n\n**Column Instructions:**\n{context.target_column_instructions.strip()}"
        parts.append(task)

        return [self._system_msg(system), self._user_msg("\n\n".join(parts))]

    def parse_response(self, response: RouterResponse, context: GenerationRequest) -> list[CardDraft]:
        items = extract_json_array(response.content)
        if items is None:
            logger.warning("[GENERATOR] No JSON array found in response")
            logger.debug(f"[GENERATOR] Raw response: {response.content[:500]}")
            return []

        drafts: list[CardDraft] = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("title"), str):
                continue
            title = item["title"].strip()
            if not title:
                continue
            content = item.get("content")
            body = markdown_to_html(content.strip()) if isinstance(content, str) and content.strip() else ""
            drafts.append(CardDraft(title=title, html_body=body))

        logger.info(f"[GENERATOR] Parsed {len(drafts)} card(s) from {len(items)} item(s)")
        return drafts
