"""
Card Mover — decides whether one card belongs in another column.

The answer names a destination by id or name; the engine resolves
it through the ColumnResolver, so a sloppy name still lands somewhere
sensible.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel

from kanthink.agents import AgentContext, BaseAgent
from kanthink.context import describe_columns, render_card
from kanthink.parsing import extract_json_object
from kanthink.router import RouterResponse

CONTENT_CHARS = 300


class MoveDecision(BaseModel):
    move: bool
    destination: str | None = None
    reason: str = ""


class CardMoverAgent(BaseAgent):
    role = "mover"

    system_prompt = """You are analyzing a card to determine which column it should be in.

Available columns and their rules:
{columns}

Decide if the card should be moved to a different column based on the user's criteria AND the column rules.

Respond with ONLY a JSON object:
{{"move": true, "destinationColumnId": "column-id-here", "reason": "brief explanation"}}

If the card should stay in its current column, respond with {{"move": false, "reason": "brief explanation"}}."""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        if context.card is None:
            raise ValueError("CardMoverAgent needs a card in its context")

        system = self.system_prompt.format(columns=describe_columns(context.board))

        section = f"## Context\nChannel: {context.board.name}"
        if context.system_instructions and context.system_instructions.strip():
            section += f"\n\nGeneral guidance:\n{context.system_instructions.strip()}"

        located = context.board.locate(context.card.id)
        column = located[0] if located else None
        card_section = "## Card to Analyze\n\n" + render_card(context.card, column, CONTENT_CHARS)

        task = "## Move Criteria\nDetermine if the card should be moved based on these criteria:"
        if context.instructions.strip():
            task += f"\n\n{context.instructions.strip()}"

        return [self._system_msg(system), self._user_msg("\n\n".join([section, card_section, task]))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> MoveDecision | None:
        data = extract_json_object(response.content)
        if data is None:
            logger.warning(f"[MOVER] No JSON object in response for card {context.card.id if context.card else '?'}")
            return None

        reason = data.get("reason") if isinstance(data.get("reason"), str) else ""
        destination = data.get("destinationColumnId") or data.get("destination")
        if not isinstance(destination, str) or not destination.strip():
            destination = None

        move = data.get("move")
        if move is None:
            # A bare destination is read as a move
            move = destination is not None
        if not move or destination is None:
            return MoveDecision(move=False, reason=reason)
        return MoveDecision(move=True, destination=destination.strip(), reason=reason)
