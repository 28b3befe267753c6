"""
KANTHINK Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - A tolerant output parser

Agents are stateless between runs. State lives in the board store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from kanthink.models import Board, Card
from kanthink.router import RouterResponse


class AgentContext(BaseModel):
    """One card plus the rule text, for the per-card agents."""
    board: Board
    card: Card | None = None
    instructions: str = ""
    system_instructions: str | None = None


class BaseAgent(ABC):
    """
    Base class for all KANTHINK agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str — agent constraints + output schema
      - build_messages() — constructs the chat messages
      - parse_response() — extracts structured output, never raises
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Any):
        self.router = router

    def run(self, context: BaseModel, **kwargs) -> Any:
        """Execute the agent: build messages → call model → parse."""
        messages = self.build_messages(context)
        response = self.router.complete(
            role=self.role,
            messages=messages,
            **kwargs,
        )
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: BaseModel) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: BaseModel) -> Any:
        """Parse the raw LLM text into structured output."""
        ...

    def _system_msg(self, content: str | None = None) -> dict[str, str]:
        return {"role": "system", "content": content or self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
