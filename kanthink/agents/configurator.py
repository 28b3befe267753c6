"""
Rule Configurator — the chat partner that helps a user set up a rule.

The model either keeps the conversation going or proposes a rule by
embedding a [RULE_CONFIG]{...}[/RULE_CONFIG] block in its answer. The
block is validated and stripped from what the user sees.
"""

from __future__ import annotations

import json
import re
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from kanthink.agents import BaseAgent
from kanthink.models import ChatMessage
from kanthink.router import RouterResponse

CONFIG_BLOCK_RE = re.compile(r"\[RULE_CONFIG\]([\s\S]*?)\[/RULE_CONFIG\]")
INSTRUCTIONS_BLOCK_RE = re.compile(r"\[INSTRUCTIONS\]([\s\S]*?)\[/INSTRUCTIONS\]")

CONFIG_PLACEHOLDER = "Here's what I've put together:"
INSTRUCTIONS_PLACEHOLDER = "Here are the instructions I've drafted based on our conversation:"


class RuleDraft(BaseModel):
    """A proposed rule, not yet committed to the board."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str = Field(min_length=1)
    instructions: str = Field(min_length=1)
    action: Literal["generate", "modify", "move"]
    target_column_name: str = Field(min_length=1)
    card_count: int | None = Field(default=None, ge=1, le=20)

    @model_validator(mode="after")
    def _card_count_only_for_generate(self) -> "RuleDraft":
        if self.action == "generate":
            if self.card_count is None:
                self.card_count = 5
        else:
            self.card_count = None
        return self


class ChatRequest(BaseModel):
    user_message: str = ""
    mode: Literal["create", "edit"] = "create"
    is_initial_greeting: bool = False
    channel_name: str
    channel_description: str = ""
    current_instructions: str = ""
    column_names: list[str] = Field(default_factory=list)
    existing_rules: list[str] = Field(default_factory=list)
    existing_config: RuleDraft | None = None
    conversation_history: list[ChatMessage] = Field(default_factory=list)


class ChatReply(BaseModel):
    response: str
    config: RuleDraft | None = None
    draft_instructions: str | None = None


def extract_rule_config(text: str) -> RuleDraft | None:
    """Validated rule draft from the first config block, or None."""
    match = CONFIG_BLOCK_RE.search(text)
    if not match:
        return None
    try:
        return RuleDraft.model_validate(json.loads(match.group(1).strip()))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"[CONFIGURATOR] Ignoring malformed rule config: {e}")
        return None


class RuleConfiguratorAgent(BaseAgent):
    role = "configurator"

    system_prompt = """You are Kan, a helpful AI assistant for configuring rules: AI-powered automations for a Kanban board.

Channel context:
- Channel name: "{channel_name}"
- Description: "{channel_description}"
- Channel instructions: {current_instructions}
- Available columns: {columns}
- Existing rules: {existing}{edit_context}

A rule has these fields:
- **title**: A short, descriptive name (e.g., "Generate article ideas", "Review and promote best idea")
- **action**: One of "generate" (create new cards), "modify" (update existing cards), or "move" (move cards between columns)
- **instructions**: Detailed instructions for the AI to follow when running this rule
- **targetColumnName**: Which column to add cards to (generate) or which column to work with (modify/move). Must be one of the available columns.
- **cardCount**: Number of cards to generate (only for generate action, typically 3-5)

Your approach:
{approach}

When you're ready to propose a configuration, include it in your response using this exact format:
[RULE_CONFIG]
{{"title": "...", "instructions": "...", "action": "generate|modify|move", "targetColumnName": "...", "cardCount": 5}}
[/RULE_CONFIG]

Important guidelines:
- Be conversational, warm, and concise
- Don't ask more than 2 questions per message
- If the user gives a clear description, propose the config right away
- The targetColumnName must match one of the available column names exactly
- For "generate" action, always include cardCount (default 5)
- For "modify" or "move" actions, don't include cardCount
- Don't duplicate existing rules; suggest variations if similar ones exist
- When proposing, also include a brief conversational message explaining what it does"""

    CREATE_APPROACH = (
        "1. Ask what they'd like to automate, specific to their channel (1-2 sentences)\n"
        "2. Based on their response, ask 1-2 focused clarifying questions if needed\n"
        "3. When you have enough context (usually after 1-3 exchanges), assemble the rule config"
    )
    EDIT_APPROACH = (
        "1. Summarize the current rule config and ask what they'd like to change\n"
        "2. Based on their response, ask a clarifying question if needed\n"
        "3. Present the updated config"
    )

    def build_messages(self, context: ChatRequest) -> list[dict[str, str]]:
        edit_context = ""
        existing = context.existing_config
        if context.mode == "edit" and existing is not None:
            edit_context = (
                "\n\nCurrent rule being edited:\n"
                f'- Title: "{existing.title}"\n'
                f"- Action: {existing.action}\n"
                f'- Instructions: "{existing.instructions}"\n'
                f'- Target column: "{existing.target_column_name}"'
            )
            if existing.card_count:
                edit_context += f"\n- Card count: {existing.card_count}"

        system = self.system_prompt.format(
            channel_name=context.channel_name,
            channel_description=context.channel_description or "No description set",
            current_instructions=f'"{context.current_instructions}"' if context.current_instructions else "None set yet",
            columns=", ".join(context.column_names) if context.column_names else "No columns yet",
            existing=", ".join(f'"{r}"' for r in context.existing_rules) if context.existing_rules else "None",
            edit_context=edit_context,
            approach=self.CREATE_APPROACH if context.mode == "create" else self.EDIT_APPROACH,
        )

        messages = [self._system_msg(system)]
        messages.extend({"role": m.role, "content": m.content} for m in context.conversation_history)

        if context.is_initial_greeting:
            if context.mode == "edit" and existing is not None:
                prompt = (
                    f'I want to edit my existing rule "{existing.title}". Summarize what it currently '
                    "does and ask what I'd like to change. Be brief."
                )
            else:
                prompt = (
                    f'I\'m creating a new rule for my "{context.channel_name}" channel. Based on the '
                    "channel context, give me a brief greeting and a helpful nudge, or ask what I'd "
                    "like to automate. Keep it to 2-3 sentences."
                )
            messages.append(self._user_msg(prompt))
        else:
            messages.append(self._user_msg(context.user_message))

        return messages

    def parse_response(self, response: RouterResponse, context: ChatRequest) -> ChatReply:
        text = response.content
        config = extract_rule_config(text)
        if config is not None:
            display = CONFIG_BLOCK_RE.sub("", text, count=1).strip()
            logger.info(f"[CONFIGURATOR] Proposed rule '{config.title}' ({config.action})")
            return ChatReply(response=display or CONFIG_PLACEHOLDER, config=config)

        match = INSTRUCTIONS_BLOCK_RE.search(text)
        if match:
            display = INSTRUCTIONS_BLOCK_RE.sub("", text, count=1).strip()
            return ChatReply(
                response=display or INSTRUCTIONS_PLACEHOLDER,
                draft_instructions=match.group(1).strip(),
            )

        return ChatReply(response=text.strip())
