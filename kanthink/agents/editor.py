"""
Card Editor — rewrites one card according to a rule's instructions.

One call per card keeps failures local: a bad answer for one card
never costs the rest of the batch. Tags, properties and tasks are
only offered to the model when the rule's instructions ask for them.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel

from kanthink.agents import AgentContext, BaseAgent
from kanthink.context import render_card
from kanthink.models import CardProperty, CardTask
from kanthink.parsing import extract_json_object, markdown_to_html
from kanthink.router import RouterResponse

TAG_KEYWORDS = ("tag", "tags", "label", "labels")
PROPERTY_KEYWORDS = ("property", "properties", "categorize", "category", "metadata")
TASK_KEYWORDS = ("task", "tasks", "action item", "todo", "to-do", "checklist")


class Capabilities(BaseModel):
    tags: bool = False
    properties: bool = False
    tasks: bool = False


def capabilities_for(instructions: str) -> Capabilities:
    lower = instructions.lower()
    return Capabilities(
        tags=any(k in lower for k in TAG_KEYWORDS),
        properties=any(k in lower for k in PROPERTY_KEYWORDS),
        tasks=any(k in lower for k in TASK_KEYWORDS),
    )


class CardEdit(BaseModel):
    """What the model wants changed on one card. None fields stay as they are."""
    changed: bool = True
    title: str | None = None
    html_body: str | None = None
    tags: list[str] | None = None
    # Set by key; other properties on the card are kept
    properties: list[CardProperty] | None = None
    # New tasks to append
    tasks: list[CardTask] | None = None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.title, self.html_body, self.tags, self.properties, self.tasks)
        )


class CardEditorAgent(BaseAgent):
    role = "editor"

    system_prompt = """You are modifying an existing card based on instructions.

Analyze the card's content and apply the requested modifications.

Respond with ONLY a JSON object:
{{"changed": true, "title": "Updated Title", "content": "Updated content in markdown"{fields}}}

- Keep the title concise (1-8 words).
- "content" is added to the card as a new AI response; omit it if the body needs no addition.
- If the card doesn't need modification, respond with {{"changed": false}}.{rules}"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        if context.card is None:
            raise ValueError("CardEditorAgent needs a card in its context")

        allowed = capabilities_for(context.instructions)
        fields: list[str] = []
        rules: list[str] = []
        if allowed.tags:
            fields.append('"tags": ["tag"]')
            rules.append('"tags" replaces the card\'s tag list; reuse existing tag names where they fit.')
        else:
            rules.append("IMPORTANT: Do NOT add tags - this was not requested.")
        if allowed.properties:
            fields.append('"properties": [{"key": "category", "value": "Example", "displayType": "chip", "color": "blue"}]')
            rules.append('"properties" sets values by key; properties you leave out are kept.')
        else:
            rules.append("Do NOT add properties - this was not requested.")
        if allowed.tasks:
            fields.append('"tasks": [{"title": "Action item", "description": "Details"}]')
            rules.append("Only create NEW tasks - don't duplicate existing tasks shown on the card.")
        else:
            rules.append("Do NOT create tasks or action items - this was not requested.")

        system = self.system_prompt.format(
            fields="".join(f", {f}" for f in fields),
            rules="".join(f"\n- {r}" for r in rules),
        )

        section = f"## Context\nChannel: {context.board.name}"
        if context.system_instructions and context.system_instructions.strip():
            section += f"\n\nGeneral guidance:\n{context.system_instructions.strip()}"

        card_section = "## Card to Modify\n\n" + render_card(context.card)

        task = "## Your Task\nModify the card according to these instructions:"
        if context.instructions.strip():
            task += f"\n\n{context.instructions.strip()}"

        return [self._system_msg(system), self._user_msg("\n\n".join([section, card_section, task]))]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> CardEdit | None:
        data = extract_json_object(response.content)
        if data is None:
            logger.warning(f"[EDITOR] No JSON object in response for card {context.card.id if context.card else '?'}")
            return None

        if data.get("changed") is False:
            return CardEdit(changed=False)

        allowed = capabilities_for(context.instructions)
        title = data.get("title")
        content = data.get("content")

        edit = CardEdit(
            title=title.strip() if isinstance(title, str) and title.strip() else None,
            html_body=markdown_to_html(content.strip()) if isinstance(content, str) and content.strip() else None,
        )
        tags = data.get("tags")
        if allowed.tags and isinstance(tags, list):
            edit.tags = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
        if allowed.properties:
            edit.properties = _parse_properties(data.get("properties"))
        if allowed.tasks:
            edit.tasks = _parse_tasks(data.get("tasks"))

        if edit.is_empty:
            return None
        return edit


def _parse_properties(items) -> list[CardProperty] | None:
    if not isinstance(items, list):
        return None
    properties = [
        CardProperty(
            key=item["key"].strip(),
            value=item["value"].strip(),
            display_type="field" if item.get("displayType") == "field" else "chip",
            color=item["color"] if isinstance(item.get("color"), str) else None,
        )
        for item in items
        if isinstance(item, dict)
        and isinstance(item.get("key"), str) and item["key"].strip()
        and isinstance(item.get("value"), str)
    ]
    return properties or None


def _parse_tasks(items) -> list[CardTask] | None:
    if not isinstance(items, list):
        return None
    tasks = [
        CardTask(
            title=item["title"].strip(),
            description=item["description"].strip() if isinstance(item.get("description"), str) else "",
        )
        for item in items
        if isinstance(item, dict) and isinstance(item.get("title"), str) and item["title"].strip()
    ]
    return tasks or None
