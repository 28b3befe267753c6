"""
KANTHINK Board Context Builder

Projects a board snapshot into a compact text block for prompts.
Prompt size stays linear in the visible board: one line per
front-side card, excerpts capped, archived cards only on request.
Pure functions, no side effects.
"""

from __future__ import annotations

import re

from kanthink.models import Board, Card, Column

EXCERPT_CHARS = 150

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def _plain(text: str | None) -> str:
    if not text:
        return ""
    return _SPACE_RE.sub(" ", _TAG_RE.sub(" ", text)).strip()


def card_excerpt(card: Card, limit: int = EXCERPT_CHARS) -> str:
    """Summary if present, else the first message, flattened and cut to `limit` chars."""
    source = card.summary or card.first_message
    return _plain(source)[:limit]


def build_channel_header(board: Board, system_instructions: str | None = None) -> str:
    """Name, description and standing instructions of the board."""
    header = f"## Context\nChannel: {board.name}"
    if board.description:
        header += f"\n{board.description}"
    if system_instructions and system_instructions.strip():
        header += f"\n\nGeneral guidance:\n{system_instructions.strip()}"
    if board.ai_instructions and board.ai_instructions.strip():
        header += f"\n\nChannel focus:\n{board.ai_instructions.strip()}"
    return header


def build_column_context(
    board: Board,
    cards: dict[str, Card],
    target_column_id: str | None,
    include_archived: bool = False,
    excerpt_chars: int = EXCERPT_CHARS,
    column_ids: list[str] | None = None,
) -> str:
    """
    One section per column that has cards. The target column is always
    present (flagged), empty or not. Archived titles are listed under
    "Completed" only when include_archived is set. `column_ids`
    restricts the projection to a subset of columns.
    """
    sections: list[str] = []

    for column in board.columns:
        if column_ids is not None and column.id not in column_ids and column.id != target_column_id:
            continue

        is_target = column.id == target_column_id
        front = [cards[cid] for cid in column.card_ids if cid in cards]
        archived = (
            [cards[cid] for cid in column.backside_card_ids if cid in cards]
            if include_archived
            else []
        )

        if not front and not archived and not is_target:
            continue

        lines = [f"### {column.name}{' (generating here)' if is_target else ''}"]
        if front:
            for card in front:
                excerpt = card_excerpt(card, excerpt_chars)
                lines.append(f"- {card.title}: {excerpt}" if excerpt else f"- {card.title}")
        elif is_target:
            lines.append("(empty - new column)")

        if archived:
            lines.append("")
            lines.append("Completed:")
            lines.extend(f"- {card.title}" for card in archived)

        sections.append("\n".join(lines))

    return "\n\n".join(sections)


def build_board_context(
    board: Board,
    cards: dict[str, Card],
    target_column_id: str | None,
    include_archived: bool | None = None,
    system_instructions: str | None = None,
    excerpt_chars: int = EXCERPT_CHARS,
) -> str:
    """Channel header followed by the column projection."""
    if include_archived is None:
        include_archived = board.include_archived_in_ai

    parts = [build_channel_header(board, system_instructions)]
    columns = build_column_context(board, cards, target_column_id, include_archived, excerpt_chars)
    if columns:
        parts.append(f"## Current Board\n\n{columns}")
    return "\n\n".join(parts)


def describe_columns(board: Board) -> str:
    """Column list with ids and rules, for placement prompts."""
    lines = []
    for column in board.columns:
        line = f'- "{column.name}" (ID: {column.id})'
        if column.instructions:
            line += f"\n  Rules: {column.instructions}"
        lines.append(line)
    return "\n".join(lines)


def render_card(card: Card, column: Column | None = None, limit: int | None = None) -> str:
    """Full card rendering for per-card edit and placement prompts."""
    body = "\n".join(_plain(m.content) for m in card.messages) or "(no content)"
    if limit is not None and len(body) > limit:
        body = body[:limit] + "..."
    text = f"### Card ID: {card.id}"
    if column is not None:
        text += f"\n**Current Column:** {column.name}"
    text += f"\n**Title:** {card.title}"
    if card.summary:
        text += f"\n**Summary:** {card.summary}"
    text += f"\n**Content:**\n{body}"
    if card.tags:
        text += f"\n**Tags:** {', '.join(card.tags)}"
    if card.properties:
        text += "\n**Properties:** " + ", ".join(f"{p.key}: {p.value}" for p in card.properties)
    if card.tasks:
        text += "\n**Existing Tasks:**\n" + "\n".join(f"- [{t.status}] {t.title}" for t in card.tasks)
    return text
