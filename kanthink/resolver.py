"""
Column resolution.

Rules refer to columns by id or by the name they were configured
with. Columns get renamed, so names are matched loosely:

    id → exact name → case-insensitive → substring → first column

Every answer carries the strategy that produced it, so callers can
tell a confident match from a fallback.
"""

from __future__ import annotations

from typing import Literal

from loguru import logger
from pydantic import BaseModel

from kanthink.models import Board, BoardTarget, ColumnTarget, ColumnsTarget

MatchConfidence = Literal["id", "exact", "case_insensitive", "substring", "fallback"]


class ColumnResolutionError(Exception):
    """The board has no columns at all, so nothing can be resolved."""
    pass


class ColumnResolution(BaseModel):
    column_id: str
    confidence: MatchConfidence
    query: str | None = None

    @property
    def fell_back(self) -> bool:
        return self.confidence == "fallback"


class ColumnResolver:
    def __init__(self, board: Board):
        self.board = board

    def resolve(self, name_or_id: str | None) -> ColumnResolution:
        columns = self.board.columns
        if not columns:
            raise ColumnResolutionError(f"Board {self.board.id} has no columns")

        query = (name_or_id or "").strip()
        if query:
            for column in columns:
                if column.id == query:
                    return ColumnResolution(column_id=column.id, confidence="id", query=query)
            for column in columns:
                if column.name == query:
                    return ColumnResolution(column_id=column.id, confidence="exact", query=query)
            lowered = query.lower()
            for column in columns:
                if column.name.lower() == lowered:
                    return ColumnResolution(column_id=column.id, confidence="case_insensitive", query=query)
            for column in columns:
                if lowered in column.name.lower():
                    return ColumnResolution(column_id=column.id, confidence="substring", query=query)

        logger.warning(f"[RESOLVER] No column matches '{query}' on {self.board.name}, using first column")
        return ColumnResolution(column_id=columns[0].id, confidence="fallback", query=query or None)

    def resolve_target(
        self,
        target: ColumnTarget | ColumnsTarget | BoardTarget,
        target_column_name: str | None = None,
    ) -> list[ColumnResolution]:
        """
        Ordered column list for a rule target; the first entry is the primary.

        A stale id is retried by the rule's configured column name before
        falling back. Duplicates collapse to their first occurrence.
        """
        if isinstance(target, BoardTarget):
            return [ColumnResolution(column_id=c.id, confidence="id") for c in self.board.columns] or [
                self.resolve(None)
            ]
        if isinstance(target, ColumnTarget):
            return [self._resolve_with_name(target.column_id, target_column_name)]
        if isinstance(target, ColumnsTarget):
            resolved: list[ColumnResolution] = []
            seen: set[str] = set()
            for i, column_id in enumerate(target.column_ids):
                resolution = self._resolve_with_name(column_id, target_column_name if i == 0 else None)
                if resolution.column_id not in seen:
                    seen.add(resolution.column_id)
                    resolved.append(resolution)
            return resolved
        raise TypeError(f"Unknown target type: {target!r}")

    def _resolve_with_name(self, column_id: str, fallback_name: str | None) -> ColumnResolution:
        resolution = self.resolve(column_id)
        if resolution.fell_back and fallback_name:
            by_name = self.resolve(fallback_name)
            if not by_name.fell_back:
                return by_name
        return resolution
