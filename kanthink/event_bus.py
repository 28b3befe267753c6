import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class BoardEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    board_id: str = ""
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for run completions and notifications."""

    def __init__(self):
        self._subscribers: List[Callable[[BoardEvent], None]] = []

    def subscribe(self, callback: Callable[[BoardEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, source: str, payload: Dict[str, Any], board_id: str = "") -> BoardEvent:
        """Construct and broadcast a BoardEvent to all subscribers."""
        event = BoardEvent(
            event_type=event_type,
            source=source,
            board_id=board_id,
            payload=payload,
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber must never fail the run that emitted the event
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")

        return event

