"""
Append-only JSONL audit trail of board events.
"""

from __future__ import annotations

from pathlib import Path

from kanthink.event_bus import BoardEvent, EventBus


class AuditLog:
    """
    Subscribes to an EventBus and writes every event
    to an append-only JSONL file.
    """

    def __init__(self, file_path: Path, event_bus: EventBus):
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        event_bus.subscribe(self.log_event)

    def log_event(self, event: BoardEvent) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def read(self) -> list[BoardEvent]:
        if not self.file_path.exists():
            return []
        lines = self.file_path.read_text(encoding="utf-8").splitlines()
        return [BoardEvent.model_validate_json(line) for line in lines if line.strip()]
