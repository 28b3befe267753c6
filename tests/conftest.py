import json

import pytest

from kanthink.config_loader import KanthinkConfig
from kanthink.models import Board, Card, CardMessage, Column
from kanthink.router import RouterResponse, WebResult, WebSearchResponse
from kanthink.store import InMemoryBoardRepository


class FakeRouter:
    """
    Scripted stand-in for the model router.

    Each queued response is a string, an exception instance (raised), or a
    callable(role, messages) returning a string. When the queue runs dry
    `default` is used.
    """

    def __init__(self, responses=None, default="[]", web_results=None, web_error=None):
        self.responses = list(responses or [])
        self.default = default
        self.calls = []
        self.web_results = web_results
        self.web_error = web_error
        self.web_calls = []

    @property
    def supports_web_search(self):
        return self.web_results is not None or self.web_error is not None

    def complete(self, role, messages, **kwargs):
        self.calls.append({"role": role, "messages": [dict(m) for m in messages], **kwargs})
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(role, messages)
        return RouterResponse(content=item, model="fake/model")

    def web_search(self, query, instructions):
        self.web_calls.append(query)
        if self.web_error is not None:
            raise self.web_error
        return WebSearchResponse(
            content="Some text mentioning https://made-up.example/fake",
            results=[WebResult(**r) for r in self.web_results],
        )


def cards_json(*titles):
    return json.dumps([{"title": t, "content": f"## {t}\\n\\nBody for {t}."} for t in titles])


@pytest.fixture
def fake_router_cls():
    return FakeRouter


@pytest.fixture
def config():
    cfg = KanthinkConfig()
    cfg.retry.delay_seconds = 0
    return cfg


@pytest.fixture
def board_repo():
    """Inbox (two cards, one archived) / Doing (empty) / Done (one card)."""
    board = Board(
        id="board_1",
        name="Product Ideas",
        description="Things we might build next.",
        columns=[
            Column(id="col_inbox", name="Inbox", instructions="Raw, unsorted ideas."),
            Column(id="col_doing", name="Doing", instructions="Concrete next steps only."),
            Column(id="col_done", name="Done"),
        ],
    )
    repo = InMemoryBoardRepository(boards=[board])
    repo.add_card("board_1", "col_inbox", Card(
        id="card_a",
        title="Dark mode",
        messages=[CardMessage(id="msg_a", type="note", content="<p>Users keep asking for it.</p>", created_at="2024-01-01T00:00:00+00:00")],
        tags=["ui"],
    ))
    repo.add_card("board_1", "col_inbox", Card(
        id="card_b",
        title="Offline sync",
        summary="Work without a connection and reconcile later.",
    ))
    repo.add_card("board_1", "col_inbox", Card(id="card_old", title="Old archived idea"), archived=True)
    repo.add_card("board_1", "col_done", Card(id="card_c", title="Login page"))
    return repo
