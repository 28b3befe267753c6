"""
HTTP surface consumed by the board UI.

Authentication lives upstream: a signed-in caller arrives with an
X-User-Id header; everyone else is anonymous and tracked through a
long-lived cookie. Input and authorization problems become status
codes with a JSON {"error", "code"?} body; model failures never do.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Literal

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from kanthink.agents.configurator import ChatRequest, RuleDraft
from kanthink.agents.generator import GenerationRequest
from kanthink.chat import InstructionChat
from kanthink.config_loader import KanthinkConfig
from kanthink.engine import INSTRUCTION_NOT_FOUND, InstructionRuleEngine
from kanthink.event_bus import EventBus
from kanthink.ledger import RunLedger, RunNotFoundError
from kanthink.models import Board, Card, CardMessage, ChatMessage, Column
from kanthink.pipeline import GenerationPipeline, GenerationResult
from kanthink.quota import Credential, CredentialResolver, UsageLedger, new_anon_id
from kanthink.router import Router
from kanthink.store import BoardRepository, BoardStoreError

ANONYMOUS_LIMIT_REACHED = "ANONYMOUS_LIMIT_REACHED"


# ---------------------------------------------------------------------------
# Request bodies (camelCase on the wire)
# ---------------------------------------------------------------------------

class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ColumnPayload(_Wire):
    id: str
    name: str
    instructions: str | None = None
    card_ids: list[str] = Field(default_factory=list)
    backside_card_ids: list[str] = Field(default_factory=list)


class ChannelPayload(_Wire):
    id: str = ""
    name: str
    description: str = ""
    ai_instructions: str = ""
    include_backside_in_ai: bool = False
    columns: list[ColumnPayload] = Field(default_factory=list)

    def to_board(self) -> Board:
        return Board(
            id=self.id or "board_adhoc",
            name=self.name,
            description=self.description,
            ai_instructions=self.ai_instructions,
            include_archived_in_ai=self.include_backside_in_ai,
            columns=[
                Column(
                    id=c.id,
                    name=c.name,
                    instructions=c.instructions,
                    card_ids=list(c.card_ids),
                    backside_card_ids=list(c.backside_card_ids),
                )
                for c in self.columns
            ],
        )


class MessagePayload(_Wire):
    type: Literal["note", "question", "ai_response"] = "note"
    content: str = ""


class CardPayload(_Wire):
    id: str
    title: str
    summary: str | None = None
    messages: list[MessagePayload] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    def to_card(self, board_id: str) -> Card:
        return Card(
            id=self.id,
            board_id=board_id,
            title=self.title,
            summary=self.summary,
            tags=list(self.tags),
            messages=[CardMessage(type=m.type, content=m.content) for m in self.messages],
        )


class GenerateBody(_Wire):
    channel: ChannelPayload | None = None
    count: int = Field(default=5, ge=1, le=20)
    cards: dict[str, CardPayload] = Field(default_factory=dict)
    target_column_id: str | None = None
    system_instructions: str | None = None


class ChatContextPayload(_Wire):
    channel_name: str
    channel_description: str = ""
    current_instructions: str = ""
    column_names: list[str] = Field(default_factory=list)
    existing_shrooms: list[str] = Field(default_factory=list)
    existing_shroom_config: RuleDraft | None = None
    conversation_history: list[ChatMessage] = Field(default_factory=list)


class InstructionChatBody(_Wire):
    user_message: str = ""
    is_initial_greeting: bool = False
    mode: Literal["create", "edit"] = "create"
    context: ChatContextPayload | None = None


class CommitRuleBody(_Wire):
    # Validated by commit_rule; a bad draft is a 400
    config: dict[str, Any]
    conversation_history: list[ChatMessage] | None = None
    instruction_id: str | None = None


class RunBody(_Wire):
    trigger: Literal["manual", "automatic"] = "manual"
    triggering_card_id: str | None = None
    skip_already_processed: bool | None = None
    system_instructions: str | None = None


def _error(status: int, message: str, code: str | None = None) -> JSONResponse:
    body: dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    return JSONResponse(status_code=status, content=body)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    repo: BoardRepository,
    config: KanthinkConfig,
    router_factory: Callable[[Credential], Any] | None = None,
    usage: UsageLedger | None = None,
    credentials: CredentialResolver | None = None,
    ledger: RunLedger | None = None,
    bus: EventBus | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> FastAPI:
    usage = usage or UsageLedger(config.quota)
    credentials = credentials or CredentialResolver(usage)
    ledger = ledger or RunLedger(config.limits.max_runs_per_instruction)
    bus = bus or EventBus()
    cookie_name = config.quota.cookie_name

    def _default_router(credential: Credential) -> Router:
        return Router(config, model_override=credential.model, api_key=credential.api_key)

    make_router = router_factory or _default_router

    app = FastAPI(title="KANTHINK")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.repo = repo
    app.state.ledger = ledger
    app.state.usage = usage
    app.state.credentials = credentials
    app.state.bus = bus

    def _set_anon_cookie(response: JSONResponse, anon_id: str | None) -> JSONResponse:
        if anon_id:
            response.set_cookie(
                cookie_name,
                anon_id,
                max_age=config.quota.cookie_max_age_seconds,
                httponly=True,
                samesite="lax",
            )
        return response

    def _user_engine(user_id: str | None) -> InstructionRuleEngine | JSONResponse:
        if not user_id:
            return _error(401, "Please sign in to use AI features.")
        credential = credentials.for_user(user_id)
        if not credential.available:
            return _error(403, credential.error or "No AI access available. Configure your API key in Settings.")
        router = make_router(credential)
        pipeline = GenerationPipeline(router, config, bus=bus, sleep=sleep)
        return InstructionRuleEngine(repo, router, ledger, config, pipeline=pipeline, bus=bus)

    def _offline_engine() -> InstructionRuleEngine:
        # Undo and marker clearing never call a model
        return InstructionRuleEngine(repo, None, ledger, config, bus=bus)

    # -- ad-hoc generation ----------------------------------------------

    @app.post("/generate")
    def generate(body: GenerateBody, request: Request, x_user_id: str | None = Header(default=None)):
        anon_id: str | None = None
        try:
            if body.channel is None:
                return _error(400, "Missing required fields")

            if x_user_id:
                credential = credentials.for_user(x_user_id)
                if not credential.available:
                    return _error(403, credential.error or "No AI access available")
            else:
                anon_id = request.cookies.get(cookie_name) or new_anon_id()
                check = usage.check_anonymous(anon_id)
                if not check.allowed:
                    logger.info(f"[API] Anonymous limit reached for {anon_id}")
                    return _set_anon_cookie(_error(403, check.message or "Limit reached", ANONYMOUS_LIMIT_REACHED), anon_id)
                credential = credentials.for_anonymous()
                if not credential.available:
                    return _error(503, "AI service not available")

            board = body.channel.to_board()
            cards = {card_id: payload.to_card(board.id) for card_id, payload in body.cards.items()}
            target = board.column(body.target_column_id) if body.target_column_id else None
            if target is None and board.columns:
                target = board.columns[0]

            gen_request = GenerationRequest.for_board(
                board,
                cards,
                target.id if target else None,
                body.count,
                standing_instructions=body.system_instructions,
                excerpt_chars=config.limits.excerpt_chars,
            )

            subject = x_user_id or anon_id

            def _record_usage(result: GenerationResult) -> None:
                if credential.counts_usage and subject:
                    usage.record(subject, "generate-cards")

            def _notify(result: GenerationResult) -> None:
                if x_user_id:
                    bus.emit(
                        event_type="notification.ai_generation_completed",
                        source="api",
                        board_id=board.id,
                        payload={
                            "user_id": x_user_id,
                            "title": "Cards generated",
                            "body": f'{len(result.drafts)} card(s) generated for "{board.name}"',
                        },
                    )

            pipeline = GenerationPipeline(make_router(credential), config, bus=bus, sleep=sleep)
            result = pipeline.generate(gen_request, on_usage=_record_usage, on_complete=_notify, board_id=board.id)

            response = JSONResponse(content={
                "cards": [{"title": d.title, "content": d.html_body} for d in result.drafts],
                "debug": {
                    "systemPrompt": result.debug.system_prompt,
                    "userPrompt": result.debug.user_prompt,
                    "rawResponse": result.debug.raw_response,
                },
                "isFallback": result.is_fallback,
            })
            return _set_anon_cookie(response, anon_id)
        except Exception as e:
            logger.exception(f"[API] Generate cards error: {e}")
            return _error(500, "Failed to generate cards")

    # -- rule configuration chat ----------------------------------------

    @app.post("/instruction-chat")
    def instruction_chat(body: InstructionChatBody, x_user_id: str | None = Header(default=None)):
        if body.context is None:
            return _error(400, "Missing required fields")
        if not body.is_initial_greeting and not body.user_message:
            return _error(400, "Missing user message")
        if not x_user_id:
            return _error(401, "Please sign in to use AI features.")

        credential = credentials.for_user(x_user_id)
        if not credential.available:
            return _error(403, credential.error or "No AI access available. Configure your API key in Settings.")

        ctx = body.context
        chat_request = ChatRequest(
            user_message=body.user_message,
            mode=body.mode,
            is_initial_greeting=body.is_initial_greeting,
            channel_name=ctx.channel_name,
            channel_description=ctx.channel_description,
            current_instructions=ctx.current_instructions,
            column_names=ctx.column_names,
            existing_rules=ctx.existing_shrooms,
            existing_config=ctx.existing_shroom_config,
            conversation_history=ctx.conversation_history,
        )

        try:
            reply = InstructionChat(make_router(credential)).respond(chat_request)
        except Exception as e:
            logger.error(f"[API] Instruction chat LLM error: {e}")
            return _error(500, f"LLM error: {e}")

        if credential.counts_usage:
            usage.record(x_user_id, "instruction-chat")

        return {
            "success": True,
            "response": reply.response,
            "draftInstructions": reply.draft_instructions,
            "shroomConfig": reply.config.model_dump(by_alias=True) if reply.config else None,
        }

    @app.post("/boards/{board_id}/instructions")
    def commit_rule(board_id: str, body: CommitRuleBody):
        try:
            draft = RuleDraft.model_validate(body.config)
        except ValidationError as e:
            logger.info(f"[API] Rejected rule config for {board_id}: {e.error_count()} error(s)")
            return _error(400, "Invalid rule configuration", "INVALID_RULE_CONFIG")
        try:
            instruction = InstructionChat(None, repo).commit(
                draft, board_id, body.conversation_history, body.instruction_id
            )
        except BoardStoreError as e:
            return _error(404, str(e))
        return instruction.model_dump(mode="json")

    # -- rule runs --------------------------------------------------------

    @app.post("/instructions/{instruction_id}/run")
    def run_instruction(instruction_id: str, body: RunBody | None = None, x_user_id: str | None = Header(default=None)):
        body = body or RunBody()
        engine = _user_engine(x_user_id)
        if isinstance(engine, JSONResponse):
            return engine
        result = engine.run(
            instruction_id,
            trigger=body.trigger,
            triggering_card_id=body.triggering_card_id,
            skip_already_processed=body.skip_already_processed,
            system_instructions=body.system_instructions,
        )
        if result.reason == INSTRUCTION_NOT_FOUND:
            return _error(404, f"Unknown instruction: {instruction_id}")
        return result.model_dump(mode="json")

    @app.post("/runs/{run_id}/undo")
    def undo_run(run_id: str):
        engine = _offline_engine()
        try:
            report = engine.undo(run_id)
        except RunNotFoundError as e:
            return _error(404, str(e))
        return report.model_dump(mode="json")

    @app.get("/instructions/{instruction_id}/runs")
    def list_runs(instruction_id: str):
        if repo.get_instruction(instruction_id) is None:
            return _error(404, f"Unknown instruction: {instruction_id}")
        return [run.model_dump(mode="json") for run in ledger.runs_for(instruction_id)]

    @app.delete("/cards/{card_id}/processed/{instruction_id}")
    def clear_processed(card_id: str, instruction_id: str):
        engine = _offline_engine()
        try:
            card = engine.clear_instruction_run(card_id, instruction_id)
        except BoardStoreError as e:
            return _error(404, str(e))
        return card.model_dump(mode="json")

    return app
