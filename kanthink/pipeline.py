"""
KANTHINK Generation Pipeline

Board context + instructions → validated card drafts.

    prompt → (web research) → model call → tolerant parse
           → one retry after a short delay → stub fallback → truncate

`generate` never raises. It always returns a list of drafts, which
may be synthetic; synthetic drafts are flagged `is_fallback`.
"""

from __future__ import annotations

import random
import time
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, Field

from kanthink.agents.generator import CardGeneratorAgent, GenerationRequest
from kanthink.config_loader import KanthinkConfig
from kanthink.event_bus import EventBus
from kanthink.models import CardDraft
from kanthink.retry import Fallback, Ok, with_retry
from kanthink.web import augment_with_web_research

STUB_IDEAS = [
    "Try a new approach to this",
    "Consider the opposite perspective",
    "What if we simplified this?",
    "Explore related concepts",
    "Break this into smaller parts",
    "Look for patterns here",
    "Ask why three times",
    "Combine two unrelated ideas",
    "What would an expert do?",
    "Start from first principles",
]

FALLBACK_BODY = "<p>AI generation failed. Please try again.</p>"


def stub_drafts(count: int, rng: random.Random | None = None) -> list[CardDraft]:
    """`count` distinct stub ideas (capped at the pool size), flagged as fallback."""
    picker = rng or random
    ideas = picker.sample(STUB_IDEAS, min(count, len(STUB_IDEAS)))
    return [CardDraft(title=idea, html_body=FALLBACK_BODY, is_fallback=True) for idea in ideas]


class GenerationDebug(BaseModel):
    system_prompt: str = ""
    user_prompt: str = ""
    raw_response: str = ""


class GenerationResult(BaseModel):
    drafts: list[CardDraft] = Field(default_factory=list)
    is_fallback: bool = False
    attempts: int = 0
    web_augmented: bool = False
    debug: GenerationDebug = Field(default_factory=GenerationDebug)


GenerationHook = Callable[[GenerationResult], Any]


class GenerationPipeline:
    """
    Runs one generation end to end.

    Usage recording and completion notification are hooks owned by the
    caller; both fire at most once, and only when real (non-stub)
    drafts come back.
    """

    def __init__(
        self,
        router: Any,
        config: KanthinkConfig,
        bus: EventBus | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        rng: random.Random | None = None,
    ):
        self.router = router
        self.config = config
        self.bus = bus
        self.sleep = sleep
        self.rng = rng
        self.agent = CardGeneratorAgent(router)

    def generate(
        self,
        request: GenerationRequest,
        on_usage: GenerationHook | None = None,
        on_complete: GenerationHook | None = None,
        board_id: str = "",
    ) -> GenerationResult:
        count = request.requested_count
        debug = GenerationDebug()

        try:
            messages = self.agent.build_messages(request)
            debug.system_prompt = messages[0]["content"]
            web_augmented = augment_with_web_research(
                messages,
                self.router,
                request.combined_instructions,
                request.board_name,
                self.config.limits.web_query_chars,
            )
            debug.user_prompt = messages[-1]["content"]
        except Exception as e:
            logger.error(f"[PIPELINE] Could not assemble prompt: {e}")
            return GenerationResult(drafts=stub_drafts(count, self.rng), is_fallback=True, debug=debug)

        def _attempt() -> list[CardDraft]:
            try:
                response = self.router.complete(role=self.agent.role, messages=messages)
            except Exception as e:
                if debug.raw_response:
                    debug.raw_response += f"\nRetry error: {e}"
                else:
                    debug.raw_response = f"Error: {e}"
                raise
            debug.raw_response = response.content
            return self.agent.parse_response(response, request)

        outcome = with_retry(
            _attempt,
            attempts=self.config.retry.attempts,
            backoff=self.config.retry.delay_seconds,
            is_usable=lambda drafts: len(drafts) > 0,
            fallback=lambda: stub_drafts(count, self.rng),
            sleep=self.sleep,
            label="generation",
        )

        if isinstance(outcome, Ok):
            result = GenerationResult(
                drafts=outcome.value[:count],
                attempts=outcome.attempts,
                web_augmented=web_augmented,
                debug=debug,
            )
            logger.info(f"[PIPELINE] Generated {len(result.drafts)} card(s) in {result.attempts} attempt(s)")
            self._after_success(result, on_usage, on_complete, board_id)
            return result

        if isinstance(outcome, Fallback):
            logger.warning(f"[PIPELINE] Falling back to {len(outcome.value)} stub idea(s): {outcome.last_error}")
            return GenerationResult(
                drafts=outcome.value[:count],
                is_fallback=True,
                attempts=outcome.attempts,
                web_augmented=web_augmented,
                debug=debug,
            )

        raise TypeError(f"Unexpected retry outcome: {outcome!r}")

    def _after_success(
        self,
        result: GenerationResult,
        on_usage: GenerationHook | None,
        on_complete: GenerationHook | None,
        board_id: str,
    ) -> None:
        for name, hook in (("usage", on_usage), ("notification", on_complete)):
            if hook is None:
                continue
            try:
                hook(result)
            except Exception as e:
                logger.warning(f"[PIPELINE] {name} hook failed: {e}")

        if on_complete is None and self.bus is not None:
            self.bus.emit(
                event_type="generation.completed",
                source="pipeline",
                board_id=board_id,
                payload={"card_count": len(result.drafts), "attempts": result.attempts},
            )
