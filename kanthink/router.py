"""
KANTHINK Router — Vendor-Agnostic Model Abstraction

Routes agent calls through LiteLLM so the engine never knows
which vendor is backing it. Tracks spend per router instance,
runs the optional web search and logs every call. Retry policy
lives with the caller (see kanthink.retry), not here.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel

from kanthink.config_loader import KanthinkConfig

# Reasoning and search-preview models reject sampling parameters
_NO_TEMPERATURE_PREFIXES = ("gpt-5", "o1", "o3", "o4")


# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------

@dataclass
class SpendTracker:
    """Token and dollar spend of one router, checked before every call."""
    token_limit: int = 150_000
    dollar_limit: float = 2.0
    tokens: int = 0
    dollars: float = 0.0
    calls: int = 0

    @property
    def exhausted(self) -> bool:
        return self.tokens >= self.token_limit or self.dollars >= self.dollar_limit

    def add(self, response: Any) -> int:
        """Add one LiteLLM response to the totals and return its token count.

        Unpriced models contribute tokens but no cost.
        """
        used = getattr(getattr(response, "usage", None), "total_tokens", 0) or 0
        self.tokens += used
        try:
            self.dollars += litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ROUTER] No cost data for response: {e}")
        self.calls += 1
        return used

    def summary(self) -> dict:
        return {
            "tokens": self.tokens,
            "dollars": round(self.dollars, 4),
            "calls": self.calls,
            "tokens_left": max(0, self.token_limit - self.tokens),
            "dollars_left": round(max(0.0, self.dollar_limit - self.dollars), 4),
        }


def _accepts_temperature(model: str) -> bool:
    name = model.lower().split("/", 1)[-1]
    return not name.startswith(_NO_TEMPERATURE_PREFIXES) and "search" not in name


def _completion_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    timeout: int,
    api_key: str | None,
    response_format: dict | None = None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "timeout": timeout,
    }
    if _accepts_temperature(model):
        kwargs["temperature"] = temperature
    if response_format:
        kwargs["response_format"] = response_format
    if api_key:
        kwargs["api_key"] = api_key
    return kwargs


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class WebResult(BaseModel):
    title: str = ""
    url: str


class WebSearchResponse(BaseModel):
    content: str = ""
    results: list[WebResult] = []


class BudgetExceededError(Exception):
    pass


class Router:
    """
    Vendor-agnostic model router.

    Agents call `router.complete(role, messages)`; the role picks the
    model from `routing` config. One router serves one request or one
    CLI invocation, so its spend limit is per run.
    """

    ROLES = ("generator", "editor", "mover", "configurator")

    def __init__(self, config: KanthinkConfig, model_override: str | None = None, api_key: str | None = None):
        self.config = config
        self.api_key = api_key
        self.spend = SpendTracker(
            token_limit=config.limits.max_tokens_per_run,
            dollar_limit=config.limits.max_dollars_per_run,
        )
        self.models = {role: model_override or getattr(config.routing, role) for role in self.ROLES}
        litellm.suppress_debug_info = True

    @property
    def supports_web_search(self) -> bool:
        return bool(self.config.routing.web_search)

    def model_for(self, role: str) -> str:
        """
        Raises:
            ValueError: If the role has no model assigned.
        """
        model = self.models.get(role)
        if not model:
            raise ValueError(f"Unknown agent role: {role}. Known: {list(self.models)}")
        return model

    def _check_budget(self) -> None:
        if self.spend.exhausted:
            raise BudgetExceededError(f"Budget exceeded: {self.spend.summary()}")

    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 4096,
        response_format: dict | None = None,
    ) -> RouterResponse:
        """Send one chat completion for `role`.

        Raises:
            BudgetExceededError: If the token or dollar budget is spent.
        """
        self._check_budget()
        model = self.model_for(role)
        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")

        start = time.monotonic()
        response = litellm.completion(**_completion_kwargs(
            model,
            messages,
            temperature,
            max_tokens,
            self.config.limits.request_timeout_seconds,
            self.api_key,
            response_format,
        ))
        elapsed_ms = int((time.monotonic() - start) * 1000)
        tokens = self.spend.add(response)

        logger.debug(f"[ROUTER] {role} done in {elapsed_ms}ms, {tokens} tokens, ${self.spend.dollars:.4f} so far")

        return RouterResponse(
            content=response.choices[0].message.content or "",
            model=model,
            tokens_used=tokens,
            cost=self.spend.dollars,
            latency_ms=elapsed_ms,
        )

    def web_search(self, query: str, instructions: str) -> WebSearchResponse:
        """Run a search-grounded completion and return its text plus cited URLs.

        Only URLs carried in the response's own citation annotations are
        returned; URLs mentioned in free text are never trusted.
        """
        model = self.config.routing.web_search
        if not model:
            raise ValueError("Web search is not configured")
        self._check_budget()
        logger.debug(f"[ROUTER] web_search → {model}: {query[:80]}")

        kwargs = _completion_kwargs(
            model,
            [{"role": "system", "content": instructions}, {"role": "user", "content": query}],
            0.0,
            2048,
            self.config.limits.request_timeout_seconds,
            self.api_key,
        )
        kwargs["web_search_options"] = {"search_context_size": "medium"}
        response = litellm.completion(**kwargs)
        self.spend.add(response)

        message = response.choices[0].message
        results: list[WebResult] = []
        seen: set[str] = set()
        for annotation in _get(message, "annotations", None) or []:
            if _get(annotation, "type") != "url_citation":
                continue
            citation = _get(annotation, "url_citation", {}) or {}
            url = _get(citation, "url")
            if url and url not in seen:
                seen.add(url)
                results.append(WebResult(title=_get(citation, "title", "") or "", url=url))

        return WebSearchResponse(content=_get(message, "content", "") or "", results=results)
