"""
Quota and credentials.

Decides which model key a caller's request runs on and whether the
caller still has quota for it:

    caller's own key ("byok") → owner's shared key, if quota remains → none

Usage is only counted against the owner's shared key, and only for
generations that produced real cards.
"""

from __future__ import annotations

import os
import uuid
from collections import Counter
from typing import Literal, Mapping

from loguru import logger
from pydantic import BaseModel

from kanthink.config_loader import QuotaConfig

ANON_PREFIX = "anon_"

OWNER_KEY_VARS = ("OWNER_OPENAI_API_KEY", "OWNER_ANTHROPIC_API_KEY")
ENV_KEY_VARS = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY")


def new_anon_id() -> str:
    return f"{ANON_PREFIX}{uuid.uuid4()}"


class QuotaCheck(BaseModel):
    allowed: bool
    used: int = 0
    limit: int = 0
    message: str | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class Credential(BaseModel):
    source: Literal["byok", "owner", "env", "none"]
    api_key: str | None = None
    model: str | None = None
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.source != "none"

    @property
    def counts_usage(self) -> bool:
        return self.source == "owner"


class UsageLedger:
    """Per-subject request counts. Subjects are user ids or anon_ ids."""

    def __init__(self, config: QuotaConfig):
        self.config = config
        self._counts: Counter[str] = Counter()

    def used(self, subject: str) -> int:
        return self._counts[subject]

    def record(self, subject: str, request_type: str) -> None:
        self._counts[subject] += 1
        logger.debug(f"[QUOTA] {subject} used {request_type} ({self._counts[subject]} total)")

    def check_user(self, user_id: str) -> QuotaCheck:
        used, limit = self.used(user_id), self.config.user_limit
        if used >= limit:
            return QuotaCheck(
                allowed=False,
                used=used,
                limit=limit,
                message=(
                    f"You've used all {limit} AI requests on the shared key. "
                    "Add your own API key for unlimited usage."
                ),
            )
        return QuotaCheck(allowed=True, used=used, limit=limit)

    def check_anonymous(self, anon_id: str) -> QuotaCheck:
        used, limit = self.used(anon_id), self.config.anonymous_limit
        if used >= limit:
            return QuotaCheck(
                allowed=False,
                used=used,
                limit=limit,
                message=f"You've used all {limit} free AI generations. Sign in to keep generating.",
            )
        return QuotaCheck(allowed=True, used=used, limit=limit)


class CredentialResolver:
    def __init__(self, usage: UsageLedger, environ: Mapping[str, str] | None = None):
        self.usage = usage
        self.environ = environ if environ is not None else os.environ
        self._byok: dict[str, tuple[str, str | None]] = {}

    def set_byok(self, user_id: str, api_key: str, model: str | None = None) -> None:
        self._byok[user_id] = (api_key, model)

    def clear_byok(self, user_id: str) -> None:
        self._byok.pop(user_id, None)

    def _first_key(self, names: tuple[str, ...]) -> str | None:
        for name in names:
            value = self.environ.get(name)
            if value:
                return value
        return None

    def for_user(self, user_id: str) -> Credential:
        if user_id in self._byok:
            api_key, model = self._byok[user_id]
            return Credential(source="byok", api_key=api_key, model=model)

        check = self.usage.check_user(user_id)
        if not check.allowed:
            return Credential(source="none", error=check.message)

        owner = self._first_key(OWNER_KEY_VARS)
        if owner:
            return Credential(source="owner", api_key=owner)

        legacy = self._first_key(ENV_KEY_VARS)
        if legacy:
            return Credential(source="env", api_key=legacy)

        return Credential(
            source="none",
            error="No API key configured. Please sign in and configure your settings.",
        )

    def for_anonymous(self) -> Credential:
        """Anonymous callers only ever run on the shared key; the quota check happens first."""
        key = self._first_key(OWNER_KEY_VARS) or self._first_key(ENV_KEY_VARS)
        if key:
            return Credential(source="owner", api_key=key)
        return Credential(source="none", error="AI service not available")
