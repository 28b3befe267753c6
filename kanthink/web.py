"""
Optional web augmentation for card generation.

When instructions ask for real-world material (videos, articles,
links, named domains), run one search call first and hand the model
a verified URL list taken from the search results' own citations.
A failed search never fails generation.
"""

from __future__ import annotations

import re
from typing import Any

from loguru import logger

WEB_KEYWORDS = (
    "youtube", "video", "link", "url", "website", "webpage",
    "search for", "find online", "look up", "browse",
    "article", "blog post", "podcast", "episode",
    "reddit", "twitter", "github", "stack overflow",
    "http", "www", ".com", ".org", ".io",
)

# Bare domains like "example.ai" or "docs.python.org"
_DOMAIN_RE = re.compile(r"\b(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z]{2,}\b", re.IGNORECASE)
_COMMON_TLDS = {
    "com", "org", "net", "io", "ai", "co", "app", "dev", "xyz", "info",
    "me", "tv", "us", "uk", "ca", "de", "fr", "edu", "gov", "tech",
}

SEARCH_INSTRUCTIONS = (
    "Search the web and return detailed, factual information including real URLs. "
    'The user needs real links and data for a Kanban board called "{board}". '
    "Return specific URLs, titles, and descriptions."
)


def detect_web_intent(instructions: str | None) -> bool:
    """True when the instructions ask for web material or name a domain."""
    if not instructions:
        return False
    lower = instructions.lower()
    if any(keyword in lower for keyword in WEB_KEYWORDS):
        return True
    return any(
        match.rsplit(".", 1)[-1].lower() in _COMMON_TLDS
        for match in _DOMAIN_RE.findall(instructions)
    )


def build_search_query(instructions: str, limit: int = 300) -> str:
    return re.sub(r"\s+", " ", instructions).strip()[:limit]


def web_research_section(results: list[Any]) -> str:
    """
    Prompt block listing only URLs taken from search-result metadata.
    The search text itself is never forwarded; it may contain unverified links.
    """
    section = (
        "## Web Research (verified links)\n"
        "IMPORTANT: Use ONLY the verified URLs listed below. Do NOT invent or "
        "fabricate any URLs. If no verified URLs are listed, do not include any URLs."
    )
    if results:
        url_list = "\n".join(f"- {r.title}: {r.url}" if r.title else f"- {r.url}" for r in results)
        section += f"\n\n### Verified URLs (use ONLY these)\n{url_list}"
    else:
        section += "\n\n### Verified URLs (use ONLY these)\n(none - do not include any links)"
    return section


def augment_with_web_research(
    messages: list[dict[str, str]],
    router: Any,
    instructions: str,
    board_name: str,
    query_chars: int = 300,
) -> bool:
    """
    Append web research to the last user message in place.

    Returns True when research was appended. Search failures are logged
    and swallowed.
    """
    if not getattr(router, "supports_web_search", False):
        return False
    if not detect_web_intent(instructions):
        return False

    query = build_search_query(instructions, query_chars)
    try:
        result = router.web_search(query, SEARCH_INSTRUCTIONS.format(board=board_name))
    except Exception as e:
        logger.warning(f"[WEB] Search failed, proceeding without: {e}")
        return False

    messages[-1]["content"] += "\n\n" + web_research_section(result.results)
    logger.info(f"[WEB] Added {len(result.results)} verified URL(s) to prompt")
    return True
