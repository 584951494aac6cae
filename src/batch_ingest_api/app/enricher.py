from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .category_cache import pick_default_category
from .llm import LLMAdapter
from .models import EnrichedResource, ResourceItem
from .timeouts import run_with_timeout

logger = logging.getLogger(__name__)

MAX_TAGS = 5
FALLBACK_TAGS = ["resource", "share"]

# Checked in order against the lowercased name; the first hit wins.
KEYWORD_CATEGORIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("movie", "film", "video"), "Movies & TV"),
    (("music", "song", "audio"), "Music"),
    (("software", "tool", "app"), "Software & Tools"),
    (("game",), "Games"),
    (("tutorial", "course", "learn"), "Learning"),
)

ENRICH_SYSTEM_PROMPT = (
    "You are a resource cataloguing assistant. Given a shared resource name and link, "
    "write a concise title, a helpful description, pick exactly one category from the "
    "allowed list, and suggest 3-5 search tags. Return only a JSON object with keys "
    '"title", "description", "category", "tags".'
)


class EnrichmentReply(BaseModel):
    title: str = ""
    description: str = ""
    category: str | None = None
    tags: list[str] = Field(default_factory=list)


class ResourceEnricher:
    """Fill in title, description, category, and tags for a submitted link.

    The provider is optional. Without it, or whenever the call fails, times out,
    or returns something unusable, a deterministic fallback is used so enrichment
    itself never fails an item.
    """

    def __init__(
        self,
        *,
        llm_adapter: LLMAdapter | None,
        ai_timeout_s: float = 10.0,
        default_category_id: int = 1,
    ) -> None:
        self.llm_adapter = llm_adapter
        self.ai_timeout_s = ai_timeout_s
        self.default_category_id = default_category_id

    def enrich(self, item: ResourceItem, category_map: dict[str, int]) -> EnrichedResource:
        adapter = self.llm_adapter
        if adapter is None:
            logger.warning("enrich event=fallback name=%r reason=no_provider", item.name)
            return self.fallback(item, category_map)
        try:
            reply = run_with_timeout(
                lambda: self._ask_provider(adapter, item, category_map),
                timeout_s=self.ai_timeout_s,
                label="enrichment",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("enrich event=fallback name=%r reason=%s", item.name, exc)
            return self.fallback(item, category_map)

        default_id = pick_default_category(category_map, self.default_category_id)
        category_id = category_map.get((reply.category or "").strip(), default_id)
        tags = _clean_tags(reply.tags) or list(FALLBACK_TAGS)
        return EnrichedResource(
            title=reply.title.strip() or item.name,
            description=reply.description.strip() or _fallback_description(item.name),
            link=item.link,
            category_id=category_id,
            tags=tags,
            source="ai",
        )

    def fallback(self, item: ResourceItem, category_map: dict[str, int]) -> EnrichedResource:
        return EnrichedResource(
            title=item.name,
            description=_fallback_description(item.name),
            link=item.link,
            category_id=guess_category(item.name, category_map, self.default_category_id),
            tags=list(FALLBACK_TAGS),
            source="fallback",
        )

    def _ask_provider(
        self, adapter: LLMAdapter, item: ResourceItem, category_map: dict[str, int]
    ) -> EnrichmentReply:
        categories = ", ".join(category_map) or "(none)"
        user_prompt = (
            f"Resource name: {item.name}\n"
            f"Resource link: {item.link}\n"
            f"Allowed categories: {categories}"
        )
        return adapter.generate_structured(
            system_prompt=ENRICH_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            response_model=EnrichmentReply,
            timeout_s=self.ai_timeout_s,
        )


def guess_category(name: str, category_map: dict[str, int], fallback_id: int) -> int:
    """Keyword routing over the lowercased name, else the default category."""
    default_id = pick_default_category(category_map, fallback_id)
    lowered = name.lower()
    for keywords, category_name in KEYWORD_CATEGORIES:
        if any(keyword in lowered for keyword in keywords):
            return category_map.get(category_name, default_id)
    return default_id


def _clean_tags(raw_tags: list[str]) -> list[str]:
    seen: set[str] = set()
    tags: list[str] = []
    for raw in raw_tags:
        tag = str(raw).strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        tags.append(tag)
        if len(tags) == MAX_TAGS:
            break
    return tags


def _fallback_description(name: str) -> str:
    return f"{name} - shared resource"
