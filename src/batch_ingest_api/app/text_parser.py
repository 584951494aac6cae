"""Turn pasted free text into ``{name, link}`` pairs ready for submission.

A regex pass handles the common layouts. When it recognises too little of the
text, blocks are sent to the provider and the two results are merged.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from pydantic import BaseModel

from .errors import SubmissionValidationError
from .llm import LLMAdapter
from .models import ParseStats, ParseTextResponse, ResourceItem
from .submitter import is_valid_link, sanitize_name

logger = logging.getLogger(__name__)

_URL = r"(https?://\S+)"

# Ordered from most to least specific.
PARSE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(rf"^(.+?)\s*(?:链接|[Ll]ink)\s*[：:]\s*{_URL}", re.M), "inline label"),
    (re.compile(rf"^(.+?)\s*\n\s*(?:链接|[Ll]ink)\s*[：:]\s*{_URL}", re.M), "label on next line"),
    (re.compile(rf"^(.+?)\s*[-–—]\s*{_URL}", re.M), "dash separated"),
    (re.compile(rf"^(.+?)\s+{_URL}$", re.M), "space separated"),
    (re.compile(rf"^(.+?)\s*\n\s*{_URL}", re.M), "url on next line"),
)

_EMOJI_RE = re.compile(
    "["
    "\U0001f600-\U0001f64f"
    "\U0001f300-\U0001f5ff"
    "\U0001f680-\U0001f6ff"
    "\U0001f900-\U0001f9ff"
    "\U0001f1e0-\U0001f1ff"
    "\u2600-\u26ff"
    "\u2700-\u27bf"
    "\ufe0f\u200d"
    "]+"
)
_URL_SPLIT_RE = re.compile(r"(https?://\S+)")
_BLANK_LINE_RE = re.compile(r"\n\s*\n")

BLOCK_SYSTEM_PROMPT = (
    "Extract one resource from the text: a short clean name and its main http(s) link. "
    'Return only JSON: {"name": "...", "link": "..."}. If nothing usable is present '
    'return {"error": "unparseable"}.'
)


class BlockReply(BaseModel):
    name: str = ""
    link: str = ""
    error: str | None = None


@dataclass
class ParseOutcome:
    resources: list[ResourceItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, item: ResourceItem) -> bool:
        if any(known.name == item.name or known.link == item.link for known in self.resources):
            return False
        self.resources.append(item)
        return True

    @property
    def success_ratio(self) -> float:
        total = len(self.resources) + len(self.errors)
        return len(self.resources) / total if total else 0.0


def clean_resource_name(raw: str, max_length: int = 100) -> str:
    return sanitize_name(_EMOJI_RE.sub("", raw), max_length)


def clean_url(raw: str) -> str:
    url = raw.strip()
    if url and not re.match(r"^https?://", url):
        url = f"https://{url}"
    return url


def parse_with_regex(text: str) -> ParseOutcome:
    outcome = ParseOutcome()
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    seen_matches: set[str] = set()
    for pattern, _label in PARSE_PATTERNS:
        for match in pattern.finditer(normalized):
            if match.group(0) in seen_matches:
                continue
            seen_matches.add(match.group(0))
            raw_name = match.group(1).strip()
            raw_url = match.group(2).strip()
            if not raw_name or not raw_url:
                continue
            name = clean_resource_name(raw_name)
            link = clean_url(raw_url)
            if not name:
                outcome.errors.append(f"empty resource name: {raw_name}")
                continue
            if not is_valid_link(link):
                outcome.errors.append(f"invalid URL: {raw_url}")
                continue
            outcome.add(ResourceItem(name=name, link=link))
    return outcome


def split_into_blocks(text: str) -> list[str]:
    """Blank-line separated blocks, or title+URL pairs when there are no blank lines."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    blocks = [block.strip() for block in _BLANK_LINE_RE.split(normalized) if block.strip()]
    if len(blocks) != 1:
        return blocks
    parts = _URL_SPLIT_RE.split(normalized)
    paired: list[str] = []
    for index in range(0, len(parts) - 1, 2):
        title = parts[index].strip()
        url = parts[index + 1].strip()
        if title and url:
            paired.append(f"{title}\n{url}")
    return paired or blocks


class TextParser:
    def __init__(
        self,
        *,
        llm_adapter: LLMAdapter | None,
        max_text_length: int = 50_000,
        max_ai_blocks: int = 20,
        concurrency: int = 3,
        success_ratio: float = 0.7,
        ai_timeout_s: float = 10.0,
    ) -> None:
        self.llm_adapter = llm_adapter
        self.max_text_length = max_text_length
        self.max_ai_blocks = max_ai_blocks
        self.concurrency = concurrency
        self.success_ratio = success_ratio
        self.ai_timeout_s = ai_timeout_s

    def parse_text(self, text: str) -> ParseTextResponse:
        if not text or not text.strip():
            raise SubmissionValidationError("text must not be empty")
        if len(text) > self.max_text_length:
            raise SubmissionValidationError(
                f"text is too long ({len(text)} chars, max {self.max_text_length})"
            )

        regex_outcome = parse_with_regex(text)
        if regex_outcome.resources and regex_outcome.success_ratio >= self.success_ratio:
            logger.info(
                "parse_text event=regex resources=%d ratio=%.2f",
                len(regex_outcome.resources),
                regex_outcome.success_ratio,
            )
            return _response(regex_outcome, method="regex")

        logger.info(
            "parse_text event=ai_fallback regex_resources=%d regex_errors=%d",
            len(regex_outcome.resources),
            len(regex_outcome.errors),
        )
        ai_outcome = self._parse_with_ai(text)
        merged = ParseOutcome(
            resources=list(regex_outcome.resources),
            errors=[*regex_outcome.errors, *ai_outcome.errors],
        )
        for item in ai_outcome.resources:
            merged.add(item)
        method = "ai" if len(merged.resources) > len(regex_outcome.resources) else "regex"
        return _response(merged, method=method)

    def _parse_with_ai(self, text: str) -> ParseOutcome:
        outcome = ParseOutcome()
        adapter = self.llm_adapter
        if adapter is None:
            outcome.errors.append("AI parsing unavailable: no provider configured")
            return outcome

        blocks = split_into_blocks(text)
        if not blocks:
            outcome.errors.append("no resource information found")
            return outcome
        if len(blocks) > self.max_ai_blocks:
            outcome.errors.append(
                f"text has {len(blocks)} blocks; only the first {self.max_ai_blocks} were parsed"
            )
            blocks = blocks[: self.max_ai_blocks]

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="parse-text"
        ) as pool:
            parsed = list(
                pool.map(lambda block: self._parse_block(adapter, block), blocks)
            )

        for position, item in enumerate(parsed, start=1):
            if item is None:
                outcome.errors.append(f"could not parse block #{position}")
            elif not outcome.add(item):
                outcome.errors.append(f"duplicate resource: {item.name}")
        return outcome

    def _parse_block(self, adapter: LLMAdapter, block: str) -> ResourceItem | None:
        try:
            reply = adapter.generate_structured(
                system_prompt=BLOCK_SYSTEM_PROMPT,
                user_prompt=block,
                response_model=BlockReply,
                timeout_s=self.ai_timeout_s,
                temperature=0.1,
                max_tokens=200,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("parse_text event=block_failed reason=%s", exc)
            return None
        if reply.error or not reply.name or not reply.link:
            return None
        name = clean_resource_name(reply.name)
        link = clean_url(reply.link)
        if not name or not is_valid_link(link):
            return None
        return ResourceItem(name=name, link=link)


def _response(outcome: ParseOutcome, *, method: str) -> ParseTextResponse:
    return ParseTextResponse(
        total_resources=len(outcome.resources),
        resources=outcome.resources,
        errors=outcome.errors,
        stats=ParseStats(
            total=len(outcome.resources) + len(outcome.errors),
            success=len(outcome.resources),
            failed=len(outcome.errors),
            method=method,
        ),
    )
