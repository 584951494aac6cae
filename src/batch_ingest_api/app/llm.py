"""Generative-text provider adapter.

Enrichment, review, and the text pre-parser all ask the provider for one JSON
object and validate it against a pydantic model. Transport problems surface as
``UpstreamError``/``UpstreamTimeout`` so callers can fall back without knowing
anything about HTTP.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel, ValidationError

from .errors import UpstreamError, UpstreamTimeout
from .settings import Settings

ReplyT = TypeVar("ReplyT", bound=BaseModel)
logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
# 429 and 5xx are worth another attempt; other HTTP errors are not.
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
_SUPPORTED_PROVIDERS = frozenset({"openai", "openai-compatible"})


class LLMAdapter(Protocol):
    """Interface for structured completions from a generative-text provider."""

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[ReplyT],
        timeout_s: float,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> ReplyT: ...


class OpenAICompatibleAdapter:
    """Chat-completions client for OpenAI and OpenAI-compatible providers.

    Replies are asked for as a JSON object. Providers that wrap the JSON in prose
    are tolerated: the first ``{...}`` span of the reply is parsed.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = base_url.rstrip("/") + "/chat/completions"
        self.max_retries = max(max_retries, 0)
        self.backoff_s = max(backoff_s, 0.0)

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[ReplyT],
        timeout_s: float,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> ReplyT:
        payload = {
            "model": self.model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                _message("system", system_prompt),
                _message("user", user_prompt),
            ],
        }
        completion = self._send(payload, timeout_s=timeout_s)
        text = self._extract_content(completion)
        try:
            return response_model.model_validate(parse_json_object(text))
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(
                f"Provider reply did not match {response_model.__name__}: {exc}"
            ) from exc

    def _send(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        attempts = self.max_retries + 1
        failure: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except (TimeoutError, error.URLError, ValueError) as exc:
                failure = exc
                logger.warning(
                    "llm_request event=retry attempt=%d/%d model=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    exc,
                )
            if attempt < attempts and self.backoff_s:
                time.sleep(self.backoff_s * attempt)
        if isinstance(failure, TimeoutError):
            raise UpstreamTimeout(f"Provider call timed out after {timeout_s:.1f}s")
        raise UpstreamError(f"Provider call failed: {failure}")

    def _request(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:300]
            if exc.code in _RETRYABLE_STATUS:
                raise error.URLError(f"HTTP {exc.code}: {detail}") from exc
            raise UpstreamError(f"Provider rejected the request (HTTP {exc.code}): {detail}") from exc

    @staticmethod
    def _extract_content(completion: dict[str, Any]) -> str:
        choices = completion.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        # Some providers return a list of typed parts instead of a string.
        if isinstance(content, list):
            content = "".join(
                part["text"]
                for part in content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
        if not isinstance(content, str) or not content.strip():
            raise UpstreamError("Provider reply had no text content")
        return content.strip()


def _message(role: str, content: str) -> dict[str, str]:
    return {"role": role, "content": content}


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object, falling back to the first ``{...}`` span in the text."""
    stripped = text.strip()
    candidates = [stripped]
    match = _JSON_OBJECT_RE.search(stripped)
    if match is not None and match.group(0) != stripped:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ValueError("provider reply does not contain a JSON object")


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    """Return the configured adapter, or None when no provider key is set."""
    if settings.llm_provider.lower() not in _SUPPORTED_PROVIDERS:
        logger.warning("llm_adapter event=unsupported_provider provider=%s", settings.llm_provider)
        return None
    if not settings.llm_api_key:
        return None
    return OpenAICompatibleAdapter(
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
