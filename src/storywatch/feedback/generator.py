"""OpenAI-compatible feedback generator with retry semantics."""

from __future__ import annotations

import inspect
import logging
import math
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .history import TRUNCATION_MARKER
from .types import INTERNAL_CALL_PREFIX, is_internal_call

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.settings import Settings
    from .ledger import CallLedger

LOGGER = logging.getLogger(__name__)
_BYTES_PER_TOKEN = 4
_SYSTEM_PROMPT = (
    "You are a silent quality reviewer. You write critique and memory notes only; "
    "you never continue the story or speak to its characters."
)


def estimate_tokens(text: str) -> int:
    """Approximate token count from the UTF-8 byte length."""

    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / _BYTES_PER_TOKEN))


@dataclass(slots=True)
class GeneratorSettings:
    """Subset of settings required to configure the feedback generator."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = 0.3
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_prompt_tokens: int = 100_000
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "GeneratorSettings":
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            temperature=settings.temperature,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            max_prompt_tokens=settings.max_prompt_tokens,
            default_headers=dict(settings.default_headers or {}),
            debug_logging=settings.debug_logging,
        )


class OpenAIFeedbackGenerator:
    """Sends critique prompts to an OpenAI-compatible chat completion endpoint.

    When a ledger is attached every request is recorded under an internal
    call type, so the engine never critiques its own critiques.
    """

    def __init__(
        self,
        settings: GeneratorSettings,
        *,
        client: AsyncOpenAI | None = None,
        ledger: "CallLedger | None" = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._ledger = ledger

    @property
    def settings(self) -> GeneratorSettings:
        return self._settings

    def attach_ledger(self, ledger: "CallLedger") -> None:
        self._ledger = ledger

    async def generate(self, prompt: str, call_type_hint: str | None = None) -> str:
        if is_internal_call(call_type_hint):
            call_type = str(call_type_hint)
        else:
            call_type = f"{INTERNAL_CALL_PREFIX}{call_type_hint or 'generic'}"
        bounded = self._bound_prompt(prompt)
        call_id = f"feedback-{uuid.uuid4().hex}"
        if self._ledger is not None:
            self._ledger.initiate(call_id, call_type, self._settings.model, bounded)
        try:
            text = await self._complete(bounded)
        except Exception as exc:
            if self._ledger is not None:
                self._ledger.fail(call_id, str(exc) or exc.__class__.__name__)
            raise
        if self._ledger is not None:
            self._ledger.finalize(call_id, text)
        return text

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - close failures are not actionable
            LOGGER.debug("Feedback client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _complete(self, prompt: str) -> str:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if self._settings.debug_logging:
            LOGGER.debug("Feedback prompt (%s tokens est.):\n%s", estimate_tokens(prompt), prompt)
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        choices = getattr(response, "choices", None) or []
        if not choices:
            LOGGER.warning("Feedback completion returned no choices")
            return ""
        message = getattr(choices[0], "message", None)
        return str(getattr(message, "content", None) or "")

    def _bound_prompt(self, prompt: str) -> str:
        limit = max(1, int(self._settings.max_prompt_tokens))
        if estimate_tokens(prompt) <= limit:
            return prompt
        LOGGER.warning("Feedback prompt exceeds %s tokens; truncating", limit)
        return f"{prompt[: limit * _BYTES_PER_TOKEN]}{TRUNCATION_MARKER}"

    def _build_client(self, settings: GeneratorSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIError,
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )


__all__ = ["GeneratorSettings", "OpenAIFeedbackGenerator", "estimate_tokens"]
