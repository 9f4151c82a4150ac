"""Anthropic Messages API provider."""

import logging
from typing import Any, AsyncIterator

import anthropic
import httpx

from model_switcher.core.config import settings
from model_switcher.services.llm.base import (
    OVERLOAD_STATUS_CODES,
    AgentPlatform,
    BaseStreamProvider,
    ContextMessage,
    FragmentStream,
    ProviderError,
    ProviderOverloadedError,
)

logger = logging.getLogger(__name__)


class AnthropicStreamProvider(BaseStreamProvider):
    platform = AgentPlatform.ANTHROPIC

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._api_key = settings.anthropic_api_key
        self.model = settings.anthropic_model
        self._http_client = http_client
        self._client: anthropic.AsyncAnthropic | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            # Failover is the router's job, so the SDK must not retry on its own
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key,
                base_url=settings.anthropic_base_url,
                timeout=settings.http_timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    async def open(self, messages: list[ContextMessage]) -> FragmentStream:
        self.ensure_configured()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": settings.max_tokens,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if settings.system_prompt:
            kwargs["system"] = settings.system_prompt

        try:
            stream = await self._get_client().messages.create(**kwargs, stream=True)
        except anthropic.APIError as e:
            raise _map_error(e) from e

        return FragmentStream(self._fragments(stream), provider=self.platform.value, on_close=stream.close)

    async def _fragments(self, stream) -> AsyncIterator[str]:
        try:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield event.delta.text
                elif event.type == "message_stop":
                    return
        except anthropic.APIError as e:
            raise _map_error(e) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def _map_error(error: anthropic.APIError) -> ProviderError:
    if isinstance(error, anthropic.APIConnectionError):
        return ProviderError(f"Cannot reach Anthropic: {error}")

    status = getattr(error, "status_code", None)
    body = error.body if isinstance(error.body, dict) else {}
    # In-stream error events arrive as {"type": "error", "error": {"type": ...}}
    detail = body.get("error")
    error_type = detail.get("type") if isinstance(detail, dict) else None
    if status in OVERLOAD_STATUS_CODES or error_type == "overloaded_error":
        return ProviderOverloadedError(f"Anthropic unavailable ({status}): {error.message}")
    return ProviderError(f"Anthropic request failed ({status}): {error.message}")
