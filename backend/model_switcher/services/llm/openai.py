"""OpenAI Chat Completions provider."""

import logging
from typing import AsyncIterator

import httpx
import openai

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


class OpenAIStreamProvider(BaseStreamProvider):
    platform = AgentPlatform.OPENAI

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._api_key = settings.openai_api_key
        self.model = settings.openai_model
        self._http_client = http_client
        self._client: openai.AsyncOpenAI | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self._api_key,
                base_url=settings.openai_base_url,
                timeout=settings.http_timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    async def open(self, messages: list[ContextMessage]) -> FragmentStream:
        self.ensure_configured()
        chat_messages = [{"role": m.role, "content": m.content} for m in messages]
        if settings.system_prompt:
            chat_messages.insert(0, {"role": "system", "content": settings.system_prompt})

        try:
            stream = await self._get_client().chat.completions.create(
                model=self.model,
                messages=chat_messages,
                max_tokens=settings.max_tokens,
                stream=True,
            )
        except openai.APIError as e:
            raise _map_error(e) from e

        return FragmentStream(self._fragments(stream), provider=self.platform.value, on_close=stream.close)

    async def _fragments(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.APIError as e:
            raise _map_error(e) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def _map_error(error: openai.APIError) -> ProviderError:
    if isinstance(error, openai.APIConnectionError):
        return ProviderError(f"Cannot reach OpenAI: {error}")
    if isinstance(error, openai.APIStatusError):
        if error.status_code in OVERLOAD_STATUS_CODES:
            return ProviderOverloadedError(f"OpenAI unavailable ({error.status_code}): {error.message}")
        return ProviderError(f"OpenAI request failed ({error.status_code}): {error.message}")
    return ProviderError(f"OpenAI stream error: {error.message}")
