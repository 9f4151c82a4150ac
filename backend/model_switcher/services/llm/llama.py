"""Llama provider served by Ollama's /api/chat (newline-delimited JSON)."""

import json
import logging
import re
from typing import AsyncIterator

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

_CONTENT_RE = re.compile(r'"content":"([^"]+)"')


def parse_chunk(data: str) -> str:
    """Extract message content from one or more NDJSON lines.

    Lines that are not valid JSON fall back to a regex scrape of the
    "content" field so a single corrupt line doesn't drop the text.
    """
    content = ""
    for line in data.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Error parsing JSON line: {line[:200]}")
            match = _CONTENT_RE.search(line)
            if match:
                content += match.group(1)
            continue
        if chunk.get("error"):
            raise ProviderError(f"Ollama stream error: {chunk['error']}")
        message = chunk.get("message") or {}
        if message.get("content"):
            content += message["content"]
    return content


class LlamaStreamProvider(BaseStreamProvider):
    platform = AgentPlatform.LLAMA

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._endpoint = settings.llama_api_endpoint.rstrip("/")
        self.model = settings.llama_model_name
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._endpoint)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._endpoint, timeout=settings.http_timeout)
        return self._client

    async def open(self, messages: list[ContextMessage]) -> FragmentStream:
        self.ensure_configured()
        chat_messages = [{"role": m.role, "content": m.content} for m in messages]
        if settings.system_prompt:
            chat_messages.insert(0, {"role": "system", "content": settings.system_prompt})

        client = self._get_client()
        request = client.build_request(
            "POST",
            "/api/chat",
            json={"model": self.model, "messages": chat_messages, "stream": True},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.ConnectError as e:
            raise ProviderError(
                f"Cannot connect to Ollama at {self._endpoint}. Make sure Ollama is running."
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Error calling Ollama API: {e}") from e

        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            body = response.text[:300]
            if response.status_code in OVERLOAD_STATUS_CODES:
                raise ProviderOverloadedError(f"Ollama unavailable ({response.status_code}): {body}")
            if response.status_code == 404:
                raise ProviderError(f"Model '{self.model}' is not installed in Ollama: {body}")
            raise ProviderError(f"Ollama request failed ({response.status_code}): {body}")

        return FragmentStream(self._fragments(response), provider=self.platform.value, on_close=response.aclose)

    async def _fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            text = parse_chunk(line)
            if text:
                yield text

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
