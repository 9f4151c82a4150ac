"""Google Gemini provider."""

from typing import AsyncIterator

from google import genai
from google.genai import errors, types

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


class GeminiStreamProvider(BaseStreamProvider):
    platform = AgentPlatform.GEMINI

    def __init__(self, client: genai.Client | None = None):
        self._api_key = settings.gemini_api_key
        self.model = settings.gemini_model
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def open(self, messages: list[ContextMessage]) -> FragmentStream:
        self.ensure_configured()
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
        ]
        config = types.GenerateContentConfig(
            system_instruction=settings.system_prompt or None,
            max_output_tokens=settings.max_tokens,
        )
        try:
            response = await self._get_client().aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=config,
            )
        except errors.APIError as e:
            raise _map_error(e) from e
        return FragmentStream(self._fragments(response), provider=self.platform.value)

    async def _fragments(self, response: AsyncIterator[types.GenerateContentResponse]) -> AsyncIterator[str]:
        try:
            async for chunk in response:
                if chunk.text:
                    yield chunk.text
        except errors.APIError as e:
            raise _map_error(e) from e


def _map_error(error: errors.APIError) -> ProviderError:
    if error.code in OVERLOAD_STATUS_CODES:
        return ProviderOverloadedError(f"Gemini unavailable ({error.code}): {error.message}")
    return ProviderError(f"Gemini request failed ({error.code}): {error.message}")
