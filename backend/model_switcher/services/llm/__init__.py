"""Streaming provider factory and model catalog."""

from dataclasses import dataclass

from model_switcher.services.llm.base import AgentPlatform, BaseStreamProvider


@dataclass
class ModelInfo:
    id: AgentPlatform
    name: str
    description: str
    icon_url: str | None = None

    def to_dict(self, available: bool) -> dict:
        return {
            "id": self.id.value,
            "name": self.name,
            "description": self.description,
            "icon_url": self.icon_url,
            "available": available,
        }


# Catalog order is also the fallback order
MODEL_CATALOG: list[ModelInfo] = [
    ModelInfo(
        id=AgentPlatform.ANTHROPIC,
        name="Claude",
        description="Anthropic's Claude, known for helpfulness, harmlessness, and honesty",
        icon_url="/model-icons/claude.png",
    ),
    ModelInfo(
        id=AgentPlatform.OPENAI,
        name="GPT",
        description="OpenAI's GPT model with function calling capabilities",
        icon_url="/model-icons/openai.png",
    ),
    ModelInfo(
        id=AgentPlatform.LLAMA,
        name="Llama",
        description="Meta's open-source Llama model served by Ollama",
        icon_url="/model-icons/meta.png",
    ),
    ModelInfo(
        id=AgentPlatform.GEMINI,
        name="Gemini",
        description="Google's Gemini model",
        icon_url="/model-icons/gemini.png",
    ),
]


def get_stream_provider(platform: AgentPlatform | str) -> BaseStreamProvider:
    """Factory function that returns the provider for a platform."""
    platform = AgentPlatform(platform)
    if platform == AgentPlatform.ANTHROPIC:
        from model_switcher.services.llm.anthropic import AnthropicStreamProvider
        return AnthropicStreamProvider()
    elif platform == AgentPlatform.OPENAI:
        from model_switcher.services.llm.openai import OpenAIStreamProvider
        return OpenAIStreamProvider()
    elif platform == AgentPlatform.LLAMA:
        from model_switcher.services.llm.llama import LlamaStreamProvider
        return LlamaStreamProvider()
    elif platform == AgentPlatform.GEMINI:
        from model_switcher.services.llm.gemini import GeminiStreamProvider
        return GeminiStreamProvider()
    else:
        raise ValueError(f"Unknown LLM provider: {platform}")


def list_models() -> list[dict]:
    """Catalog entries with an `available` flag derived from configuration."""
    return [info.to_dict(get_stream_provider(info.id).is_configured) for info in MODEL_CATALOG]
