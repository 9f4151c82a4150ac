"""Agent construction and bot identities."""

import logging

from model_switcher.core.config import settings
from model_switcher.services.chat.backend import ChatBackend
from model_switcher.services.llm import MODEL_CATALOG, get_stream_provider
from model_switcher.services.llm.base import AgentPlatform
from model_switcher.services.agents.agent import BOT_USER_PREFIX, AIAgent, ModelAgent
from model_switcher.services.agents.router import ModelRouter

logger = logging.getLogger(__name__)


def normalize_channel_id(channel_id: str) -> str:
    """Accept either "<id>" or "<type>:<id>" and return the bare id."""
    if ":" in channel_id:
        parts = channel_id.split(":", 1)
        if parts[1]:
            return parts[1]
    return channel_id


def bot_user_id(channel_id: str) -> str:
    return f"{BOT_USER_PREFIX}-{normalize_channel_id(channel_id).replace('!', '')}"


async def create_agent(
    backend: ChatBackend,
    user_id: str,
    platform: AgentPlatform | str,
    channel_type: str,
    channel_id: str,
    multi_model: bool | None = None,
) -> AIAgent:
    """Connect the bot user, watch the conversation and build its agent."""
    platform = AgentPlatform(platform)
    if multi_model is None:
        multi_model = settings.use_multi_model

    client = backend.connect(user_id)
    logger.info(f"User {user_id} connected successfully.")
    conv = await backend.create_conversation(channel_type, channel_id)
    cid = conv.cid

    if multi_model:
        providers = [get_stream_provider(info.id) for info in MODEL_CATALOG]
        return ModelRouter(client, cid, platform, providers)
    return ModelAgent(client, cid, get_stream_provider(platform), listen=True)
