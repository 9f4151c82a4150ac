"""In-memory registry of running agents, one per conversation.

Created once at startup and shut down with the app. Concurrent starts for
the same conversation are coalesced through a pending set, and the idle
sweep uses the same disposal path as an explicit stop.
"""

import asyncio
import logging
import time
from functools import partial
from typing import Awaitable, Callable

from model_switcher.core.config import settings
from model_switcher.services.chat.backend import ChatBackend
from model_switcher.services.llm.base import AgentPlatform
from model_switcher.services.agents.agent import AIAgent
from model_switcher.services.agents.factory import bot_user_id, create_agent, normalize_channel_id

logger = logging.getLogger(__name__)

AgentFactory = Callable[[str, AgentPlatform, str, str], Awaitable[AIAgent]]


class AgentRegistry:
    def __init__(
        self,
        backend: ChatBackend,
        agent_factory: AgentFactory | None = None,
        inactivity_threshold: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.inactivity_threshold = (
            settings.inactivity_threshold if inactivity_threshold is None else inactivity_threshold
        )
        self._factory = agent_factory or partial(create_agent, backend)
        self._clock = clock
        self._agents: dict[str, AIAgent] = {}
        self._pending: set[str] = set()

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, channel_id: str) -> bool:
        return bot_user_id(channel_id) in self._agents

    def keys(self) -> list[str]:
        return list(self._agents)

    def get(self, channel_id: str) -> AIAgent | None:
        return self._agents.get(bot_user_id(channel_id))

    async def start(
        self,
        channel_id: str,
        channel_type: str = "messaging",
        platform: AgentPlatform | str = AgentPlatform.ANTHROPIC,
    ) -> bool:
        """Start an agent for the conversation. Returns False if one is already running or starting."""
        channel_id = normalize_channel_id(channel_id)
        user_id = bot_user_id(channel_id)
        if user_id in self._agents or user_id in self._pending:
            logger.info(f"AI Agent {user_id} already started")
            return False

        self._pending.add(user_id)
        try:
            conv = await self.backend.create_conversation(channel_type, channel_id)
            try:
                await self.backend.add_member(conv.cid, user_id, role="admin")
            except Exception as e:
                logger.error(f"Failed to add {user_id} to {conv.cid}: {e}")

            agent = None
            try:
                agent = await self._factory(user_id, AgentPlatform(platform), channel_type, channel_id)
                await agent.init()
            except Exception:
                if agent is not None:
                    await agent.dispose()
                await self.backend.remove_member(conv.cid, user_id)
                raise

            if user_id in self._agents:
                await agent.dispose()
                return False
            self._agents[user_id] = agent
            logger.info(f"AI Agent {user_id} started ({agent.kind.value})")
            return True
        finally:
            self._pending.discard(user_id)

    async def stop(self, channel_id: str) -> bool:
        user_id = bot_user_id(channel_id)
        agent = self._agents.pop(user_id, None)
        if agent is None:
            return False
        await self._dispose(user_id, agent)
        return True

    async def sweep(self, now: float | None = None) -> list[str]:
        """Dispose every agent idle for longer than the threshold."""
        now = self._clock() if now is None else now
        expired = [
            user_id
            for user_id, agent in self._agents.items()
            if user_id not in self._pending and now - agent.last_interaction > self.inactivity_threshold
        ]
        # Pop before awaiting so a concurrent sweep or stop can't dispose twice
        agents = [(user_id, self._agents.pop(user_id)) for user_id in expired]
        for user_id, agent in agents:
            logger.info(f"Disposing AI Agent due to inactivity: {user_id}")
            try:
                await self._dispose(user_id, agent)
            except Exception:
                logger.exception(f"Failed to dispose AI Agent {user_id}")
        return expired

    async def run_sweeper(self, interval: float | None = None) -> None:
        """Background loop. Checks for idle agents every `interval` seconds."""
        interval = settings.sweep_interval if interval is None else interval
        logger.info("Agent sweeper started")
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Agent sweeper error: {e}")
            await asyncio.sleep(interval)

    async def shutdown(self) -> None:
        agents = list(self._agents.items())
        self._agents.clear()
        for user_id, agent in agents:
            try:
                await self._dispose(user_id, agent)
            except Exception:
                logger.exception(f"Failed to dispose AI Agent {user_id}")

    async def _dispose(self, user_id: str, agent: AIAgent) -> None:
        await agent.dispose()
        await self.backend.remove_member(agent.cid, user_id)
