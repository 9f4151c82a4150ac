"""Model router: one agent per configured provider, one of them active.

The router owns the conversation's inbound events. User turns go to the
active agent; explicit switch requests change the active agent; overload
signals from a relay trigger an automatic fallback and the failed turn is
re-dispatched to the new agent. When no provider is left the router enters
a degraded state and answers with an apology until someone switches models
explicitly.
"""

import logging

from model_switcher.models.conversation import ChatMessage
from model_switcher.services.chat.backend import ChatClient
from model_switcher.services.chat.events import (
    MESSAGE_NEW,
    MODEL_OVERLOADED,
    MODEL_SWITCH,
    MODEL_SWITCH_ERROR,
    MODEL_SWITCHED,
    ChatEvent,
)
from model_switcher.services.llm.base import AgentPlatform, BaseStreamProvider
from model_switcher.services.agents.agent import AIAgent, AgentKind, ModelAgent
from model_switcher.services.agents.relay import RelayState, ResponseRelay

logger = logging.getLogger(__name__)

ALL_UNAVAILABLE_APOLOGY = (
    "I'm sorry, but all AI models are currently unavailable. Please try again later."
)


class ModelRouter(AIAgent):
    kind = AgentKind.ROUTED

    def __init__(
        self,
        client: ChatClient,
        cid: str,
        initial_platform: AgentPlatform,
        providers: list[BaseStreamProvider],
    ):
        super().__init__()
        self.client = client
        self.cid = cid
        self.initial_platform = AgentPlatform(initial_platform)
        self.degraded = False
        self._providers = providers
        self._agents: dict[AgentPlatform, ModelAgent] = {}
        self._active: AgentPlatform | None = None
        # turn message id -> platforms that already failed for that turn
        self._failed_turns: dict[int, set[AgentPlatform]] = {}
        self._initialized = False
        self._disposed = False

    @property
    def active_platform(self) -> AgentPlatform | None:
        return self._active

    @property
    def available_platforms(self) -> list[AgentPlatform]:
        return list(self._agents)

    @property
    def agents(self) -> dict[AgentPlatform, ModelAgent]:
        return dict(self._agents)

    async def init(self) -> None:
        if self._initialized:
            return
        for provider in self._providers:
            agent = ModelAgent(self.client, self.cid, provider, listen=False)
            try:
                await agent.init()
            except Exception as e:
                logger.warning(f"Skipping {provider.platform.value} agent: {e}")
                await provider.close()
                continue
            self._agents[provider.platform] = agent

        if self.initial_platform in self._agents:
            self._active = self.initial_platform
        else:
            logger.warning(
                f"Initial model {self.initial_platform.value} is not available for {self.cid}"
            )

        self.client.on(MESSAGE_NEW, self.handle_message, cid=self.cid)
        self.client.on(MODEL_SWITCH, self.handle_model_switch, cid=self.cid)
        self.client.on(MODEL_OVERLOADED, self.handle_overload, cid=self.cid)
        self._initialized = True
        logger.info(
            f"Router for {self.cid} ready with {[p.value for p in self._agents]}, "
            f"active: {self._active.value if self._active else 'none'}"
        )

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.client.off(MESSAGE_NEW, self.handle_message)
        self.client.off(MODEL_SWITCH, self.handle_model_switch)
        self.client.off(MODEL_OVERLOADED, self.handle_overload)

        for agent in self._agents.values():
            try:
                await agent.dispose()
            except Exception as e:
                logger.error(f"Error disposing {agent.platform.value} agent: {e}")
        self._agents.clear()
        self._active = None
        self._failed_turns.clear()

        await self.client.disconnect()

    # --- Switching ---

    async def handle_model_switch(self, event: ChatEvent) -> None:
        platform = event.data.get("platform")
        if not platform:
            logger.error("No platform specified in model switch event")
            return
        await self.switch_to(platform)

    async def switch_to(self, platform: AgentPlatform | str) -> bool:
        """Make `platform` the active model. Returns False if it isn't available."""
        target = _as_platform(platform)
        if target is None or target not in self._agents:
            name = platform.value if isinstance(platform, AgentPlatform) else str(platform)
            logger.error(f"Agent for platform {name} is not initialized")
            await self.client.send_event(
                self.cid,
                MODEL_SWITCH_ERROR,
                {"channel_id": self.cid, "platform": name, "error": f"AI model {name} is not available"},
            )
            return False

        await self._activate(target)
        return True

    async def fall_back(self, exclude: set[AgentPlatform] | None = None) -> AgentPlatform | None:
        """Select the first available platform other than the active one.

        Enters the degraded state and posts an apology if there is none.
        """
        skip = set(exclude or ())
        if self._active is not None:
            skip.add(self._active)
        for platform in self._agents:
            if platform not in skip:
                logger.info(f"Falling back to {platform.value} agent")
                await self._activate(platform)
                return platform

        logger.error(f"No fallback model available for {self.cid}")
        self._active = None
        self.degraded = True
        await self._post_apology()
        return None

    async def _activate(self, platform: AgentPlatform) -> None:
        self._active = platform
        self.degraded = False
        logger.info(f"Switched to {platform.value} agent")
        await self.client.send_event(
            self.cid, MODEL_SWITCHED, {"channel_id": self.cid, "platform": platform.value}
        )

    async def _post_apology(self) -> None:
        await self.client.send_message(self.cid, ALL_UNAVAILABLE_APOLOGY, ai_generated=True)

    # --- Overload ---

    @property
    def failed_turns(self) -> dict[int, set[AgentPlatform]]:
        """Turns still being failed over, with the platforms already tried for each."""
        return {turn_id: set(tried) for turn_id, tried in self._failed_turns.items()}

    async def handle_overload(self, event: ChatEvent) -> None:
        failed = _as_platform(event.data.get("platform"))
        logger.warning(f"Model overloaded on {self.cid}: {event.data.get('error')}")

        turn_id = event.data.get("turn_message_id")
        tried = self._failed_turns.setdefault(turn_id, set()) if turn_id is not None else set()
        if failed is not None:
            tried.add(failed)

        # Only fail over away from the model that actually failed
        if failed is not None and failed != self._active and self._active not in tried:
            replacement = self._active
        else:
            replacement = await self.fall_back(exclude=tried)
        if replacement is None or turn_id is None:
            self._failed_turns.pop(turn_id, None)
            return

        turn = await self.client.backend.get_message(turn_id)
        if turn is None:
            self._failed_turns.pop(turn_id, None)
            return

        attempts = len(tried)
        relay = await self._agents[replacement].handle_turn(turn)
        if relay is not None and relay.task is not None:
            relay.task.add_done_callback(lambda _: self._settle_turn(turn_id, relay))
        elif len(tried) == attempts:
            # A nested overload during open() owns the turn when `tried` grew
            self._failed_turns.pop(turn_id, None)

    def _settle_turn(self, turn_id: int, relay: ResponseRelay) -> None:
        # A relay that failed over again has handed the turn to the next overload
        if relay.state != RelayState.FAILED_OVER:
            self._failed_turns.pop(turn_id, None)

    # --- Turns ---

    async def handle_message(self, event: ChatEvent) -> None:
        if event.message is not None:
            await self.dispatch(event.message)

    async def dispatch(self, message: ChatMessage) -> ResponseRelay | None:
        if self._disposed or message.ai_generated:
            return None
        if not message.text or not message.text.strip():
            return None

        self.touch()
        if self.degraded:
            await self._post_apology()
            return None

        agent = self._agents.get(self._active) if self._active else None
        if agent is None:
            logger.error(f"Active agent {self._active} is not initialized")
            platform = await self.fall_back()
            if platform is None:
                return None
            agent = self._agents[platform]

        return await agent.handle_turn(message)


def _as_platform(value) -> AgentPlatform | None:
    try:
        return AgentPlatform(value)
    except ValueError:
        return None
