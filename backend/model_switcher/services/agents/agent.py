"""Model agent: answers user turns in one conversation with one provider."""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum

from model_switcher.core.config import settings
from model_switcher.models.conversation import ChatMessage
from model_switcher.services.chat.backend import ChatClient
from model_switcher.services.chat.events import (
    AI_INDICATOR_CLEAR,
    AI_INDICATOR_UPDATE,
    MESSAGE_NEW,
    AIState,
    ChatEvent,
)
from model_switcher.services.llm.base import (
    AgentPlatform,
    BaseStreamProvider,
    ContextMessage,
    ProviderOverloadedError,
)
from model_switcher.services.agents.relay import ResponseRelay, signal_overload

logger = logging.getLogger(__name__)

BOT_USER_PREFIX = "ai-bot"
OPEN_FAILED_APOLOGY = "Sorry, I encountered an error while processing your request."


class AgentKind(str, Enum):
    SINGLE_MODEL = "single_model"
    ROUTED = "routed"


class AIAgent(ABC):
    """Common surface of everything the registry can hold."""

    kind: AgentKind
    client: ChatClient
    cid: str

    def __init__(self) -> None:
        self.last_interaction = time.monotonic()

    def touch(self) -> None:
        self.last_interaction = time.monotonic()

    @abstractmethod
    async def init(self) -> None: ...

    @abstractmethod
    async def dispose(self) -> None: ...

    @property
    @abstractmethod
    def active_platform(self) -> AgentPlatform | None: ...

    @property
    @abstractmethod
    def available_platforms(self) -> list[AgentPlatform]: ...


class ModelAgent(AIAgent):
    kind = AgentKind.SINGLE_MODEL

    def __init__(
        self,
        client: ChatClient,
        cid: str,
        provider: BaseStreamProvider,
        listen: bool = True,
        context_window: int | None = None,
    ):
        super().__init__()
        self.client = client
        self.cid = cid
        self.provider = provider
        self.platform = provider.platform
        self.listen = listen
        self.context_window = context_window or settings.context_window
        self._relays: set[ResponseRelay] = set()
        self._initialized = False
        self._disposed = False

    @property
    def active_platform(self) -> AgentPlatform | None:
        return self.platform

    @property
    def available_platforms(self) -> list[AgentPlatform]:
        return [self.platform]

    @property
    def relays(self) -> list[ResponseRelay]:
        return list(self._relays)

    async def init(self) -> None:
        if self._initialized:
            return
        self.provider.ensure_configured()
        if self.listen:
            self.client.on(MESSAGE_NEW, self.handle_message, cid=self.cid)
        self._initialized = True

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self.listen:
            self.client.off(MESSAGE_NEW, self.handle_message)
        for relay in list(self._relays):
            try:
                await relay.stop()
            except Exception as e:
                logger.error(f"Error stopping relay for message {relay.message.id}: {e}")
            relay.dispose()
        self._relays.clear()
        await self.provider.close()
        # A standalone agent owns its chat session; a routed one shares the router's
        if self.listen:
            await self.client.disconnect()

    async def handle_message(self, event: ChatEvent) -> None:
        if event.message is not None:
            await self.handle_turn(event.message)

    async def handle_turn(self, message: ChatMessage) -> ResponseRelay | None:
        if self._disposed:
            return None
        if message.ai_generated:
            logger.debug("Skip handling ai generated message")
            return None
        if not message.text or not message.text.strip():
            return None

        self.touch()
        context = await self._build_context(message)

        placeholder = await self.client.send_message(
            self.cid, "", ai_generated=True, generating=True
        )
        await self.client.send_event(
            self.cid,
            AI_INDICATOR_UPDATE,
            {"ai_state": AIState.THINKING.value, "message_id": placeholder.id},
        )

        # Listen for stops before the provider call so none is lost while it opens
        relay = ResponseRelay(self.client, self.cid, self.platform, None, placeholder, turn=message)
        self._relays.add(relay)

        try:
            stream = await self.provider.open(context)
        except ProviderOverloadedError as e:
            self._drop(relay)
            if relay.session.cancelled:
                return None
            logger.warning(f"{self.platform.value} overloaded before streaming: {e}")
            await signal_overload(self.client, self.cid, self.platform, placeholder, message, str(e))
            return None
        except Exception as e:
            self._drop(relay)
            if relay.session.cancelled:
                return None
            logger.error(f"Error creating {self.platform.value} stream: {e}")
            await self.client.partial_update_message(
                placeholder.id, text=OPEN_FAILED_APOLOGY, generating=False  # type: ignore[arg-type]
            )
            await self.client.send_event(self.cid, AI_INDICATOR_CLEAR, {"message_id": placeholder.id})
            return None

        if not relay.attach(stream):
            logger.info(f"Stop arrived while opening {self.platform.value} stream for {placeholder.id}")
            self._drop(relay)
            return None

        relay.start().add_done_callback(lambda _: self._relays.discard(relay))
        return relay

    def _drop(self, relay: ResponseRelay) -> None:
        relay.dispose()
        self._relays.discard(relay)

    async def _build_context(self, message: ChatMessage) -> list[ContextMessage]:
        recent = await self.client.backend.recent_messages(self.cid, self.context_window)
        context = [
            ContextMessage(
                role="assistant" if m.user_id.startswith(BOT_USER_PREFIX) else "user",
                content=m.text,
            )
            for m in recent
            if m.text and m.text.strip()
        ]
        # Thread replies aren't part of the main channel history
        if message.parent_id is not None:
            context.append(ContextMessage(role="user", content=message.text))
        return context
