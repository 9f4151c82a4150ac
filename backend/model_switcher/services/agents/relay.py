"""Response relay: drains one provider stream into one chat message.

State machine per generation:

    THINKING -> GENERATING -> COMPLETED | CANCELLED | ERRORED | FAILED_OVER

Partial text is committed on a throttled cadence so clients see early
progress without a write per fragment. Every terminal path leaves the
message with generating=False.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from model_switcher.core.config import settings
from model_switcher.models.conversation import ChatMessage
from model_switcher.services.chat.backend import ChatClient
from model_switcher.services.chat.events import (
    AI_INDICATOR_CLEAR,
    AI_INDICATOR_STOP,
    AI_INDICATOR_UPDATE,
    MODEL_OVERLOADED,
    AIState,
    ChatEvent,
)
from model_switcher.services.llm.base import (
    AgentPlatform,
    FragmentStream,
    ProviderOverloadedError,
)

logger = logging.getLogger(__name__)

INTERRUPTED_NOTICE = "\n\n[Message generation was interrupted]"
ERROR_APOLOGY = "I'm sorry, but there was an error generating a response."


class RelayState(str, Enum):
    THINKING = "thinking"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"
    FAILED_OVER = "failed_over"


TERMINAL_STATES = {
    RelayState.COMPLETED,
    RelayState.CANCELLED,
    RelayState.ERRORED,
    RelayState.FAILED_OVER,
}


@dataclass(frozen=True)
class CommitCadence:
    interval: int = 20  # commit every Nth fragment
    early_window: int = 8  # tighter cadence below this count
    early_stride: int = 2  # 1st, 1+stride, ... inside the early window

    def should_commit(self, count: int) -> bool:
        if count % self.interval == 0:
            return True
        return count < self.early_window and (count - 1) % self.early_stride == 0


CADENCES: dict[AgentPlatform, CommitCadence] = {
    AgentPlatform.ANTHROPIC: CommitCadence(interval=20, early_window=8, early_stride=2),
    AgentPlatform.LLAMA: CommitCadence(interval=15, early_window=8, early_stride=3),
}


@dataclass
class GenerationSession:
    text: str = ""
    fragment_count: int = 0
    cancelled: bool = False


async def signal_overload(
    client: ChatClient,
    cid: str,
    platform: AgentPlatform,
    message: ChatMessage,
    turn: ChatMessage | None,
    error: str,
    text: str = "",
) -> None:
    """Finalize the placeholder untouched and ask the router to fail over."""
    await client.partial_update_message(message.id, text=text, generating=False)  # type: ignore[arg-type]
    await client.send_event(cid, AI_INDICATOR_CLEAR, {"message_id": message.id})
    await client.send_event(
        cid,
        MODEL_OVERLOADED,
        {
            "channel_id": cid,
            "platform": platform.value,
            "message_id": message.id,
            "turn_message_id": turn.id if turn else None,
            "error": error,
        },
    )


class ResponseRelay:
    """Relays one generation into its placeholder message.

    The relay can be created before the provider stream exists so that a stop
    arriving while the provider is still opening is not lost. attach() binds
    the stream once open() returns.
    """

    def __init__(
        self,
        client: ChatClient,
        cid: str,
        platform: AgentPlatform,
        stream: FragmentStream | None,
        message: ChatMessage,
        turn: ChatMessage | None = None,
        cadence: CommitCadence | None = None,
        final_commit_delay: float | None = None,
    ):
        self.client = client
        self.cid = cid
        self.platform = platform
        self.stream = stream
        self.message = message
        self.turn = turn
        self.cadence = cadence or CADENCES.get(platform, CommitCadence())
        self.final_commit_delay = (
            settings.final_commit_delay if final_commit_delay is None else final_commit_delay
        )
        self.state = RelayState.THINKING
        self.session = GenerationSession()
        self._commit_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._disposed = False
        self.client.on(AI_INDICATOR_STOP, self.handle_stop, cid=cid)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def attach(self, stream: FragmentStream) -> bool:
        """Bind the provider stream. Returns False, cancelling it, if a stop already landed."""
        if self.session.cancelled:
            stream.cancel()
            return False
        self.stream = stream
        return True

    def start(self) -> asyncio.Task:
        if self.stream is None:
            raise RuntimeError(f"No stream attached to relay for message {self.message.id}")
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def run(self) -> None:
        try:
            async for fragment in self.stream:
                if self.session.cancelled:
                    break
                await self._on_fragment(fragment)
            if not self.session.cancelled and not self.done:
                await self._complete()
        except ProviderOverloadedError as e:
            if not self.done and not self.session.cancelled:
                await self._fail_over(str(e))
        except Exception as e:
            logger.error(f"Error handling {self.platform.value} stream: {e}")
            if not self.done and not self.session.cancelled:
                await self._error()
        finally:
            self.dispose()

    async def handle_stop(self, event: ChatEvent) -> None:
        message_id = event.data.get("message_id")
        if message_id is not None and message_id != self.message.id:
            return
        await self.stop()

    async def stop(self) -> None:
        """Stop generating. A stop after the session ended is a no-op."""
        if self.done or self.session.cancelled:
            return
        logger.info(f"Stop generating message {self.message.id}")
        self.session.cancelled = True
        if self.stream is not None:
            self.stream.cancel()
        async with self._commit_lock:
            # The final commit may have won the lock
            if self.done:
                return
            self.state = RelayState.CANCELLED
            await self.client.partial_update_message(
                self.message.id, text=self.session.text, generating=False  # type: ignore[arg-type]
            )
        await self.client.send_event(self.cid, AI_INDICATOR_CLEAR, {"message_id": self.message.id})

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        try:
            self.client.off(AI_INDICATOR_STOP, self.handle_stop)
        except Exception as e:
            logger.debug(f"Error disposing relay for message {self.message.id}: {e}")

    async def _on_fragment(self, fragment: str) -> None:
        if self.state == RelayState.THINKING:
            self.state = RelayState.GENERATING
            await self.client.send_event(
                self.cid,
                AI_INDICATOR_UPDATE,
                {"ai_state": AIState.GENERATING.value, "message_id": self.message.id},
            )

        self.session.text += fragment
        self.session.fragment_count += 1
        if self.cadence.should_commit(self.session.fragment_count):
            async with self._commit_lock:
                if self.session.cancelled:
                    return
                try:
                    await self.client.partial_update_message(
                        self.message.id, text=self.session.text, generating=True  # type: ignore[arg-type]
                    )
                except Exception as e:
                    logger.error(f"Error updating message {self.message.id}: {e}")

    async def _complete(self) -> None:
        # A stream that ended without any text is reported like a failed one
        text = self.session.text or ERROR_APOLOGY
        async with self._commit_lock:
            if self.session.cancelled:
                return
            await self.client.partial_update_message(
                self.message.id, text=text, generating=False  # type: ignore[arg-type]
            )
            self.state = RelayState.COMPLETED
        if self.final_commit_delay:
            await asyncio.sleep(self.final_commit_delay)
        await self.client.send_event(self.cid, AI_INDICATOR_CLEAR, {"message_id": self.message.id})

    async def _fail_over(self, error: str) -> None:
        self.state = RelayState.FAILED_OVER
        await signal_overload(
            self.client, self.cid, self.platform, self.message, self.turn, error, self.session.text
        )

    async def _error(self) -> None:
        self.state = RelayState.ERRORED
        await self.client.send_event(
            self.cid,
            AI_INDICATOR_UPDATE,
            {"ai_state": AIState.ERROR.value, "message_id": self.message.id},
        )
        text = self.session.text + INTERRUPTED_NOTICE if self.session.text else ERROR_APOLOGY
        async with self._commit_lock:
            try:
                await self.client.partial_update_message(
                    self.message.id, text=text, generating=False  # type: ignore[arg-type]
                )
            except Exception as e:
                logger.error(f"Error finalizing message {self.message.id}: {e}")
