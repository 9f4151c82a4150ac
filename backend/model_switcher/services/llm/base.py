"""Streaming provider interface. Every model backend implements this.

A provider turns a list of role-tagged messages into a FragmentStream: a
lazy, forward-only sequence of text fragments that can be cancelled at any
time. Provider-specific wire formats stay inside the provider; consumers only
see fragments and one of the terminal outcomes below.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)


class AgentPlatform(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    LLAMA = "llama"
    GEMINI = "gemini"


@dataclass
class ContextMessage:
    role: str  # "user" | "assistant"
    content: str


class ProviderError(Exception):
    """Transport or parse failure while talking to a provider."""


class ProviderOverloadedError(ProviderError):
    """Provider is overloaded or temporarily unavailable. Callers should fail over."""


class ProviderConfigError(ProviderError):
    """Provider is missing its credential or endpoint."""


class StreamOutcome(str, Enum):
    PENDING = "pending"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    OVERLOADED = "overloaded"
    FAILED = "failed"


_END = object()


class FragmentStream:
    """Uniform fragment sequence over a provider-specific async source.

    The source is drained by a private pump task so that cancel() can abort
    the underlying network call even while the consumer is waiting for the
    next fragment. Iteration ends normally when the source is exhausted or
    the stream is cancelled, raises ProviderOverloadedError when the provider
    reports overload, and ProviderError for anything else.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        provider: str = "",
        on_close: Callable[[], Awaitable[None]] | None = None,
    ):
        self.provider = provider
        self.outcome = StreamOutcome.PENDING
        self.error: ProviderError | None = None
        self._source = source
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pump: asyncio.Task | None = None
        self._cancel_requested = False
        self._closed = False

    @property
    def done(self) -> bool:
        return self.outcome != StreamOutcome.PENDING

    def __aiter__(self) -> "FragmentStream":
        return self

    async def __anext__(self) -> str:
        if self._pump is None and not self.done:
            self._pump = asyncio.create_task(self._run())
            self._pump.add_done_callback(self._on_pump_done)
        if self.done and self._queue.empty():
            return await self._end()

        item = await self._queue.get()
        if item is _END:
            return await self._end()
        return item

    def cancel(self) -> None:
        """Request the provider call to abort. Safe to call repeatedly or after the end."""
        if self.done or self._cancel_requested:
            return
        self._cancel_requested = True
        if self._pump is None:
            # Never iterated: only the transport needs releasing
            self.outcome = StreamOutcome.CANCELLED
            self._queue.put_nowait(_END)
            asyncio.ensure_future(self._close())
        else:
            self._pump.cancel()

    async def _end(self) -> str:
        if self.outcome in (StreamOutcome.OVERLOADED, StreamOutcome.FAILED) and self.error:
            raise self.error
        raise StopAsyncIteration

    async def _run(self) -> None:
        try:
            async for fragment in self._source:
                if fragment:
                    self._queue.put_nowait(fragment)
            self.outcome = StreamOutcome.EXHAUSTED
        except asyncio.CancelledError:
            self.outcome = StreamOutcome.CANCELLED
        except ProviderOverloadedError as e:
            logger.warning(f"{self.provider} overloaded: {e}")
            self.outcome = StreamOutcome.OVERLOADED
            self.error = e
        except ProviderError as e:
            logger.error(f"{self.provider} stream failed: {e}")
            self.outcome = StreamOutcome.FAILED
            self.error = e
        except Exception as e:
            logger.error(f"{self.provider} stream failed: {e}")
            self.outcome = StreamOutcome.FAILED
            self.error = ProviderError(str(e))
            self.error.__cause__ = e
        finally:
            await self._close()

    def _on_pump_done(self, task: asyncio.Task) -> None:
        if self.outcome == StreamOutcome.PENDING:
            # Cancelled before the pump got to run
            self.outcome = StreamOutcome.CANCELLED
        if not self._closed:
            asyncio.ensure_future(self._close())
        self._queue.put_nowait(_END)

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._source, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
            if self._on_close is not None:
                await self._on_close()
        except Exception as e:
            logger.debug(f"Error closing {self.provider} stream: {e}")


class BaseStreamProvider(ABC):
    platform: AgentPlatform

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when the provider's credential or endpoint is present."""
        ...

    def ensure_configured(self) -> None:
        if not self.is_configured:
            raise ProviderConfigError(f"{self.platform.value} is not configured")

    @abstractmethod
    async def open(self, messages: list[ContextMessage]) -> FragmentStream:
        """Start a generation and return its fragment stream."""
        ...

    async def close(self) -> None:
        """Release any transport held by the provider."""
        return None


# Status codes that mean "try another provider" rather than "this request is broken"
OVERLOAD_STATUS_CODES = {429, 503, 529}
