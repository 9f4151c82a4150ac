"""In-process chat backend: sqlmodel storage plus event fan-out.

Agents only use the operations exposed here (watch a conversation, manage
members, append a message, partially update a message, broadcast an event
and listen for events), so a hosted chat service can sit behind the same
interface.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from model_switcher.models.conversation import ChatMessage, Conversation, ConversationMember
from model_switcher.services.chat.events import MESSAGE_NEW, MESSAGE_UPDATED, ChatEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ChatEvent], Awaitable[None]]

_UPDATABLE_FIELDS = {"text", "generating", "ai_generated"}


class ConversationNotFound(LookupError):
    pass


class MessageNotFound(LookupError):
    pass


def make_cid(channel_type: str, channel_id: str) -> str:
    return f"{channel_type}:{channel_id}"


@dataclass(eq=False)
class Subscription:
    listener: Listener
    event_type: str | None = None  # None matches every event
    cid: str | None = None  # None matches every conversation

    def matches(self, event: ChatEvent) -> bool:
        if self.event_type is not None and self.event_type != event.type:
            return False
        return self.cid is None or self.cid == event.cid


class ChatBackend:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._subscriptions: list[Subscription] = []

    # --- Conversations ---

    async def create_conversation(self, channel_type: str, channel_id: str) -> Conversation:
        """Get or create a conversation (the equivalent of watching a channel)."""
        cid = make_cid(channel_type, channel_id)
        with Session(self._engine) as session:
            conv = session.get(Conversation, cid)
            if conv:
                return conv
            conv = Conversation(cid=cid, channel_type=channel_type, channel_id=channel_id)
            session.add(conv)
            session.commit()
            session.refresh(conv)
            logger.debug(f"Created conversation {cid}")
            return conv

    async def get_conversation(self, cid: str) -> Conversation | None:
        with Session(self._engine) as session:
            return session.get(Conversation, cid)

    async def list_conversations(self) -> list[Conversation]:
        with Session(self._engine) as session:
            return list(session.exec(select(Conversation).order_by(Conversation.created_at)).all())  # type: ignore

    # --- Members ---

    async def add_member(self, cid: str, user_id: str, role: str = "member") -> None:
        with Session(self._engine) as session:
            if not session.get(Conversation, cid):
                raise ConversationNotFound(f"Conversation {cid} not found")
            existing = session.exec(
                select(ConversationMember).where(
                    ConversationMember.cid == cid, ConversationMember.user_id == user_id
                )
            ).first()
            if existing:
                return
            session.add(ConversationMember(cid=cid, user_id=user_id, role=role))
            session.commit()

    async def remove_member(self, cid: str, user_id: str) -> None:
        with Session(self._engine) as session:
            members = session.exec(
                select(ConversationMember).where(
                    ConversationMember.cid == cid, ConversationMember.user_id == user_id
                )
            ).all()
            for member in members:
                session.delete(member)
            session.commit()

    async def members(self, cid: str) -> list[str]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(ConversationMember)
                .where(ConversationMember.cid == cid)
                .order_by(ConversationMember.id)  # type: ignore
            ).all()
            return [m.user_id for m in rows]

    # --- Messages ---

    async def send_message(
        self,
        cid: str,
        user_id: str,
        text: str,
        *,
        ai_generated: bool = False,
        generating: bool = False,
        parent_id: int | None = None,
    ) -> ChatMessage:
        with Session(self._engine) as session:
            if not session.get(Conversation, cid):
                raise ConversationNotFound(f"Conversation {cid} not found")
            msg = ChatMessage(
                cid=cid,
                user_id=user_id,
                text=text,
                ai_generated=ai_generated,
                generating=generating,
                parent_id=parent_id,
            )
            session.add(msg)
            session.commit()
            session.refresh(msg)

        await self._publish(ChatEvent(type=MESSAGE_NEW, cid=cid, message=msg, user_id=user_id))
        return msg

    async def partial_update_message(self, message_id: int, **fields: Any) -> ChatMessage:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {', '.join(sorted(unknown))}")

        with Session(self._engine) as session:
            msg = session.get(ChatMessage, message_id)
            if not msg:
                raise MessageNotFound(f"Message {message_id} not found")
            for name, value in fields.items():
                setattr(msg, name, value)
            msg.updated_at = datetime.now(timezone.utc)
            session.add(msg)
            session.commit()
            session.refresh(msg)

        await self._publish(ChatEvent(type=MESSAGE_UPDATED, cid=msg.cid, message=msg))
        return msg

    async def get_message(self, message_id: int) -> ChatMessage | None:
        with Session(self._engine) as session:
            return session.get(ChatMessage, message_id)

    async def recent_messages(self, cid: str, limit: int) -> list[ChatMessage]:
        """Most recent main-channel messages, oldest first. Thread replies are excluded."""
        with Session(self._engine) as session:
            rows = session.exec(
                select(ChatMessage)
                .where(ChatMessage.cid == cid, ChatMessage.parent_id == None)  # noqa: E711
                .order_by(ChatMessage.id.desc())  # type: ignore
                .limit(limit)
            ).all()
            return list(reversed(rows))

    async def list_messages(self, cid: str) -> list[ChatMessage]:
        with Session(self._engine) as session:
            return list(
                session.exec(
                    select(ChatMessage).where(ChatMessage.cid == cid).order_by(ChatMessage.id)  # type: ignore
                ).all()
            )

    # --- Events ---

    async def send_event(
        self,
        cid: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> ChatEvent:
        event = ChatEvent(type=event_type, cid=cid, data=data or {}, user_id=user_id)
        await self._publish(event)
        return event

    def subscribe(
        self, listener: Listener, *, event_type: str | None = None, cid: str | None = None
    ) -> Subscription:
        subscription = Subscription(listener=listener, event_type=event_type, cid=cid)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def connect(self, user_id: str) -> "ChatClient":
        return ChatClient(self, user_id)

    async def _publish(self, event: ChatEvent) -> None:
        # Snapshot: listeners may subscribe or unsubscribe while handling
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                await subscription.listener(event)
            except Exception:
                logger.exception(f"Listener failed for {event.type} on {event.cid}")


class ChatClient:
    """A connected user session. Binds the author identity and owns its listeners."""

    def __init__(self, backend: ChatBackend, user_id: str):
        self.backend = backend
        self.user_id = user_id
        self.connected = True
        self._subscriptions: dict[tuple[str, Listener], Subscription] = {}

    def on(self, event_type: str, listener: Listener, cid: str | None = None) -> None:
        key = (event_type, listener)
        if key in self._subscriptions:
            return
        self._subscriptions[key] = self.backend.subscribe(listener, event_type=event_type, cid=cid)

    def off(self, event_type: str, listener: Listener) -> None:
        subscription = self._subscriptions.pop((event_type, listener), None)
        if subscription:
            self.backend.unsubscribe(subscription)

    async def send_message(self, cid: str, text: str, **kwargs: Any) -> ChatMessage:
        return await self.backend.send_message(cid, self.user_id, text, **kwargs)

    async def partial_update_message(self, message_id: int, **fields: Any) -> ChatMessage:
        return await self.backend.partial_update_message(message_id, **fields)

    async def send_event(self, cid: str, event_type: str, data: dict[str, Any] | None = None) -> ChatEvent:
        return await self.backend.send_event(cid, event_type, data, user_id=self.user_id)

    async def disconnect(self) -> None:
        for subscription in self._subscriptions.values():
            self.backend.unsubscribe(subscription)
        self._subscriptions.clear()
        self.connected = False
