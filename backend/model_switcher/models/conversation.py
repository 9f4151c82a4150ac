"""Conversation, membership and message tables backing the chat backend."""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, Relationship, SQLModel


class Conversation(SQLModel, table=True):
    cid: str = Field(primary_key=True)  # "<channel_type>:<channel_id>"
    channel_type: str = Field(default="messaging")
    channel_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    messages: list["ChatMessage"] = Relationship(back_populates="conversation")


class ConversationMember(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cid: str = Field(foreign_key="conversation.cid", index=True)
    user_id: str
    role: str = Field(default="member")  # "member" | "admin"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChatMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cid: str = Field(foreign_key="conversation.cid", index=True)
    user_id: str
    text: str = Field(default="")
    generating: bool = Field(default=False)
    ai_generated: bool = Field(default=False)
    parent_id: Optional[int] = None  # set for threaded replies
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    conversation: Optional[Conversation] = Relationship(back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cid": self.cid,
            "user_id": self.user_id,
            "text": self.text,
            "generating": self.generating,
            "ai_generated": self.ai_generated,
            "parent_id": self.parent_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
