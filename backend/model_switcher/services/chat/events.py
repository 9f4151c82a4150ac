"""Event names and payloads exchanged over the chat backend."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from model_switcher.models.conversation import ChatMessage

# Backend events
MESSAGE_NEW = "message.new"
MESSAGE_UPDATED = "message.updated"

# Generation indicator
AI_INDICATOR_UPDATE = "ai_indicator.update"
AI_INDICATOR_CLEAR = "ai_indicator.clear"
AI_INDICATOR_STOP = "ai_indicator.stop"

# Model switching
MODEL_SWITCH = "custom_model_switch"
MODEL_SWITCHED = "custom_model_switched"
MODEL_SWITCH_ERROR = "custom_model_switch_error"
MODEL_OVERLOADED = "custom_model_overloaded"


class AIState(str, Enum):
    THINKING = "AI_STATE_THINKING"
    GENERATING = "AI_STATE_GENERATING"
    ERROR = "AI_STATE_ERROR"


@dataclass
class ChatEvent:
    type: str
    cid: str
    data: dict[str, Any] = field(default_factory=dict)
    message: ChatMessage | None = None
    user_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "cid": self.cid,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }
        if self.user_id:
            payload["user_id"] = self.user_id
        if self.message is not None:
            payload["message"] = self.message.to_dict()
        return payload
