"""REST API for conversation history."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from model_switcher.api.deps import get_backend
from model_switcher.services.chat.backend import ChatBackend

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def list_conversations(backend: ChatBackend = Depends(get_backend)):
    conversations = await backend.list_conversations()
    return [
        {
            "cid": c.cid,
            "channel_type": c.channel_type,
            "channel_id": c.channel_id,
            "created_at": c.created_at.isoformat(),
        }
        for c in conversations
    ]


@router.get("/{cid}")
async def get_conversation(cid: str, backend: ChatBackend = Depends(get_backend)):
    conv = await backend.get_conversation(cid)
    if not conv:
        logger.debug(f"Conversation {cid} not found")
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = await backend.list_messages(cid)
    return {
        "cid": conv.cid,
        "channel_type": conv.channel_type,
        "channel_id": conv.channel_id,
        "created_at": conv.created_at.isoformat(),
        "members": await backend.members(cid),
        "messages": [m.to_dict() for m in messages],
    }
