import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from model_switcher.api.deps import get_backend, get_ws_backend
from model_switcher.services.chat.backend import ChatBackend, ConversationNotFound, make_cid
from model_switcher.services.chat.events import AI_INDICATOR_STOP, MODEL_SWITCH, ChatEvent

logger = logging.getLogger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    user_id: str
    text: str
    parent_id: int | None = None


class StopRequest(BaseModel):
    message_id: int | None = None


@router.post("/{channel_type}/{channel_id}/messages")
async def send_message(
    channel_type: str,
    channel_id: str,
    body: SendMessageRequest,
    backend: ChatBackend = Depends(get_backend),
):
    conv = await backend.create_conversation(channel_type, channel_id)
    await backend.add_member(conv.cid, body.user_id)
    msg = await backend.send_message(conv.cid, body.user_id, body.text, parent_id=body.parent_id)
    return msg.to_dict()


@router.get("/{channel_type}/{channel_id}/messages")
async def list_messages(
    channel_type: str, channel_id: str, backend: ChatBackend = Depends(get_backend)
):
    cid = make_cid(channel_type, channel_id)
    if not await backend.get_conversation(cid):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return [m.to_dict() for m in await backend.list_messages(cid)]


@router.post("/{channel_type}/{channel_id}/stop")
async def stop_generating(
    channel_type: str,
    channel_id: str,
    body: StopRequest,
    backend: ChatBackend = Depends(get_backend),
):
    cid = make_cid(channel_type, channel_id)
    data = {"message_id": body.message_id} if body.message_id is not None else {}
    await backend.send_event(cid, AI_INDICATOR_STOP, data)
    return {"status": "stop requested"}


@router.websocket("/{channel_type}/{channel_id}/ws")
async def chat_websocket(
    websocket: WebSocket,
    channel_type: str,
    channel_id: str,
    backend: ChatBackend = Depends(get_ws_backend),
):
    """Push every conversation event to the client and accept client requests.

    Client frames are JSON: {"type": "message", "user_id", "text", "parent_id"?},
    {"type": "stop", "message_id"?} or {"type": "switch", "platform"}.
    """
    await websocket.accept()
    conv = await backend.create_conversation(channel_type, channel_id)
    logger.debug(f"WebSocket connected to {conv.cid}")
    outbox: asyncio.Queue[dict] = asyncio.Queue()

    async def forward(event: ChatEvent) -> None:
        outbox.put_nowait(event.to_dict())

    async def pump() -> None:
        while True:
            await websocket.send_json(await outbox.get())

    subscription = backend.subscribe(forward, cid=conv.cid)
    pump_task = asyncio.create_task(pump())

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue

            kind = data.get("type")
            try:
                if kind == "message":
                    user_id = data.get("user_id") or "anonymous"
                    await backend.add_member(conv.cid, user_id)
                    await backend.send_message(
                        conv.cid, user_id, data.get("text", ""), parent_id=data.get("parent_id")
                    )
                elif kind == "stop":
                    payload = {"message_id": data["message_id"]} if data.get("message_id") else {}
                    await backend.send_event(conv.cid, AI_INDICATOR_STOP, payload)
                elif kind == "switch":
                    await backend.send_event(
                        conv.cid, MODEL_SWITCH, {"channel_id": conv.cid, "platform": data.get("platform")}
                    )
                else:
                    await websocket.send_json({"type": "error", "error": f"Unknown request: {kind}"})
            except ConversationNotFound as e:
                await websocket.send_json({"type": "error", "error": str(e)})

    except WebSocketDisconnect:
        logger.debug(f"WebSocket disconnected from {conv.cid}")
    finally:
        backend.unsubscribe(subscription)
        pump_task.cancel()
        try:
            await pump_task
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
