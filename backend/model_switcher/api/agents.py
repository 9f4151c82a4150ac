"""Control plane: start, stop, list and switch AI agents."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from model_switcher.api.deps import get_registry
from model_switcher.core.config import settings
from model_switcher.services.agents.agent import AgentKind
from model_switcher.services.chat.events import MODEL_SWITCH
from model_switcher.services.llm import list_models
from model_switcher.services.llm.base import AgentPlatform
from model_switcher.services.registry import AgentRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


class StartAgentRequest(BaseModel):
    channel_id: str
    channel_type: str = "messaging"
    platform: AgentPlatform = AgentPlatform(settings.default_platform)


class StopAgentRequest(BaseModel):
    channel_id: str


class SwitchModelRequest(BaseModel):
    channel_id: str
    platform: str


@router.get("/")
async def status(registry: AgentRegistry = Depends(get_registry)):
    return {"message": "Model switcher is running", "active_agents": len(registry)}


@router.post("/start")
async def start_agent(body: StartAgentRequest, registry: AgentRegistry = Depends(get_registry)):
    if not body.channel_id:
        raise HTTPException(status_code=400, detail="Missing required fields")
    try:
        await registry.start(body.channel_id, body.channel_type, body.platform)
    except Exception as e:
        logger.error(f"Failed to start AI Agent: {e}")
        raise HTTPException(
            status_code=500, detail={"error": "Failed to start AI Agent", "reason": str(e)}
        )
    return {"message": "AI Agent started", "data": []}


@router.post("/stop")
async def stop_agent(body: StopAgentRequest, registry: AgentRegistry = Depends(get_registry)):
    try:
        await registry.stop(body.channel_id)
    except Exception as e:
        logger.error(f"Failed to stop AI Agent: {e}")
        raise HTTPException(
            status_code=500, detail={"error": "Failed to stop AI Agent", "reason": str(e)}
        )
    return {"message": "AI Agent stopped", "data": []}


@router.get("/models")
async def available_models():
    return {"models": list_models()}


@router.post("/switch")
async def switch_model(body: SwitchModelRequest, registry: AgentRegistry = Depends(get_registry)):
    logger.info(f"Switching model for {body.channel_id} to {body.platform}")
    if not body.channel_id or not body.platform:
        raise HTTPException(status_code=400, detail="Missing required fields")

    agent = registry.get(body.channel_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="AI agent not found for this channel")

    if agent.kind != AgentKind.ROUTED:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Model switching is only available with multi-model agents",
                "hint": "Set SWITCHER_USE_MULTI_MODEL=true in your environment variables",
            },
        )

    # The router picks the switch up from the conversation like any client request
    await agent.client.send_event(
        agent.cid, MODEL_SWITCH, {"channel_id": agent.cid, "platform": body.platform}
    )
    active = agent.active_platform
    return {
        "message": "Model switch initiated",
        "platform": body.platform,
        "active_model": active.value if active else "none",
    }


@router.get("/{channel_id}/active")
async def active_model(channel_id: str, registry: AgentRegistry = Depends(get_registry)):
    agent = registry.get(channel_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="AI agent not found for this channel")

    active = agent.active_platform
    return {
        "kind": agent.kind.value,
        "active_model": active.value if active else "none",
        "available_models": [p.value for p in agent.available_platforms],
    }
