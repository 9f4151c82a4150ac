"""FastAPI dependencies for objects created in the app lifespan."""

from fastapi import Request, WebSocket

from model_switcher.services.chat.backend import ChatBackend
from model_switcher.services.registry import AgentRegistry


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.registry


def get_backend(request: Request) -> ChatBackend:
    return request.app.state.backend


def get_ws_backend(websocket: WebSocket) -> ChatBackend:
    return websocket.app.state.backend
