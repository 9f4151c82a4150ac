import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from model_switcher.core import database
from model_switcher.core.config import settings
from model_switcher.api import agents, chat, conversations
from model_switcher.services.chat.backend import ChatBackend
from model_switcher.services.registry import AgentRegistry


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure logging based on debug setting
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s" if settings.debug
        else "%(levelname)-8s %(name)s: %(message)s",
    )

    database.init_db()
    backend = ChatBackend(database.engine)
    registry = AgentRegistry(backend)
    app.state.backend = backend
    app.state.registry = registry

    # Start background idle sweep
    sweeper_task = asyncio.create_task(registry.run_sweeper())

    yield

    # Cancel sweeper, then dispose whatever is still running
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await registry.shutdown()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agents.router, prefix="/api/agents", tags=["agents"])
app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
app.include_router(conversations.router, prefix="/api/conversations", tags=["conversations"])


@app.get("/api/health")
async def health(request: Request):
    return {
        "status": "ok",
        "app": settings.app_name,
        "active_agents": len(request.app.state.registry),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("model_switcher.main:app", host=settings.host, port=settings.port)
