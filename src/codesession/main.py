import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Literal

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .agent import SessionManager, load_mcp_tools, set_session_manager
from .agent.tools import parse_mcp_cmds
from .errors import GenerationInProgress, SessionEngineError, SessionNotReady
from .events import EventType
from .services.history import get_history_store_async
from .settings import get_settings

TERMINAL_EVENTS = (EventType.GENERATION_FINISHED, EventType.GENERATION_FAILED)


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("codesession")
    logger = logging.getLogger("codesession.server")
    if root.handlers:
        return logger

    root.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the history store, load MCP tools, build the session manager."""
    history = await get_history_store_async()
    if history is None:
        LOGGER.info("No history store configured; conversations live in memory only")

    tools: Dict[str, Any] = {}
    cmds = parse_mcp_cmds(settings.mcp_server_cmds)
    if cmds:
        LOGGER.info("Loading MCP tools from %d servers...", len(cmds))
        try:
            tools = await load_mcp_tools(cmds)
            LOGGER.info("Loaded %d MCP tools", len(tools))
        except (OSError, ConnectionError, TimeoutError) as e:
            LOGGER.warning("MCP tools unavailable: %s", e)
        except Exception as e:
            LOGGER.exception("Unexpected error loading MCP tools: %s", e)

    manager = SessionManager.from_settings(settings, history=history)
    set_session_manager(manager)
    app.state.manager = manager
    app.state.tools = tools

    yield

    LOGGER.info("Shutting down...")
    await manager.flush()
    close = getattr(manager.transport, "close", None)
    if close is not None:
        await close()
    if history is not None:
        await history.close()
    set_session_manager(None)


app = FastAPI(
    title="codesession",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class MessageIn(BaseModel):
    role: Literal["system", "user", "assistant", "tool"] = "user"
    content: str
    tool_call_id: str | None = None


def _manager(request: Request) -> SessionManager:
    return request.app.state.manager


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.get("/projects/{project_id}/messages")
async def list_messages(project_id: str, request: Request) -> dict[str, Any]:
    """Conversation of a project plus its generation state."""
    session = await _manager(request).load_session(project_id, request.app.state.tools)
    return {
        "project_id": session.project_id,
        "generation_state": session.generation_state.value,
        "messages": [m.to_dict() for m in session.messages],
        "streaming_message": session.streaming_message.to_dict() if session.streaming_message else None,
    }


@app.post("/projects/{project_id}/messages")
async def post_message(project_id: str, body: MessageIn, request: Request) -> dict[str, Any]:
    manager = _manager(request)
    await manager.load_session(project_id, request.app.state.tools)
    try:
        message = await manager.add_message(project_id, body.model_dump(exclude_none=True))
    except SessionNotReady as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return message.to_dict()


@app.post("/projects/{project_id}/cancel")
async def cancel(project_id: str, request: Request) -> dict[str, Any]:
    cancelled = await _manager(request).cancel_generation(project_id)
    return {"project_id": project_id, "cancelled": cancelled}


@app.delete("/projects/{project_id}")
async def evict(project_id: str, request: Request) -> dict[str, Any]:
    try:
        evicted = _manager(request).evict_session(project_id)
    except GenerationInProgress as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return {"project_id": project_id, "evicted": evicted}


async def _forward_generation(websocket: WebSocket, manager: SessionManager, project_id: str, model: str) -> None:
    """Run one generation and stream its events to the client in order."""
    with manager.subscribe(project_id) as events:
        generation = asyncio.create_task(manager.start_generation(project_id, model))
        try:
            while not generation.done():
                getter = asyncio.ensure_future(events.get())
                await asyncio.wait({getter, generation}, return_when=asyncio.FIRST_COMPLETED)
                if getter.done():
                    await websocket.send_json(getter.result().to_dict())
                else:
                    getter.cancel()
            for event in events.drain():
                await websocket.send_json(event.to_dict())
        except WebSocketDisconnect:
            LOGGER.info("WS disconnect during generation for %s; cancelling", project_id)
            await manager.cancel_generation(project_id)
            await asyncio.wait([generation])
            raise

    await generation


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint.

    Expected Input (JSON):
        {
            "project_id": str - project whose session to use,
            "message": str - user message text (optional when resuming),
            "model": str - "provider/model" (defaults to settings.default_model)
        }

    Response Format:
        Streams JSON event objects (streamingUpdate, messageAdded,
        generationFinished, generationFailed), then:
        - {"type": "done", "project_id": str, "message_count": int}
        - {"type": "error", "data": str, "error_type": str} on failure
    """
    await websocket.accept()
    manager: SessionManager = websocket.app.state.manager
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return

        project_id = str(payload.get("project_id") or "default")
        message = str(payload.get("message") or "").strip()
        model = str(payload.get("model") or settings.default_model)

        LOGGER.info("WS chat start project_id=%s model=%s", project_id, model)
        await manager.load_session(project_id, websocket.app.state.tools)

        try:
            if message:
                await manager.add_message(project_id, {"role": "user", "content": message})
            await _forward_generation(websocket, manager, project_id, model)
        except SessionEngineError as e:
            LOGGER.warning("Generation error for %s: %s", project_id, e)
            await websocket.send_json({"type": "error", "data": str(e), "error_type": type(e).__name__})
            await websocket.close()
            return

        session = manager.get_session(project_id)
        await websocket.send_json(
            {
                "type": "done",
                "project_id": project_id,
                "message_count": len(session.messages) if session else 0,
            }
        )
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
