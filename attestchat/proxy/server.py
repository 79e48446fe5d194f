"""FastAPI server: bridges the browser ↔ Ollama ↔ attestation tool server."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .agent import AgentLoop, ApprovalNotFound, EventBus, ToolCatalog, ToolExecutor
from .config import Config
from .ollama import OllamaClient
from .system import get_system_prompt
from .toolserver import ToolServer, ToolServerError

logger = logging.getLogger("attestchat.server")

STATIC_DIR = Path(__file__).parent / "static"


class Services:
    """Process-scoped components, built once at startup and torn down on shutdown."""

    def __init__(
        self,
        cfg: Config,
        ollama_client: OllamaClient,
        tools: ToolServer,
        catalog: ToolCatalog,
        bus: EventBus,
        agent: AgentLoop,
    ) -> None:
        self.cfg = cfg
        self.ollama = ollama_client
        self.tools = tools
        self.catalog = catalog
        self.bus = bus
        self.agent = agent

    @classmethod
    def build(cls, cfg: Config, ollama_client: OllamaClient | None = None, tools: ToolServer | None = None) -> Services:
        ollama_client = ollama_client or OllamaClient(cfg)
        tools = tools or ToolServer.from_config(cfg)
        catalog = ToolCatalog()
        bus = EventBus(
            buffer_size=cfg.event_buffer_size,
            keepalive_interval=cfg.event_keepalive_interval or None,
        )
        agent = AgentLoop(
            model=ollama_client,
            executor=ToolExecutor(tools, catalog, bus),
            catalog=catalog,
            bus=bus,
            system_prompt=get_system_prompt(cfg),
            max_turns=cfg.agent_max_turns,
        )
        return cls(cfg, ollama_client, tools, catalog, bus, agent)

    async def start(self) -> None:
        try:
            await self.tools.start()
            self.catalog.load(ToolCatalog.from_raw(await self.tools.list_tools()))
        except ToolServerError as e:
            logger.warning(f"Tool server unavailable, continuing without tools: {e}")
        self.agent.start()

    async def close(self) -> None:
        await self.agent.close()
        await self.tools.close()
        await self.ollama.close()


# ─── Request/Response Models ─────────────────────────────────────────

class ChatRequest(BaseModel):
    message: str


def create_app(cfg: Config, services: Services | None = None) -> FastAPI:
    """Build the app. ``services`` may be injected (tests); otherwise built from ``cfg``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or Services.build(cfg)
        logger.info(f"Starting attestchat on {cfg.proxy_host}:{cfg.proxy_port}")
        logger.info(f"  Ollama: {cfg.ollama_url} (model: {cfg.ollama_model})")
        logger.info(f"  Tool server: {cfg.tool_server_command} {' '.join(cfg.tool_server_args)}")
        await svc.start()
        app.state.services = svc
        yield
        await svc.close()
        logger.info("attestchat shutdown complete")

    app = FastAPI(
        title="attestchat",
        version="0.1.0",
        description="Human-approved tool calling for Keylime attestation management",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


def _register_routes(app: FastAPI) -> None:

    @app.get("/", response_class=HTMLResponse)
    async def index() -> HTMLResponse:
        return HTMLResponse((STATIC_DIR / "index.html").read_text(encoding="utf-8"))

    @app.post("/api/chat", status_code=202)
    async def chat(body: ChatRequest, request: Request) -> JSONResponse:
        """Queue a user message; progress arrives on /api/events."""
        if not body.message.strip():
            return JSONResponse({"error": "Message required"}, status_code=400)
        _services(request).agent.submit(body.message)
        return JSONResponse({"status": "accepted"}, status_code=202)

    @app.post("/api/tool/approve")
    async def approve_tool(request: Request) -> JSONResponse:
        try:
            tool = _services(request).agent.approve()
        except ApprovalNotFound:
            return JSONResponse({"status": "noop", "message": "No pending tool request"})
        logger.info(f"[TOOL] Approved: {tool.name}")
        return JSONResponse({"status": "ok", "tool_id": tool.tool_id, "tool_name": tool.name})

    @app.post("/api/tool/deny")
    async def deny_tool(request: Request) -> JSONResponse:
        try:
            tool = _services(request).agent.deny()
        except ApprovalNotFound:
            return JSONResponse({"status": "noop", "message": "No pending tool request"})
        return JSONResponse({"status": "ok", "tool_id": tool.tool_id, "tool_name": tool.name})

    @app.post("/api/reset")
    async def reset_conversation(request: Request) -> JSONResponse:
        _services(request).agent.reset()
        return JSONResponse({"status": "ok", "message": "Conversation reset"})

    @app.get("/api/events")
    async def events(request: Request) -> EventSourceResponse:
        """Live event stream. Late subscribers only see events published after they connect."""
        subscription = _services(request).bus.subscribe()

        async def stream() -> AsyncIterator[dict[str, Any]]:
            async with subscription:
                async for event in subscription:
                    if await request.is_disconnected():
                        logger.info("[SSE] Client disconnected")
                        return
                    yield event.to_sse()

        return EventSourceResponse(stream(), media_type="text/event-stream")

    @app.get("/api/status")
    async def get_status(request: Request) -> JSONResponse:
        """Health check and connection status."""
        svc = _services(request)
        ollama_ok = await svc.ollama.health_check()
        tools_ok = svc.tools.is_running
        return JSONResponse({
            "status": "ok" if (ollama_ok and tools_ok) else "degraded",
            "ollama": {
                "connected": ollama_ok,
                "url": svc.cfg.ollama_url,
                "model": svc.cfg.ollama_model,
            },
            "tool_server": {
                "running": tools_ok,
                "command": svc.cfg.tool_server_command,
                "tools": len(svc.catalog),
            },
            "agent": svc.agent.get_stats(),
        })

    @app.get("/api/tools")
    async def list_tools(request: Request) -> JSONResponse:
        tools = _services(request).catalog.describe()
        return JSONResponse({"count": len(tools), "tools": tools})

    @app.get("/api/history")
    async def get_history(request: Request) -> JSONResponse:
        return JSONResponse({"messages": _services(request).agent.history_dicts()})


def run_server(cfg: Config) -> None:
    """Run the web server."""
    import uvicorn

    uvicorn.run(
        create_app(cfg),
        host=cfg.proxy_host,
        port=cfg.proxy_port,
        log_level="warning",
        log_config=None,      # keep our global logging setup
    )
