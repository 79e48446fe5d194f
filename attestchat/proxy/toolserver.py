"""Out-of-process tool server client.

Spawns the attestation tool server as a subprocess and talks the Model
Context Protocol to it: newline-delimited JSON-RPC 2.0 over stdin/stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any

from .config import Config

logger = logging.getLogger("attestchat.toolserver")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "attestchat", "version": "0.1.0"}

# Largest single JSON-RPC line accepted from the tool server
STREAM_LIMIT = 16 * 1024 * 1024


class ToolServerError(RuntimeError):
    """The tool server could not be reached or the call itself failed."""


@dataclass
class ToolCallResult:
    texts: list[Any] = field(default_factory=list)
    is_error: bool = False


class ToolServer:
    """Manages the tool-server subprocess and serializes requests to it."""

    TERMINATE_GRACE = 5.0

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        request_timeout: float = 30.0,
        line_limit: int = STREAM_LIMIT,
    ) -> None:
        self.command = command
        self.args = list(args or [])
        self.env = {**os.environ, **env} if env else None
        self.request_timeout = request_timeout
        self.line_limit = line_limit
        self._proc: asyncio.subprocess.Process | None = None
        self._request_id = 0
        self._lock = asyncio.Lock()
        self._closing = False
        self._watch_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self.server_info: dict[str, Any] = {}

    @classmethod
    def from_config(cls, cfg: Config) -> ToolServer:
        return cls(
            command=cfg.tool_server_command,
            args=list(cfg.tool_server_args),
            request_timeout=cfg.tool_server_timeout,
        )

    # ── Lifecycle ──

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if not self.command:
            raise ToolServerError("No tool server command configured")
        if not os.path.exists(self.command) and not shutil.which(self.command):
            raise ToolServerError(f"Tool server not found: {self.command}")

        logger.info(f"Starting tool server: {self.command} {' '.join(self.args)}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.command, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=self.line_limit,
            )
        except OSError as e:
            raise ToolServerError(f"Failed to start tool server: {e}") from e

        self._closing = False
        self._watch_task = asyncio.create_task(self._watch_process())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self._notify("notifications/initialized", {})
        logger.info(f"Tool server ready (pid={self._proc.pid}, info={self.server_info})")

    async def close(self) -> None:
        self._closing = True
        proc = self._proc
        if proc and proc.returncode is None:
            if proc.stdin:
                proc.stdin.close()
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.TERMINATE_GRACE)
            except asyncio.TimeoutError:
                logger.warning("Tool server did not exit after SIGTERM, killing it")
                proc.kill()
                await proc.wait()
        for task in (self._watch_task, self._stderr_task):
            if task and not task.done():
                task.cancel()
        self._proc = None
        logger.info("Tool server stopped")

    # ── Capabilities ──

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self.request("tools/list", {})
        tools = result.get("tools", []) if isinstance(result, dict) else []
        return tools if isinstance(tools, list) else []

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        result = await self.request("tools/call", {"name": name, "arguments": arguments or {}})
        if not isinstance(result, dict):
            raise ToolServerError(f"Malformed tools/call result: {result!r}")
        content = result.get("content") or []
        return ToolCallResult(
            texts=content if isinstance(content, list) else [content],
            is_error=bool(result.get("isError", False)),
        )

    # ── JSON-RPC ──

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        async with self._lock:
            proc = self._require_process()
            self._request_id += 1
            request_id = self._request_id
            await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            logger.debug(f"Sent {method} (id={request_id})")

            try:
                response = await asyncio.wait_for(
                    self._read_response(proc, request_id), timeout=self.request_timeout
                )
            except asyncio.TimeoutError:
                raise ToolServerError(
                    f"Timed out after {self.request_timeout}s waiting for {method}"
                ) from None

        if "error" in response:
            err = response["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise ToolServerError(f"Tool server error: {message}")
        return response.get("result", {})

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        async with self._lock:
            self._require_process()
            await self._write({"jsonrpc": "2.0", "method": method, "params": params})

    async def _write(self, payload: dict[str, Any]) -> None:
        proc = self._require_process()
        try:
            proc.stdin.write((json.dumps(payload) + "\n").encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ToolServerError(f"Tool server pipe closed: {e}") from e

    async def _read_response(self, proc: asyncio.subprocess.Process, request_id: int) -> dict[str, Any]:
        while True:
            try:
                line = await proc.stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                line = e.partial
            except asyncio.LimitOverrunError as e:
                await self._skip_line(proc.stdout)
                raise ToolServerError(
                    f"Tool server response exceeded the {self.line_limit} byte line limit"
                ) from e
            if not line:
                raise ToolServerError("Tool server closed its output stream")
            try:
                message = json.loads(line.decode(errors="replace"))
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON line from tool server: {line[:200]!r}")
                continue
            if not isinstance(message, dict) or message.get("id") != request_id:
                # notifications, log messages, or replies to abandoned requests
                continue
            return message

    @staticmethod
    async def _skip_line(stream: asyncio.StreamReader) -> None:
        """Consume the rest of an oversized line so the next read starts on a fresh message."""
        while True:
            try:
                await stream.readuntil(b"\n")
                return
            except asyncio.LimitOverrunError as e:
                await stream.readexactly(e.consumed)
            except asyncio.IncompleteReadError:
                return

    def _require_process(self) -> asyncio.subprocess.Process:
        if not self.is_running or not self._proc.stdin or not self._proc.stdout:
            raise ToolServerError("Tool server is not running")
        return self._proc

    # ── Background tasks ──

    async def _watch_process(self) -> None:
        proc = self._proc
        if proc is None:
            return
        code = await proc.wait()
        if self._closing:
            return
        if code == 0:
            logger.info("Tool server process exited normally")
        else:
            logger.error(f"Tool server process exited unexpectedly with status {code}")

    async def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except (ValueError, asyncio.LimitOverrunError):
                logger.debug("[tool-server] dropped an oversized stderr line")
                continue
            if not line:
                return
            logger.debug(f"[tool-server] {line.decode(errors='replace').rstrip()}")
