"""Tool execution: runs approved requests and classifies what came back."""

from __future__ import annotations

import logging
import time
from typing import Callable

from ..toolserver import ToolServer, ToolServerError
from .catalog import ToolCatalog
from .events import EventBus
from .formatters import extract_text, tool_executing_event, tool_result_event, truncate
from .models import OutcomeKind, ToolOutcome, ToolRequest

logger = logging.getLogger("attestchat.agent")


class ToolExecutor:
    """Runs an approved request through the tool server and classifies the outcome."""

    def __init__(self, tools: ToolServer, catalog: ToolCatalog, bus: EventBus) -> None:
        self.tools = tools
        self.catalog = catalog
        self.bus = bus

    async def execute(self, request: ToolRequest, is_current: Callable[[], bool] | None = None) -> ToolOutcome:
        """Run ``request``. The result event is withheld when ``is_current()`` is false on return."""
        self.bus.publish(tool_executing_event(request))
        logger.info(f"[TOOL] Executing: {request.name} (id={request.tool_id})")

        start_time = time.time()
        outcome = await self._invoke(request)
        duration = time.time() - start_time

        if outcome.is_error:
            logger.error(
                f"[TOOL] {request.name} failed ({outcome.kind.value}) in {duration:.2f}s: "
                f"{truncate(outcome.text)}"
            )
        else:
            logger.info(f"[TOOL] {request.name} completed in {duration:.2f}s: {truncate(outcome.text)}")

        if is_current is None or is_current():
            self.bus.publish(tool_result_event(outcome))
        return outcome

    async def _invoke(self, request: ToolRequest) -> ToolOutcome:
        if not self.catalog.has_tool(request.name):
            known = ", ".join(self.catalog.names()) or "none"
            return self._transport_failure(
                request, f"unknown tool '{request.name}' (available tools: {known})"
            )

        try:
            result = await self.tools.call_tool(request.name, request.arguments)
        except ToolServerError as e:
            return self._transport_failure(request, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error calling tool '{request.name}'")
            return self._transport_failure(request, str(e) or type(e).__name__)

        text = extract_text(result.texts)
        if result.is_error:
            return ToolOutcome(
                tool_id=request.tool_id,
                name=request.name,
                text=f"Tool '{request.name}' execution failed: {text}",
                kind=OutcomeKind.TOOL_ERROR,
            )

        if not text:
            logger.warning(f"Tool '{request.name}' returned empty content")
        return ToolOutcome(tool_id=request.tool_id, name=request.name, text=text)

    @staticmethod
    def _transport_failure(request: ToolRequest, message: str) -> ToolOutcome:
        return ToolOutcome(
            tool_id=request.tool_id,
            name=request.name,
            text=f"Error: {message}",
            kind=OutcomeKind.TRANSPORT_ERROR,
        )
