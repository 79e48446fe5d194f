"""Human approval gate for tool requests."""

from __future__ import annotations

import logging

from .models import ToolRequest

logger = logging.getLogger("attestchat.agent")


class ApprovalNotFound(LookupError):
    """Nothing is pending (e.g. a stale approve/deny after a reset)."""


class ApprovalGate:
    """Holds at most one tool request awaiting a human decision.

    All methods are synchronous, so on the event loop each check-and-clear is
    atomic: of two racing approve/deny calls exactly one gets the request.
    """

    def __init__(self) -> None:
        self._pending: ToolRequest | None = None

    @property
    def pending(self) -> ToolRequest | None:
        return self._pending

    def offer(self, request: ToolRequest) -> ToolRequest | None:
        """Make ``request`` the pending one. Returns the displaced request, if any."""
        displaced = self._pending
        if displaced is not None:
            logger.warning(
                f"Tool request {displaced.tool_id} ('{displaced.name}') overwritten by "
                f"{request.tool_id} ('{request.name}') before a decision; treating it as denied"
            )
        self._pending = request
        return displaced

    def approve(self) -> ToolRequest:
        return self._take("approve")

    def deny(self) -> ToolRequest:
        return self._take("deny")

    def clear(self) -> ToolRequest | None:
        request, self._pending = self._pending, None
        return request

    def _take(self, action: str) -> ToolRequest:
        request = self._pending
        if request is None:
            raise ApprovalNotFound(f"No pending tool request to {action}")
        self._pending = None
        logger.info(f"Tool request {request.tool_id} ('{request.name}'): {action}")
        return request
