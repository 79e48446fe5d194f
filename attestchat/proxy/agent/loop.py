"""Conversation orchestrator: model rounds, approvals and tool execution on one worker task."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Any

from ..system import SUMMARY_PROMPT
from .catalog import ToolCatalog
from .events import EventBus
from .executors import ToolExecutor
from .formatters import (
    assistant_message_event, done_event, error_event, reset_event,
    tool_denied_event, tool_request_event, truncate, user_message_event,
)
from .gate import ApprovalGate
from .models import (
    DEFAULT_MAX_TURNS, DENIED_RESULT_TEXT, ContentPart, ModelError, Phase,
    TextPart, ToolRequest, ToolUsePart,
)
from .state import ConversationState

if TYPE_CHECKING:
    from ..ollama import OllamaClient

logger = logging.getLogger("attestchat.agent")

SUPERSEDED_TEXT = "Tool request superseded by a newer request before it was approved."
DROPPED_TEXT = "Tool request dropped: a new message was sent before it was approved."


class AgentLoop:
    """Drives the conversation one model round at a time.

    Request handlers (``submit``, ``approve``, ``deny``, ``reset``) return
    immediately; rounds, tool execution and history updates all happen on a
    single worker task fed by a job queue. Every job is tagged with the
    conversation generation it was created in, and ``reset`` bumps the
    generation so late model replies and tool outcomes are discarded.
    """

    def __init__(
        self,
        model: OllamaClient,
        executor: ToolExecutor,
        catalog: ToolCatalog,
        bus: EventBus,
        system_prompt: str,
        max_turns: int = DEFAULT_MAX_TURNS,
    ) -> None:
        self.model = model
        self.executor = executor
        self.catalog = catalog
        self.bus = bus
        self.system_prompt = system_prompt
        self.max_turns = max(1, max_turns)

        self.state = ConversationState()
        self.gate = ApprovalGate()
        self.phase = Phase.IDLE

        self._generation = 0
        self._jobs: asyncio.Queue[tuple[int, str, Any]] = asyncio.Queue()
        self._outstanding: deque[ToolRequest] = deque()
        self._current: ToolRequest | None = None
        self._worker: asyncio.Task | None = None

    # ── Lifecycle ──

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="attestchat-agent-loop")
            logger.info(f"Agent loop started ({len(self.catalog)} tools, max {self.max_turns} turns)")

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("Agent loop stopped")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._jobs.join()

    # ── Inbound actions ──

    def submit(self, text: str) -> None:
        text = text.strip()
        if not text:
            raise ValueError("Message must not be empty")
        logger.info(f"[CHAT] User message: {truncate(text)}")
        self.bus.publish(user_message_event(text))
        self._enqueue("message", text)

    def approve(self) -> ToolRequest:
        """Approve the pending request. Raises ApprovalNotFound if nothing is pending."""
        request = self.gate.approve()
        self._enqueue("resolve", (request, True))
        return request

    def deny(self) -> ToolRequest:
        """Deny the pending request. Raises ApprovalNotFound if nothing is pending."""
        request = self.gate.deny()
        self.bus.publish(tool_denied_event(request))
        self._enqueue("resolve", (request, False))
        return request

    def reset(self) -> None:
        self._generation += 1
        self.state.reset()
        self.gate.clear()
        self._outstanding.clear()
        self._current = None
        self.phase = Phase.IDLE
        logger.info(f"[CHAT] Conversation reset (generation {self._generation})")
        self.bus.publish(reset_event())

    # ── Introspection ──

    def get_stats(self) -> dict[str, Any]:
        pending = self.gate.pending
        return {
            "phase": self.phase.value,
            "generation": self._generation,
            "turns": self.state.turns,
            "max_turns": self.max_turns,
            "message_count": len(self.state),
            "pending_tool": (
                {"tool_id": pending.tool_id, "tool_name": pending.name} if pending else None
            ),
            "queued_tools": len(self._outstanding),
            "observers": self.bus.subscriber_count,
        }

    def history_dicts(self) -> list[dict[str, Any]]:
        return [msg.to_dict() for msg in self.state.history()]

    # ── Worker ──

    def _enqueue(self, kind: str, payload: Any) -> None:
        self._jobs.put_nowait((self._generation, kind, payload))

    async def _run(self) -> None:
        while True:
            generation, kind, payload = await self._jobs.get()
            try:
                if generation != self._generation:
                    logger.info(f"Dropping stale '{kind}' job from generation {generation}")
                    continue
                if kind == "message":
                    await self._handle_message(payload, generation)
                elif kind == "resolve":
                    request, approved = payload
                    await self._handle_resolution(request, approved, generation)
                else:
                    logger.error(f"Unknown job kind: {kind}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Fatal error in agent loop job")
                if generation == self._generation:
                    self.bus.publish(error_event(f"Internal agent error: {e}"))
                    self._finish("error")
            finally:
                self._jobs.task_done()

    async def _handle_message(self, text: str, generation: int) -> None:
        self._drop_outstanding()
        self.state.append_user(text)
        self.state.begin_exchange()
        await self._run_round(generation)

    async def _handle_resolution(self, request: ToolRequest, approved: bool, generation: int) -> None:
        if self._current is None or self._current.tool_id != request.tool_id:
            logger.info(f"Ignoring decision for tool request {request.tool_id}: no longer outstanding")
            return
        self._current = None

        if approved:
            self.phase = Phase.EXECUTING
            outcome = await self.executor.execute(request, lambda: generation == self._generation)
            if generation != self._generation:
                logger.info(f"Discarding result of {request.name} ({request.tool_id}): conversation was reset")
                return
            self.state.append_tool_result(request.tool_id, outcome.text, outcome.is_error, name=request.name)
        else:
            logger.info(f"[TOOL] Denied: {request.name} ({request.tool_id})")
            self.state.append_tool_result(request.tool_id, DENIED_RESULT_TEXT, True, name=request.name)

        if self._outstanding:
            self._offer_next()
        else:
            await self._run_round(generation)

    # ── Rounds ──

    async def _run_round(self, generation: int) -> None:
        if self.state.turns >= self.max_turns:
            await self._summarize(generation)
            return

        turn = self.state.count_turn()
        self.phase = Phase.AWAITING_MODEL
        logger.info(f"[AGENT] Round {turn}/{self.max_turns}")

        try:
            reply = await self.model.complete(
                self.system_prompt, self.state.history(), self.catalog.as_model_tools()
            )
        except ModelError as e:
            if generation == self._generation:
                logger.error(f"Model round failed: {e}")
                self.bus.publish(error_event(str(e)))
                self._finish("model error")
            return

        if generation != self._generation:
            logger.info("Discarding model reply: conversation was reset")
            return

        parts = self._dedupe_tool_ids(reply.parts)
        if not parts:
            self.bus.publish(error_event("Empty response from model."))
            self._finish("empty reply")
            return

        for part in parts:
            if isinstance(part, TextPart):
                logger.info(f"[AGENT] Assistant: {truncate(part.text)}")
                self.bus.publish(assistant_message_event(part.text))
        self.state.append_assistant(parts)

        requests = [ToolRequest.from_part(p) for p in parts if isinstance(p, ToolUsePart)]
        if not requests:
            self._finish("complete")
            return

        self._outstanding.extend(requests)
        self._offer_next()

    async def _summarize(self, generation: int) -> None:
        logger.info(f"=== Maximum turns ({self.max_turns}) reached, requesting summary ===")
        self.phase = Phase.AWAITING_MODEL
        self.state.append_user(SUMMARY_PROMPT)

        try:
            reply = await self.model.complete(self.system_prompt, self.state.history(), None)
        except ModelError as e:
            if generation == self._generation:
                logger.error(f"Failed to get final summary: {e}")
                self.bus.publish(error_event(str(e)))
                self._finish("model error")
            return

        if generation != self._generation:
            return

        if reply.tool_uses:
            logger.warning(
                f"Ignoring {len(reply.tool_uses)} tool request(s) in the summary round"
            )
        texts = [p for p in reply.parts if isinstance(p, TextPart)]
        for part in texts:
            self.bus.publish(assistant_message_event(part.text))
        if texts:
            self.state.append_assistant(texts)
        self._finish("turn limit reached")

    # ── Approval bookkeeping ──

    def _offer_next(self) -> None:
        request = self._outstanding.popleft()
        displaced = self.gate.offer(request)
        if displaced is not None and displaced.tool_id in self.state.unresolved_tool_ids():
            self.bus.publish(tool_denied_event(displaced, SUPERSEDED_TEXT))
            self.state.append_tool_result(displaced.tool_id, DENIED_RESULT_TEXT, True, name=displaced.name)

        self._current = request
        self.phase = Phase.AWAITING_APPROVAL
        logger.info(f"[AGENT] Tool request: {request.name} ({request.tool_id}) awaiting approval")
        self.bus.publish(tool_request_event(request))

    def _drop_outstanding(self) -> None:
        """Deny every unresolved request of the last assistant turn (a new message arrived)."""
        unresolved = self.state.unresolved_tool_ids()
        if not unresolved:
            return

        known = {r.tool_id: r for r in self._outstanding}
        if self._current is not None:
            known[self._current.tool_id] = self._current
        self.gate.clear()
        self._outstanding.clear()
        self._current = None

        for tool_id in unresolved:
            request = known.get(tool_id) or ToolRequest(tool_id=tool_id, name="")
            logger.warning(f"Dropping unresolved tool request {tool_id} ('{request.name}')")
            self.bus.publish(tool_denied_event(request, DROPPED_TEXT))
            self.state.append_tool_result(tool_id, DENIED_RESULT_TEXT, True, name=request.name)

    @staticmethod
    def _dedupe_tool_ids(parts: list[ContentPart]) -> list[ContentPart]:
        seen: set[str] = set()
        out: list[ContentPart] = []
        for part in parts:
            if isinstance(part, ToolUsePart):
                tool_id = part.tool_id
                n = 1
                while tool_id in seen:
                    n += 1
                    tool_id = f"{part.tool_id}_{n}"
                seen.add(tool_id)
                if tool_id != part.tool_id:
                    part = ToolUsePart(tool_id=tool_id, name=part.name, arguments=part.arguments)
            out.append(part)
        return out

    def _finish(self, reason: str) -> None:
        self.phase = Phase.IDLE
        logger.info(f"[AGENT] Round finished: {reason}")
        self.bus.publish(done_event(reason))
