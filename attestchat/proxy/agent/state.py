"""Conversation history with tool-use / tool-result pairing and the per-message turn counter."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import ContentPart, Message, TextPart, ToolResultPart, ToolUsePart

logger = logging.getLogger("attestchat.agent")


class ConversationError(RuntimeError):
    """Raised when an append would break the model's turn-taking contract."""


class ConversationState:
    """Ordered message history, turn counter, and staged tool results.

    Tool results for an assistant turn are staged until every tool-use part of
    that turn has one, then committed together as a single user-role message
    in tool-use order.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._staged: dict[str, ToolResultPart] = {}
        self._awaiting: list[str] = []
        self.turns: int = 0

    # ── Appends ──

    def append_user(self, text: str) -> Message:
        self._ensure_no_outstanding("user message")
        return self._commit(Message(role="user", parts=(TextPart(text),)))

    def append_assistant(self, parts: Iterable[ContentPart]) -> Message:
        self._ensure_no_outstanding("assistant turn")
        parts = tuple(parts)
        for p in parts:
            if isinstance(p, ToolResultPart):
                raise ConversationError("Assistant turns cannot carry tool results")
        msg = self._commit(Message(role="assistant", parts=parts))
        self._awaiting = [p.tool_id for p in parts if isinstance(p, ToolUsePart)]
        return msg

    def append_tool_result(self, tool_id: str, text: str, is_error: bool, name: str = "") -> Message | None:
        """Stage one result. Returns the committed user message once the batch is complete."""
        if tool_id not in self._awaiting or tool_id in self._staged:
            raise ConversationError(f"No outstanding tool use with id '{tool_id}'")

        self._staged[tool_id] = ToolResultPart(tool_id=tool_id, text=text, is_error=is_error, name=name)
        if len(self._staged) < len(self._awaiting):
            return None

        parts = tuple(self._staged[tid] for tid in self._awaiting)
        self._staged.clear()
        self._awaiting = []
        return self._commit(Message(role="user", parts=parts))

    # ── Views ──

    def history(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def unresolved_tool_ids(self) -> list[str]:
        return [tid for tid in self._awaiting if tid not in self._staged]

    def __len__(self) -> int:
        return len(self._messages)

    # ── Turn budget ──

    def begin_exchange(self) -> None:
        self.turns = 0

    def count_turn(self) -> int:
        self.turns += 1
        return self.turns

    def reset(self) -> None:
        self._messages.clear()
        self._staged.clear()
        self._awaiting = []
        self.turns = 0

    # ── Internals ──

    def _ensure_no_outstanding(self, what: str) -> None:
        pending = self.unresolved_tool_ids()
        if pending:
            raise ConversationError(
                f"Cannot append {what} while tool results are outstanding: {', '.join(pending)}"
            )

    def _commit(self, message: Message) -> Message:
        self._messages.append(message)
        return message
