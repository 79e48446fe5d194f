"""Data models for the conversation, tool requests and streamed events."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger("attestchat.agent")

DEFAULT_MAX_TURNS = 5
DENIED_RESULT_TEXT = "Tool execution denied by user."

# Event types published on the EventBus
USER_MESSAGE = "user-message"
ASSISTANT_MESSAGE = "assistant-message"
TOOL_REQUEST = "tool-request"
TOOL_EXECUTING = "tool-executing"
TOOL_RESULT = "tool-result"
TOOL_DENIED = "tool-denied"
ERROR = "error"
RESET = "reset"
KEEPALIVE = "keepalive"
DONE = "done"

EVENT_TYPES = (
    USER_MESSAGE, ASSISTANT_MESSAGE, TOOL_REQUEST, TOOL_EXECUTING,
    TOOL_RESULT, TOOL_DENIED, ERROR, RESET, KEEPALIVE, DONE,
)


class ModelError(RuntimeError):
    """The model request failed (network, server or API error)."""


class Phase(str, enum.Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    TOOL_ERROR = "tool_error"            # tool ran and reported its own failure
    TRANSPORT_ERROR = "transport_error"  # invocation itself failed


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolUsePart:
    tool_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultPart:
    tool_id: str
    text: str
    is_error: bool = False
    name: str = ""


ContentPart = Union[TextPart, ToolUsePart, ToolResultPart]


@dataclass(frozen=True)
class Message:
    role: str  # "user" or "assistant"
    parts: tuple[ContentPart, ...]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_uses(self) -> list[ToolUsePart]:
        return [p for p in self.parts if isinstance(p, ToolUsePart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    def to_dict(self) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        for p in self.parts:
            if isinstance(p, TextPart):
                parts.append({"type": "text", "text": p.text})
            elif isinstance(p, ToolUsePart):
                parts.append({"type": "tool_use", "id": p.tool_id, "name": p.name, "input": p.arguments})
            else:
                parts.append({
                    "type": "tool_result", "tool_use_id": p.tool_id, "name": p.name,
                    "content": p.text, "is_error": p.is_error,
                })
        return {"role": self.role, "content": parts}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: Any = None


@dataclass(frozen=True)
class ToolRequest:
    tool_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_part(cls, part: ToolUsePart) -> ToolRequest:
        return cls(tool_id=part.tool_id, name=part.name, arguments=dict(part.arguments))

    def arguments_json(self) -> str:
        return json.dumps(self.arguments, indent=2, default=str, sort_keys=True)


@dataclass(frozen=True)
class ToolOutcome:
    tool_id: str
    name: str
    text: str
    kind: OutcomeKind = OutcomeKind.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.kind is not OutcomeKind.SUCCESS


@dataclass
class ModelReply:
    parts: list[ContentPart] = field(default_factory=list)

    @property
    def tool_uses(self) -> list[ToolUsePart]:
        return [p for p in self.parts if isinstance(p, ToolUsePart)]


@dataclass
class AgentEvent:
    type: str  # one of EVENT_TYPES
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> dict[str, str]:
        return {
            "event": self.type,
            "data": json.dumps({"type": self.type, **self.data}, default=str),
        }
