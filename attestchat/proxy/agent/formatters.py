"""Human-readable renderings for orchestration events and log lines."""

from __future__ import annotations

from typing import Any

from .models import (
    ASSISTANT_MESSAGE, DENIED_RESULT_TEXT, DONE, ERROR, KEEPALIVE, RESET, TOOL_DENIED,
    TOOL_EXECUTING, TOOL_REQUEST, TOOL_RESULT, USER_MESSAGE,
    AgentEvent, OutcomeKind, ToolOutcome, ToolRequest,
)

MAX_PREVIEW = 100


def truncate(text: str, max_len: int = MAX_PREVIEW) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def extract_text(segments: list[Any]) -> str:
    """Concatenate the text segments of a tool result, ignoring other content types."""
    out: list[str] = []
    for seg in segments:
        if isinstance(seg, str):
            out.append(seg)
        elif isinstance(seg, dict) and seg.get("type", "text") == "text":
            text = seg.get("text")
            if isinstance(text, str):
                out.append(text)
    return "".join(out)


def user_message_event(text: str) -> AgentEvent:
    return AgentEvent(type=USER_MESSAGE, data={"role": "user", "text": text})


def assistant_message_event(text: str) -> AgentEvent:
    return AgentEvent(type=ASSISTANT_MESSAGE, data={"role": "assistant", "text": text})


def tool_request_event(request: ToolRequest) -> AgentEvent:
    return AgentEvent(
        type=TOOL_REQUEST,
        data={
            "role": "tool-request",
            "text": f"The assistant wants to run '{request.name}'.",
            "tool_id": request.tool_id,
            "tool_name": request.name,
            "tool_args": request.arguments_json(),
        },
    )


def tool_executing_event(request: ToolRequest) -> AgentEvent:
    return AgentEvent(
        type=TOOL_EXECUTING,
        data={
            "text": f"Running '{request.name}'...",
            "tool_id": request.tool_id,
            "tool_name": request.name,
        },
    )


def tool_result_event(outcome: ToolOutcome) -> AgentEvent:
    if outcome.kind is OutcomeKind.TRANSPORT_ERROR:
        return error_event(outcome.text, tool_id=outcome.tool_id, tool_name=outcome.name)
    return AgentEvent(
        type=TOOL_RESULT,
        data={
            "text": outcome.text,
            "tool_id": outcome.tool_id,
            "tool_name": outcome.name,
            "is_error": outcome.is_error,
        },
    )


def tool_denied_event(request: ToolRequest, reason: str = DENIED_RESULT_TEXT) -> AgentEvent:
    return AgentEvent(
        type=TOOL_DENIED,
        data={
            "role": "system",
            "text": reason,
            "tool_id": request.tool_id,
            "tool_name": request.name,
        },
    )


def error_event(message: str, **extra: Any) -> AgentEvent:
    return AgentEvent(type=ERROR, data={"role": "error", "text": message, **extra})


def reset_event() -> AgentEvent:
    return AgentEvent(type=RESET, data={"text": "Conversation reset."})


def keepalive_event() -> AgentEvent:
    return AgentEvent(type=KEEPALIVE, data={"text": "keepalive"})


def done_event(reason: str) -> AgentEvent:
    return AgentEvent(type=DONE, data={"text": reason})
