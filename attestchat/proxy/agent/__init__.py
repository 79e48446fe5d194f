"""Agent package.

Public API:
    from attestchat.proxy.agent import AgentLoop, EventBus, ToolCatalog, ToolExecutor
    from attestchat.proxy.agent import AgentEvent, ApprovalNotFound, ConversationState

Internal layout:
    models.py     : content parts, Message, ToolRequest, ToolOutcome, AgentEvent, Phase
    catalog.py    : ToolCatalog (tool-server descriptors → Ollama tool specs)
    state.py      : ConversationState (history, turn counter, staged tool results)
    gate.py       : ApprovalGate (single pending tool request)
    events.py     : EventBus / Subscription (bounded fan-out with keepalive)
    executors.py  : ToolExecutor (tool-server call + outcome classification)
    formatters.py : event constructors and text helpers
    loop.py       : AgentLoop (round state machine on a single worker task)
"""

from .catalog import ToolCatalog
from .events import EventBus, Subscription
from .executors import ToolExecutor
from .gate import ApprovalGate, ApprovalNotFound
from .loop import AgentLoop
from .models import AgentEvent, Message, ModelError, Phase, ToolOutcome, ToolRequest
from .state import ConversationError, ConversationState

__all__ = [
    "AgentLoop", "AgentEvent", "ApprovalGate", "ApprovalNotFound", "ConversationError",
    "ConversationState", "EventBus", "Message", "ModelError", "Phase", "Subscription",
    "ToolCatalog", "ToolExecutor", "ToolOutcome", "ToolRequest",
]
