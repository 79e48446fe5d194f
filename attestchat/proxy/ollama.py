"""Async client for Ollama using the official Python SDK."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import ollama

from .agent.models import Message, ModelError, ModelReply, TextPart, ToolResultPart, ToolUsePart
from .config import Config

logger = logging.getLogger("attestchat.ollama")


def describe_model_error(err: Exception, model: str) -> str:
    """Turn a raw SDK/network error into an actionable message."""
    err_str = str(getattr(err, "error", None) or err)
    err_lower = err_str.lower()
    if "invalid character '<'" in err_str or "failed to parse json" in err_lower:
        return (
            "Ollama returned an HTML error page; the server crashed or ran out of memory.\n"
            "Fix: restart Ollama or reduce `ollama_num_ctx` in config."
        )
    if "connection refused" in err_lower or "failed to connect" in err_lower:
        return "Cannot connect to Ollama (connection refused).\nFix: start Ollama with `ollama serve`."
    if "not found" in err_lower and "model" in err_lower:
        return f"Model not found: {model}\nFix: run `ollama pull {model}`."
    if "context length" in err_lower or "out of memory" in err_lower:
        return "Model ran out of context or memory.\nFix: lower `ollama_num_ctx` in config."
    if "timeout" in err_lower or "timed out" in err_lower:
        return "Ollama request timed out.\nFix: increase `ollama_timeout` in config or use a faster model."
    return f"Model request failed: {err_str}"


def normalize_arguments(raw: Any) -> dict[str, Any]:
    """Tool-call arguments arrive as a mapping or, from some models, a JSON string."""
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unparseable tool arguments: {raw[:200]!r}")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if raw is not None and hasattr(raw, "items"):
        return dict(raw.items())
    return {}


def history_to_messages(system_prompt: str, history: tuple[Message, ...] | list[Message]) -> list[dict[str, Any]]:
    """Flatten the part-based history into Ollama chat messages."""
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in history:
        if msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text}
            tool_uses = msg.tool_uses
            if tool_uses:
                entry["tool_calls"] = [
                    {"function": {"name": p.name, "arguments": p.arguments}} for p in tool_uses
                ]
            messages.append(entry)
            continue

        text_parts = [p.text for p in msg.parts if isinstance(p, TextPart)]
        if text_parts:
            messages.append({"role": "user", "content": "".join(text_parts)})
        for part in msg.parts:
            if isinstance(part, ToolResultPart):
                tool_msg: dict[str, Any] = {"role": "tool", "content": part.text}
                if part.name:
                    tool_msg["tool_name"] = part.name
                messages.append(tool_msg)
    return messages


def parse_reply(response: Any) -> ModelReply:
    """Split a chat response into ordered narration and tool-use parts."""
    if hasattr(response, "model_dump"):
        data = response.model_dump()
    elif isinstance(response, dict):
        data = response
    else:
        data = dict(response)

    message = data.get("message") or {}
    reply = ModelReply()

    content = message.get("content") or ""
    if content.strip():
        reply.parts.append(TextPart(content.strip()))

    for call in message.get("tool_calls") or []:
        fn = call.get("function") or {}
        tool_id = call.get("id") or f"call_{uuid.uuid4().hex[:12]}"
        reply.parts.append(ToolUsePart(
            tool_id=tool_id,
            name=fn.get("name") or "",
            arguments=normalize_arguments(fn.get("arguments")),
        ))
    return reply


class OllamaClient:
    """Wrapper around the official ollama.AsyncClient."""

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        host = cfg.ollama_url.rstrip("/")
        self.model = cfg.ollama_model

        logger.info(f"Initializing Ollama SDK client for host: {host}, model: {self.model}, timeout: {cfg.ollama_timeout}s")
        self._client = ollama.AsyncClient(host=host, timeout=cfg.ollama_timeout)

    async def close(self) -> None:
        """Close client and unload model."""
        await self.unload_model()

    async def unload_model(self) -> None:
        """Unload model from memory by setting keep_alive to 0."""
        try:
            logger.info(f"Unloading model {self.model}...")
            await self._client.generate(model=self.model, prompt="", keep_alive=0)
            logger.info("Model unloaded successfully.")
        except Exception as e:
            logger.error(f"Failed to unload model: {e}")

    async def health_check(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            await self._client.list()
            return True
        except Exception:
            return False

    async def complete(
        self,
        system_prompt: str,
        history: tuple[Message, ...] | list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelReply:
        """One non-streaming round: full history in, narration and tool-use parts out.

        ``tools=None`` sends no tool list, so the model cannot request a tool.
        """
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": history_to_messages(system_prompt, history),
            "stream": False,
            "keep_alive": self.cfg.ollama_keep_alive,
            "options": {
                "num_ctx": self.cfg.ollama_num_ctx,
                "temperature": self.cfg.ollama_temperature,
                "num_predict": self.cfg.ollama_num_predict,
            },
        }
        if tools:
            kwargs["tools"] = tools

        try:
            response = await self._client.chat(**kwargs)
        except Exception as e:
            logger.error(f"Ollama chat error: {e}")
            raise ModelError(describe_model_error(e, self.model)) from e

        reply = parse_reply(response)
        logger.debug(f"Model reply: {len(reply.parts)} part(s), {len(reply.tool_uses)} tool call(s)")
        return reply
