"""Tool catalog: converts tool-server descriptors into Ollama function-tool specs."""

from __future__ import annotations

import logging
from typing import Any

from .models import ToolDescriptor

logger = logging.getLogger("attestchat.agent")


def normalize_schema(schema: Any) -> tuple[dict[str, Any], bool]:
    """Return ``({"type": "object", "properties", "required"}, repaired)``.

    Missing or malformed fields fall back to an empty object / empty required
    list instead of failing; ``repaired`` reports whether anything was dropped.
    """
    repaired = False
    if not isinstance(schema, dict):
        repaired = schema is not None
        schema = {}

    properties = schema.get("properties")
    if not isinstance(properties, dict):
        repaired = repaired or properties is not None
        properties = {}

    raw_required = schema.get("required")
    required: list[str] = []
    if isinstance(raw_required, (list, tuple)):
        for item in raw_required:
            if isinstance(item, str):
                required.append(item)
            else:
                repaired = True
    elif raw_required is not None:
        repaired = True

    return {"type": "object", "properties": properties, "required": required}, repaired


class ToolCatalog:
    """Read-only set of tools advertised by the tool server, loaded once at startup."""

    def __init__(self) -> None:
        self._tools: dict[str, dict[str, Any]] = {}
        self._descriptors: dict[str, ToolDescriptor] = {}

    @staticmethod
    def from_raw(entries: list[dict[str, Any]]) -> list[ToolDescriptor]:
        """Convert raw ``tools/list`` entries (name, description, inputSchema)."""
        descriptors = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping non-object tool entry: {entry!r}")
                continue
            descriptors.append(ToolDescriptor(
                name=entry.get("name") or "",
                description=entry.get("description") or "",
                input_schema=entry.get("inputSchema"),
            ))
        return descriptors

    def load(self, descriptors: list[ToolDescriptor]) -> list[str]:
        """Replace the catalog contents. Returns the names whose schema was repaired."""
        self._tools.clear()
        self._descriptors.clear()
        repaired_names: list[str] = []

        for desc in descriptors:
            name = desc.name.strip() if isinstance(desc.name, str) else ""
            if not name:
                logger.warning("Skipping tool without a name")
                continue

            parameters, repaired = normalize_schema(desc.input_schema)
            if repaired:
                logger.warning(f"Tool '{name}' has a malformed input schema; using defaults")
                repaired_names.append(name)
            if name in self._tools:
                logger.warning(f"Duplicate tool '{name}' advertised; keeping the last one")

            self._descriptors[name] = desc
            self._tools[name] = {
                "type": "function",
                "function": {
                    "name": name,
                    "description": desc.description or "",
                    "parameters": parameters,
                },
            }

        logger.info(f"Tool catalog loaded with {len(self._tools)} tools: {', '.join(self._tools)}")
        return repaired_names

    def as_model_tools(self) -> list[dict[str, Any]]:
        return list(self._tools.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "description": spec["function"]["description"],
                "parameters": spec["function"]["parameters"],
            }
            for name, spec in self._tools.items()
        ]

    def __len__(self) -> int:
        return len(self._tools)
