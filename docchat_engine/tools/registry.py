"""Tool registry with Pydantic v2 argument schemas."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


@dataclass
class ToolDef:
    """Registration record for a single tool the backend may call."""

    name: str
    description: str
    input_model: type[BaseModel]


class ToolRegistry:
    """Central tool store: schemas for the backend, validation for its calls."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    # -- registration -------------------------------------------------------

    def register(self, tool_def: ToolDef) -> None:
        self._tools[tool_def.name] = tool_def
        logger.info("Registered tool %s", tool_def.name)

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    # -- OpenAI function-calling schemas ------------------------------------

    def openai_schemas(self, allowed_tools: list[str] | None = None) -> list[dict[str, Any]]:
        """Return OpenAI-compatible function schemas, optionally filtered by name."""
        schemas: list[dict[str, Any]] = []
        for tool in self._tools.values():
            if allowed_tools is not None and tool.name not in allowed_tools:
                continue
            schemas.append({
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_model.model_json_schema(),
                },
            })
        return schemas

    # -- validation ---------------------------------------------------------

    def validate(self, name: str, arguments: dict[str, Any]) -> BaseModel:
        """Validate call arguments against the tool's input model.

        Raises ``ValueError`` for unknown tools and pydantic's
        ``ValidationError`` for bad arguments.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ValueError(f"Tool '{name}' not found")
        return tool.input_model.model_validate(arguments)
