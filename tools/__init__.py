"""Tool registry — registration, dispatch, error isolation, output truncation."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from typing import Any

from providers import ToolCall, ToolResult

log = logging.getLogger(__name__)


class ToolRegistry:
    """Registers tool executors and dispatches calls from the tool-call loop."""

    def __init__(self, truncation_limit: int = 30000):
        self._tools: dict[str, dict] = {}
        self.truncation_limit = truncation_limit

    def register(self, name: str, description: str, input_schema: dict,
                 func: Callable[..., Any]) -> None:
        """Register a tool function."""
        self._tools[name] = {
            "name": name,
            "description": description,
            "input_schema": input_schema,
            "function": func,
        }

    def register_many(self, tools: list[dict]) -> None:
        """Register multiple tools from a TOOLS list."""
        for t in tools:
            self.register(
                name=t["name"],
                description=t["description"],
                input_schema=t["input_schema"],
                func=t["function"],
            )

    def get_schemas(self) -> list[dict]:
        """Return tool schemas for the provider (without function references)."""
        return [
            {
                "name": t["name"],
                "description": t["description"],
                "input_schema": t["input_schema"],
            }
            for t in self._tools.values()
        ]

    async def execute(self, call: ToolCall) -> ToolResult:
        """Execute one tool call. Failures become error results, never exceptions."""
        name = call.name
        if name not in self._tools:
            return ToolResult(call.id, name, f"Error: Unknown tool '{name}'", is_error=True)

        func = self._tools[name]["function"]
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(**call.arguments)
            else:
                result = await asyncio.to_thread(func, **call.arguments)
        except TypeError as e:
            log.warning("Tool %s argument error: %s", name, e)
            return ToolResult(call.id, name,
                              f"Error: Invalid arguments for '{name}': {e}", is_error=True)
        except Exception as e:
            log.error("Tool %s failed: %s", name, e, exc_info=True)
            return ToolResult(call.id, name,
                              f"Error: {type(e).__name__}: {e}", is_error=True)

        if isinstance(result, str):
            result_str = result
        else:
            result_str = json.dumps(result, ensure_ascii=False, default=str)
        if len(result_str) > self.truncation_limit:
            result_str = result_str[:self.truncation_limit] + \
                f"\n[truncated at {self.truncation_limit} chars]"
        return ToolResult(call.id, name, result_str)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())
