"""Generation provider interface and shared types.

Defines the contract between the tool-call loop and any text-generation
backend. Transport, model naming, and SDK quirks live inside the
implementations, not in the interface.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger(__name__)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class ToolResult:
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False

    def to_dict(self) -> dict:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": self.content,
            "is_error": self.is_error,
        }


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    text: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"  # "end_turn" | "tool_use" | "max_tokens"
    usage: Usage = field(default_factory=Usage)
    raw: Any = None

    def to_internal_message(self) -> dict:
        """Convert to the internal model-turn format used in working history."""
        msg: dict[str, Any] = {"role": "assistant"}
        if self.text:
            msg["text"] = self.text
        if self.tool_calls:
            msg["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ]
        return msg


class LLMProvider(Protocol):
    """Protocol for generation provider implementations."""

    def format_tools(self, tools: list[dict]) -> list[dict]:
        """Convert generic tool schemas to provider-specific format."""
        ...

    def format_system(self, text: str) -> Any:
        """Convert the system instruction to provider format."""
        ...

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal message format to provider's API format."""
        ...

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Send to the provider, return normalized response."""
        ...


def safe_parse_args(raw: Any) -> dict:
    """Parse tool arguments that may arrive as a dict or a JSON string."""
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


def create_provider(model_config: dict, api_key: str = "") -> LLMProvider:
    """Factory: create provider from model config section."""
    provider_type = model_config.get("provider", "")

    if provider_type == "anthropic-compat":
        from .anthropic_compat import AnthropicCompatProvider
        return AnthropicCompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 4096),
            base_url=model_config.get("base_url", ""),
            temperature=model_config.get("temperature"),
        )
    if provider_type == "openai-compat":
        from .openai_compat import OpenAICompatProvider
        return OpenAICompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 4096),
            base_url=model_config.get("base_url", "https://api.openai.com/v1"),
            temperature=model_config.get("temperature"),
        )
    if provider_type == "gemini-compat":
        from .gemini_compat import GeminiCompatProvider
        return GeminiCompatProvider(
            api_key=api_key,
            model=model_config["model"],
            max_tokens=model_config.get("max_tokens", 8192),
            base_url=model_config.get(
                "base_url", "https://generativelanguage.googleapis.com/v1beta",
            ),
            temperature=model_config.get("temperature"),
            timeout=model_config.get("timeout", 120.0),
        )
    raise ValueError(f"Unknown provider type: {provider_type!r}")
