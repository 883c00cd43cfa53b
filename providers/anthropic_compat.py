"""Anthropic-compatible provider.

Works with any model accessible through the Anthropic Messages API.
Conditional import — fails with clear message if anthropic SDK not installed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from . import LLMResponse, ToolCall, Usage, safe_parse_args

log = logging.getLogger(__name__)

JSON_PREFILL = "{"

try:
    import anthropic
except ImportError:
    anthropic = None  # type: ignore[assignment]


class AnthropicCompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: str = "",
        temperature: float | None = None,
    ):
        if anthropic is None:
            raise RuntimeError(
                "Anthropic provider requires: pip install anthropic"
            )
        if base_url:
            self.client = anthropic.Anthropic(api_key=api_key, base_url=base_url)
        else:
            self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def format_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "name": t["name"],
                "description": t["description"],
                "input_schema": t["input_schema"],
            }
            for t in tools
        ]

    def format_system(self, text: str) -> str:
        return text

    @staticmethod
    def _convert_content_blocks(content: Any) -> Any:
        """Convert neutral image blocks to Anthropic's nested source format."""
        if not isinstance(content, list):
            return content
        result = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "image" and "media_type" in block:
                result.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": block["media_type"],
                        "data": block["data"],
                    },
                })
            else:
                result.append(block)
        return result

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal format to Anthropic API format."""
        result = []
        for msg in messages:
            role = msg.get("role", "")

            if role == "user":
                content = msg.get("content", msg.get("text", ""))
                result.append({"role": "user", "content": self._convert_content_blocks(content)})

            elif role == "assistant":
                content_blocks: list[dict] = []
                if msg.get("text"):
                    content_blocks.append({"type": "text", "text": msg["text"]})
                for tc in msg.get("tool_calls", []):
                    content_blocks.append({
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": tc["name"],
                        "input": tc["arguments"],
                    })
                if content_blocks:
                    result.append({"role": "assistant", "content": content_blocks})

            elif role == "tool_results":
                tool_content = []
                for r in msg.get("results", []):
                    block: dict[str, Any] = {
                        "type": "tool_result",
                        "tool_use_id": r["tool_call_id"],
                        "content": r["content"],
                    }
                    if r.get("is_error"):
                        block["is_error"] = True
                    tool_content.append(block)
                if tool_content:
                    result.append({"role": "user", "content": tool_content})

        return result

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Call Anthropic Messages API."""
        # No JSON mode: prefill the reply with "{" and put it back on the text
        prefill = JSON_PREFILL if kwargs.get("json_output") and not tools else ""
        if prefill:
            messages = [*messages, {"role": "assistant", "content": prefill}]
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens") or self.max_tokens,
            "messages": messages,
        }
        if system:
            params["system"] = system
        if tools:
            params["tools"] = tools
        temperature = kwargs.get("temperature", self.temperature)
        if temperature is not None:
            params["temperature"] = temperature

        response = await asyncio.to_thread(self.client.messages.create, **params)

        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=safe_parse_args(block.input),
                ))

        usage = Usage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

        stop = "end_turn"
        if response.stop_reason == "tool_use":
            stop = "tool_use"
        elif response.stop_reason == "max_tokens":
            stop = "max_tokens"

        return LLMResponse(
            text=prefill + "\n".join(text_parts) if text_parts else None,
            tool_calls=tool_calls,
            stop_reason=stop,
            usage=usage,
            raw=response,
        )
