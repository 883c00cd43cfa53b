"""Gemini provider over the generateContent REST API.

Uses httpx directly — no SDK. Error bodies are surfaced as
GeminiAPIError carrying both the HTTP code and the API status string so
the retry policy can classify them.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import httpx

from . import LLMResponse, ToolCall, Usage, safe_parse_args

log = logging.getLogger(__name__)


class GeminiAPIError(Exception):
    def __init__(self, message: str, status_code: int = 0, status: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.status = status or status_code


class GeminiCompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 8192,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float | None = None,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout

    def format_tools(self, tools: list[dict]) -> list[dict]:
        if not tools:
            return []
        return [{
            "functionDeclarations": [
                {
                    "name": t["name"],
                    "description": t["description"],
                    "parameters": t["input_schema"],
                }
                for t in tools
            ],
        }]

    def format_system(self, text: str) -> dict | None:
        if not text:
            return None
        return {"parts": [{"text": text}]}

    @staticmethod
    def _user_parts(content: Any) -> list[dict]:
        if isinstance(content, str):
            return [{"text": content}] if content else []
        parts = []
        for block in content or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                parts.append({"text": block["text"]})
            elif block.get("type") == "image" and "media_type" in block:
                parts.append({
                    "inlineData": {"mimeType": block["media_type"], "data": block["data"]},
                })
        return parts

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal format to Gemini contents (user/model/function)."""
        result = []
        for msg in messages:
            role = msg.get("role", "")

            if role == "user":
                parts = self._user_parts(msg.get("content", msg.get("text", "")))
                if parts:
                    result.append({"role": "user", "parts": parts})

            elif role == "assistant":
                parts = []
                if msg.get("text"):
                    parts.append({"text": msg["text"]})
                for tc in msg.get("tool_calls", []):
                    parts.append({"functionCall": {"name": tc["name"], "args": tc["arguments"]}})
                if parts:
                    result.append({"role": "model", "parts": parts})

            elif role == "tool_results":
                parts = []
                for r in msg.get("results", []):
                    key = "error" if r.get("is_error") else "content"
                    parts.append({
                        "functionResponse": {
                            "name": r.get("name", ""),
                            "response": {key: r["content"]},
                        },
                    })
                if parts:
                    result.append({"role": "function", "parts": parts})

        return result

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Call models/{model}:generateContent."""
        generation_config: dict[str, Any] = {
            "maxOutputTokens": kwargs.get("max_tokens") or self.max_tokens,
        }
        temperature = kwargs.get("temperature", self.temperature)
        if temperature is not None:
            generation_config["temperature"] = temperature
        if kwargs.get("json_output"):
            generation_config["responseMimeType"] = "application/json"

        body: dict[str, Any] = {
            "contents": messages,
            "generationConfig": generation_config,
        }
        if system:
            body["systemInstruction"] = system
        if tools:
            body["tools"] = tools

        url = f"{self.base_url}/models/{self.model}:generateContent"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                url, json=body, headers={"x-goog-api-key": self.api_key},
            )

        try:
            data = resp.json()
        except json.JSONDecodeError:
            data = {}
        if resp.status_code >= 400 or "error" in data:
            err = data.get("error", {}) if isinstance(data, dict) else {}
            raise GeminiAPIError(
                err.get("message") or f"HTTP {resp.status_code}",
                status_code=err.get("code", resp.status_code),
                status=err.get("status", ""),
            )

        candidates = data.get("candidates") or []
        parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
        finish = candidates[0].get("finishReason", "") if candidates else ""

        text_parts = []
        tool_calls = []
        for part in parts:
            if "text" in part and not part.get("thought"):
                text_parts.append(part["text"])
            elif "functionCall" in part:
                fc = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=fc.get("id") or f"call-{uuid.uuid4().hex[:12]}",
                    name=fc.get("name", ""),
                    arguments=safe_parse_args(fc.get("args", {})),
                ))

        meta = data.get("usageMetadata", {})
        usage = Usage(
            input_tokens=meta.get("promptTokenCount", 0),
            output_tokens=meta.get("candidatesTokenCount", 0),
        )

        stop = "end_turn"
        if tool_calls:
            stop = "tool_use"
        elif finish == "MAX_TOKENS":
            stop = "max_tokens"

        text = "".join(text_parts)
        return LLMResponse(
            text=text or None,
            tool_calls=tool_calls,
            stop_reason=stop,
            usage=usage,
            raw=data,
        )
