"""Tests for providers/ — LLMResponse, Anthropic, OpenAI and Gemini formatting.

Uses pytest.importorskip for SDK-dependent tests — skips if anthropic/openai
are not installed. Formatting tests use the provider classes directly;
complete() is exercised against mocked clients (no API calls).
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest

from providers import LLMResponse, ToolCall, Usage, create_provider, safe_parse_args
from providers import gemini_compat
from providers.gemini_compat import GeminiAPIError, GeminiCompatProvider
from retry import classify

IMAGE_MSG = {"role": "user", "content": [
    {"type": "image", "media_type": "image/png", "data": "iVBOR"},
    {"type": "text", "text": "Look at this"},
]}
TOOL_TURN = {"role": "assistant", "text": "On it",
             "tool_calls": [{"id": "tc-1", "name": "create_tag", "arguments": {"name": "Nan"}}]}
RESULTS = {"role": "tool_results", "results": [
    {"tool_call_id": "tc-1", "name": "create_tag", "content": "ok", "is_error": False},
]}
SCHEMA = [{"name": "create_tag", "description": "Create a tag",
           "input_schema": {"type": "object", "properties": {"name": {"type": "string"}}}}]

# ─── LLMResponse ─────────────────────────────────────────────────

class TestLLMResponse:
    def test_to_internal_text_only(self):
        resp = LLMResponse(text="Hello", usage=Usage(input_tokens=10, output_tokens=5))
        msg = resp.to_internal_message()
        assert msg == {"role": "assistant", "text": "Hello"}

    def test_to_internal_with_tool_calls(self):
        resp = LLMResponse(
            text=None,
            tool_calls=[ToolCall(id="tc-1", name="create_tag", arguments={"name": "Nan"})],
            stop_reason="tool_use",
        )
        msg = resp.to_internal_message()
        assert "text" not in msg
        assert msg["tool_calls"] == [{"id": "tc-1", "name": "create_tag",
                                      "arguments": {"name": "Nan"}}]

    def test_defaults(self):
        resp = LLMResponse(text="x")
        assert resp.tool_calls == []
        assert resp.stop_reason == "end_turn"
        assert resp.usage == Usage(0, 0)


class TestSafeParseArgs:
    def test_dict_passthrough(self):
        assert safe_parse_args({"a": 1}) == {"a": 1}

    def test_json_string(self):
        assert safe_parse_args('{"a": 1}') == {"a": 1}

    def test_garbage_wrapped(self):
        assert safe_parse_args("not json") == {"raw": "not json"}
        assert safe_parse_args("[1]") == {"raw": "[1]"}


# ─── Anthropic Provider ──────────────────────────────────────────

class TestAnthropicProvider:
    @pytest.fixture(autouse=True)
    def _skip_if_no_sdk(self):
        pytest.importorskip("anthropic")

    def _make_provider(self, **kwargs):
        from providers.anthropic_compat import AnthropicCompatProvider
        defaults = dict(api_key="test-key", model="test-model")
        defaults.update(kwargs)
        return AnthropicCompatProvider(**defaults)

    def test_format_tools_passthrough(self):
        result = self._make_provider().format_tools(SCHEMA)
        assert result == SCHEMA

    def test_image_blocks_nested_source(self):
        result = self._make_provider().format_messages([IMAGE_MSG])
        assert result[0]["content"][0] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "iVBOR"},
        }
        assert result[0]["content"][1] == {"type": "text", "text": "Look at this"}

    def test_tool_round_trip_format(self):
        result = self._make_provider().format_messages([TOOL_TURN, RESULTS])
        assert result[0]["content"][1] == {
            "type": "tool_use", "id": "tc-1", "name": "create_tag", "input": {"name": "Nan"}}
        assert result[1]["role"] == "user"
        assert result[1]["content"][0]["tool_use_id"] == "tc-1"
        assert "is_error" not in result[1]["content"][0]

    def test_error_result_flagged(self):
        results = {"role": "tool_results", "results": [
            {"tool_call_id": "tc-1", "name": "x", "content": "boom", "is_error": True}]}
        result = self._make_provider().format_messages([results])
        assert result[0]["content"][0]["is_error"] is True

    @pytest.mark.asyncio
    async def test_complete_parses_blocks(self):
        p = self._make_provider()
        p.client = MagicMock()
        p.client.messages.create.return_value = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Let me save that."),
                SimpleNamespace(type="tool_use", id="tu-1", name="create_tag",
                                input={"name": "Nan"}),
            ],
            usage=SimpleNamespace(input_tokens=12, output_tokens=7),
            stop_reason="tool_use",
        )
        resp = await p.complete("system text", [{"role": "user", "content": "hi"}], SCHEMA,
                                max_tokens=100, temperature=0.8)
        assert resp.text == "Let me save that."
        assert resp.tool_calls == [ToolCall(id="tu-1", name="create_tag",
                                            arguments={"name": "Nan"})]
        assert resp.stop_reason == "tool_use"
        params = p.client.messages.create.call_args.kwargs
        assert params["system"] == "system text"
        assert params["max_tokens"] == 100
        assert params["temperature"] == 0.8
        assert params["tools"] == SCHEMA

    @pytest.mark.asyncio
    async def test_json_output_prefills_brace(self):
        p = self._make_provider()
        p.client = MagicMock()
        p.client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text='"title": "T", "content": "C"}')],
            usage=SimpleNamespace(input_tokens=1, output_tokens=1),
            stop_reason="end_turn",
        )
        messages = [{"role": "user", "content": "write"}]
        resp = await p.complete("sys", messages, [], json_output=True)
        assert json.loads(resp.text) == {"title": "T", "content": "C"}
        sent = p.client.messages.create.call_args.kwargs["messages"]
        assert sent[-1] == {"role": "assistant", "content": "{"}
        assert len(messages) == 1


# ─── OpenAI Provider ─────────────────────────────────────────────

class TestOpenAIProvider:
    @pytest.fixture(autouse=True)
    def _skip_if_no_sdk(self):
        pytest.importorskip("openai")

    def _make_provider(self, **kwargs):
        from providers.openai_compat import OpenAICompatProvider
        defaults = dict(api_key="test-key", model="test-model")
        defaults.update(kwargs)
        return OpenAICompatProvider(**defaults)

    def test_wraps_in_type_function(self):
        result = self._make_provider().format_tools(SCHEMA)
        assert result[0]["type"] == "function"
        assert result[0]["function"]["parameters"] == SCHEMA[0]["input_schema"]

    def test_image_blocks_become_data_uri(self):
        result = self._make_provider().format_messages([IMAGE_MSG])
        assert result[0]["content"][0] == {
            "type": "image_url", "image_url": {"url": "data:image/png;base64,iVBOR"}}

    def test_user_message_string_unchanged(self):
        result = self._make_provider().format_messages([{"role": "user", "content": "Hi"}])
        assert result == [{"role": "user", "content": "Hi"}]

    def test_tool_results_expanded(self):
        result = self._make_provider().format_messages([TOOL_TURN, RESULTS])
        call = result[0]["tool_calls"][0]
        assert json.loads(call["function"]["arguments"]) == {"name": "Nan"}
        assert result[1] == {"role": "tool", "tool_call_id": "tc-1", "content": "ok"}

    @pytest.mark.asyncio
    async def test_complete_json_output(self):
        p = self._make_provider()
        p.client = MagicMock()
        p.client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(
                message=SimpleNamespace(content='{"title": "T"}', tool_calls=None),
                finish_reason="stop",
            )],
            usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4),
        )
        resp = await p.complete("sys", [{"role": "user", "content": "hi"}], [],
                                json_output=True)
        assert resp.text == '{"title": "T"}'
        assert resp.usage == Usage(3, 4)
        params = p.client.chat.completions.create.call_args.kwargs
        assert params["messages"][0] == {"role": "system", "content": "sys"}
        assert params["response_format"] == {"type": "json_object"}
        assert "tools" not in params


# ─── Gemini Provider ─────────────────────────────────────────────

def _mock_gemini(monkeypatch, status, payload, seen=None):
    real_client = httpx.AsyncClient

    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=payload)

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(gemini_compat.httpx, "AsyncClient", factory)


class TestGeminiFormatting:
    def test_tools_grouped_as_declarations(self):
        p = GeminiCompatProvider(api_key="k", model="gemini-2.5-flash")
        result = p.format_tools(SCHEMA)
        assert result == [{"functionDeclarations": [{
            "name": "create_tag", "description": "Create a tag",
            "parameters": SCHEMA[0]["input_schema"]}]}]
        assert p.format_tools([]) == []

    def test_system_instruction(self):
        p = GeminiCompatProvider(api_key="k", model="m")
        assert p.format_system("be kind") == {"parts": [{"text": "be kind"}]}
        assert p.format_system("") is None

    def test_roles_and_parts(self):
        p = GeminiCompatProvider(api_key="k", model="m")
        result = p.format_messages([IMAGE_MSG, TOOL_TURN, RESULTS])
        assert [m["role"] for m in result] == ["user", "model", "function"]
        assert result[0]["parts"][0] == {
            "inlineData": {"mimeType": "image/png", "data": "iVBOR"}}
        assert result[1]["parts"][1] == {
            "functionCall": {"name": "create_tag", "args": {"name": "Nan"}}}
        assert result[2]["parts"][0] == {
            "functionResponse": {"name": "create_tag", "response": {"content": "ok"}}}

    def test_empty_user_content_dropped(self):
        p = GeminiCompatProvider(api_key="k", model="m")
        assert p.format_messages([{"role": "user", "content": ""}]) == []


class TestGeminiComplete:
    @pytest.mark.asyncio
    async def test_text_and_function_call(self, monkeypatch):
        seen = []
        _mock_gemini(monkeypatch, 200, {
            "candidates": [{
                "content": {"parts": [
                    {"text": "thinking...", "thought": True},
                    {"text": "Saving now."},
                    {"functionCall": {"name": "create_tag", "args": {"name": "Nan"}}},
                ]},
                "finishReason": "STOP",
            }],
            "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 2},
        }, seen)
        p = GeminiCompatProvider(api_key="secret", model="gemini-2.5-flash")
        resp = await p.complete(p.format_system("sys"), [{"role": "user", "parts": [{"text": "hi"}]}],
                                p.format_tools(SCHEMA), json_output=True, temperature=0.8)

        assert resp.text == "Saving now."
        assert resp.tool_calls[0].name == "create_tag"
        assert resp.tool_calls[0].id.startswith("call-")
        assert resp.stop_reason == "tool_use"
        assert resp.usage == Usage(9, 2)

        request = seen[0]
        assert request.url.path.endswith("/models/gemini-2.5-flash:generateContent")
        assert request.headers["x-goog-api-key"] == "secret"
        body = json.loads(request.content)
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        assert body["generationConfig"]["temperature"] == 0.8
        assert body["systemInstruction"] == {"parts": [{"text": "sys"}]}

    @pytest.mark.asyncio
    async def test_unavailable_is_transient(self, monkeypatch):
        _mock_gemini(monkeypatch, 503, {"error": {
            "code": 503, "message": "The model is overloaded.", "status": "UNAVAILABLE"}})
        p = GeminiCompatProvider(api_key="k", model="m")
        with pytest.raises(GeminiAPIError) as exc:
            await p.complete(None, [], [])
        assert exc.value.status_code == 503
        assert classify(exc.value) == "transient"

    @pytest.mark.asyncio
    async def test_bad_key_is_auth(self, monkeypatch):
        _mock_gemini(monkeypatch, 400, {"error": {
            "code": 400, "message": "API key not valid. Please pass a valid API key.",
            "status": "INVALID_ARGUMENT"}})
        p = GeminiCompatProvider(api_key="k", model="m")
        with pytest.raises(GeminiAPIError) as exc:
            await p.complete(None, [], [])
        assert classify(exc.value) == "auth"

    @pytest.mark.asyncio
    async def test_max_tokens_stop(self, monkeypatch):
        _mock_gemini(monkeypatch, 200, {"candidates": [{
            "content": {"parts": [{"text": "cut o"}]}, "finishReason": "MAX_TOKENS"}]})
        p = GeminiCompatProvider(api_key="k", model="m")
        resp = await p.complete(None, [], [])
        assert resp.stop_reason == "max_tokens"


# ─── Factory ─────────────────────────────────────────────────────

class TestCreateProviderFactory:
    def test_raises_for_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            create_provider({"provider": "carrier-pigeon", "model": "x"})

    def test_gemini_compat_creates_provider(self):
        p = create_provider({"provider": "gemini-compat", "model": "gemini-2.5-flash"},
                            api_key="k")
        assert isinstance(p, GeminiCompatProvider)
        assert p.max_tokens == 8192

    def test_anthropic_compat_creates_provider(self):
        pytest.importorskip("anthropic")
        from providers.anthropic_compat import AnthropicCompatProvider
        p = create_provider({"provider": "anthropic-compat", "model": "m", "max_tokens": 512},
                            api_key="k")
        assert isinstance(p, AnthropicCompatProvider)
        assert p.max_tokens == 512

    def test_openai_compat_creates_provider(self):
        pytest.importorskip("openai")
        from providers.openai_compat import OpenAICompatProvider
        p = create_provider({"provider": "openai-compat", "model": "m"}, api_key="k")
        assert isinstance(p, OpenAICompatProvider)
