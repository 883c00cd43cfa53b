"""Provider-agnostic tool-call loop.

Requesting → Executing → Requesting ... → Terminal. Each request goes
through the retry policy; each tool call gets exactly one result, in call
order, before the next request. The number of Executing phases is bounded
so a provider that never stops asking for tools cannot hang a turn.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from providers import LLMProvider, LLMResponse
from retry import RetryPolicy
from tools import ToolRegistry

log = logging.getLogger(__name__)

FALLBACK_TEXT = "I'm not sure how to respond to that."
DEFAULT_MAX_ROUNDS = 8


async def _call_back(callback: Any, arg: Any) -> None:
    if callback is None:
        return
    if inspect.iscoroutinefunction(callback):
        await callback(arg)
    else:
        callback(arg)


async def run_tool_loop(
    provider: LLMProvider,
    messages: list[dict],
    instruction: str,
    tools: list[dict],
    tool_executor: ToolRegistry,
    retry: RetryPolicy,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    timeout: float = 600.0,
    on_response: Any = None,
    on_tool_results: Any = None,
    **complete_kwargs: Any,
) -> str:
    """Run the bounded request/execute cycle and return the final text.

    Args:
        provider: Generation provider instance.
        messages: Working history in internal format. Mutated in place:
            model turns with tool calls and tool_results are appended.
        instruction: System instruction text.
        tools: Tool schemas in generic format.
        tool_executor: ToolRegistry for executing tool calls.
        retry: Retry policy wrapping every provider call.
        max_rounds: Max Executing phases before giving up with FALLBACK_TEXT.
        timeout: Timeout per provider call in seconds.
        on_response: Callback(response) after each provider response.
        on_tool_results: Callback(results_msg) after each Executing phase.

    Raises:
        ProviderError / AuthenticationError from the retry policy.
    """
    max_rounds = max(0, max_rounds)
    fmt_system = provider.format_system(instruction)
    fmt_tools = provider.format_tools(tools) if tools else []

    rounds = 0
    while True:
        # Requesting
        fmt_messages = provider.format_messages(messages)

        async def _request() -> LLMResponse:
            return await asyncio.wait_for(
                provider.complete(fmt_system, fmt_messages, fmt_tools, **complete_kwargs),
                timeout=timeout,
            )

        response = await retry.execute(_request)
        await _call_back(on_response, response)

        if not response.tool_calls:
            if response.text:
                return response.text
            log.info("Provider returned neither text nor tool calls")
            return FALLBACK_TEXT

        if rounds >= max_rounds:
            log.warning("Tool-call round limit (%d) reached, abandoning turn", max_rounds)
            return FALLBACK_TEXT

        messages.append(response.to_internal_message())

        # Executing: sequential, result order matches call order
        rounds += 1
        results = []
        for tc in response.tool_calls:
            log.info("Tool call: %s(%s)", tc.name, _truncate_args(tc.arguments))
            result = await tool_executor.execute(tc)
            if result.is_error:
                log.warning("Tool %s returned error: %s", tc.name, result.content[:200])
            results.append(result.to_dict())

        results_msg = {"role": "tool_results", "results": results}
        messages.append(results_msg)
        await _call_back(on_tool_results, results_msg)


def _truncate_args(args: dict, max_len: int = 200) -> str:
    """Truncate tool arguments for logging."""
    s = str(args)
    return s[:max_len] + "..." if len(s) > max_len else s
