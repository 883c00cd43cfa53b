"""Inner voice tool — pause and reflect before answering something deep."""

from __future__ import annotations

from typing import Any

# Set at startup by configure()
_generator: Any = None
_personas: list = []
_notifier: Any = None


def configure(generator: Any, personas: list, notifier: Any = None) -> None:
    global _generator, _personas, _notifier
    _generator = generator
    _personas = list(personas)
    _notifier = notifier


async def tool_consult_inner_voice(topic_for_reflection: str) -> dict:
    if _generator is None:
        return {"status": "error", "error": "Inner voice not configured"}
    insight = await _generator.inner_voice(topic_for_reflection, _personas)
    if _notifier is not None:
        _notifier.notify(f'Inner Voice: "{insight}"', "info")
    return {"status": "success", "insight": insight}


TOOLS = [
    {
        "name": "consult_inner_voice",
        "description": (
            "When the user says something profound, complex or emotionally deep, use "
            "this to pause and reflect before responding. Returns a short insight."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "topic_for_reflection": {
                    "type": "string",
                    "description": "The topic, question or quote to reflect on",
                },
            },
            "required": ["topic_for_reflection"],
        },
        "function": tool_consult_inner_voice,
    },
]
