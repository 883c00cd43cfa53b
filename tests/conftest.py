"""Shared fixtures for the Archivist test suite.

All tests use temporary directories and mock objects.
Nothing touches ~/.archivist/ or a real provider.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from models import Persona  # noqa: E402
from providers import LLMResponse, ToolCall  # noqa: E402


class MockProvider:
    """Returns pre-configured LLMResponse objects (or raises) in sequence.

    Entries may be LLMResponse, str (plain text reply) or an Exception
    instance to raise. The last entry repeats once the queue runs out.
    """

    def __init__(self, responses=None):
        self._responses = list(responses or [LLMResponse(text="ok")])
        self.calls: list[dict] = []

    def format_tools(self, tools):
        return tools

    def format_system(self, text):
        return text

    def format_messages(self, messages):
        return [dict(m) for m in messages]

    async def complete(self, system, messages, tools, **kwargs):
        idx = min(len(self.calls), len(self._responses) - 1)
        self.calls.append({
            "system": system, "messages": messages, "tools": tools, "kwargs": kwargs,
        })
        item = self._responses[idx]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return LLMResponse(text=item)
        return item

    @property
    def call_count(self) -> int:
        return len(self.calls)


def text_response(text):
    return LLMResponse(text=text, stop_reason="end_turn")


def tool_response(name="echo", arguments=None, call_id="tc-1", text=None):
    return LLMResponse(
        text=text,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments or {})],
        stop_reason="tool_use",
    )


class RecordingNotifier:
    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def notify(self, message, kind="info"):
        self.messages.append((message, kind))


class FakeClock:
    """Manual clock with a sleep() that only returns when time is advanced."""

    def __init__(self, start=1000.0):
        self.now = start
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + delay, fut))
        await fut

    @property
    def pending(self):
        return [w for w in self._waiters if not w[1].done()]

    async def _settle(self):
        for _ in range(20):
            await asyncio.sleep(0)

    async def advance(self, seconds):
        """Move time forward, waking sleepers in deadline order."""
        target = self.now + seconds
        await self._settle()
        while True:
            due = sorted((w for w in self.pending if w[0] <= target), key=lambda w: w[0])
            if not due:
                break
            deadline, fut = due[0]
            self.now = deadline
            self._waiters.remove((deadline, fut))
            fut.set_result(None)
            await self._settle()
        self.now = target
        self._waiters = self.pending
        await self._settle()


async def no_sleep(delay):
    return None


@pytest.fixture
def personas():
    return [
        Persona(id="gigi", display_name="Gigi", persona_kind="sister",
                bio="Grew up by the sea.", content_level=2, is_primary=True),
        Persona(id="zoe", display_name="Zoe", persona_kind="muse", content_level=3),
    ]


@pytest.fixture
def primary(personas):
    return personas[0]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def tmp_archive(tmp_path):
    """Temp directory acting as archive_dir."""
    d = tmp_path / "archive"
    d.mkdir()
    return d


@pytest.fixture
def store(tmp_archive):
    from archive import FileArchiveStore
    return FileArchiveStore(tmp_archive)


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "session": {"owner": "ada"},
        "personas": [
            {"id": "gigi", "display_name": "Gigi", "persona_kind": "sister",
             "content_level": 2, "is_primary": True},
            {"id": "zoe", "display_name": "Zoe", "persona_kind": "muse"},
        ],
        "models": {
            "primary": {
                "provider": "anthropic-compat",
                "model": "claude-sonnet-4-5",
                "max_tokens": 4096,
            },
        },
        "paths": {
            "archive_dir": "/tmp/test-archive",
            "log_file": "/tmp/test-archivist.log",
        },
    }


@pytest.fixture
def tool_registry():
    """ToolRegistry with a sync + async dummy tool registered."""
    from tools import ToolRegistry

    reg = ToolRegistry(truncation_limit=100)

    def sync_tool(text: str = "default") -> str:
        return f"sync:{text}"

    async def async_tool(text: str = "default") -> str:
        return f"async:{text}"

    reg.register("sync_echo", "A sync echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, sync_tool)
    reg.register("async_echo", "An async echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, async_tool)
    return reg
