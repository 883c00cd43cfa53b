"""CLI channel — stdin/stdout console for an archive session."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator

from . import InboundMessage

_NOTIFY_MARKS = {"info": "*", "success": "+", "error": "!"}


class CLIChannel:
    def __init__(self, sender: str = "cli", prompt: str = "You> "):
        self.sender = sender
        self.prompt = prompt

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def receive(self) -> AsyncIterator[InboundMessage]:
        while True:
            try:
                text = await asyncio.to_thread(input, self.prompt)
            except (EOFError, KeyboardInterrupt):
                return
            yield InboundMessage(
                text=text,
                sender=self.sender,
                timestamp=time.time(),
                source="cli",
            )

    async def send(self, author: str, text: str) -> None:
        if text:
            print(f"{author}> {text}", flush=True)

    def notify(self, message: str, kind: str = "info") -> None:
        mark = _NOTIFY_MARKS.get(kind, "*")
        print(f"[{mark}] {message}", flush=True)
