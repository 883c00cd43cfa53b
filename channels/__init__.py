"""Channel interface and shared types.

Defines the contract between the app and its console transport: lines in,
rendered turns and notifications out.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol


@dataclass
class InboundMessage:
    text: str
    sender: str           # owner id, "cli", ...
    timestamp: float
    source: str           # "cli"


class Channel(Protocol):
    async def connect(self) -> None: ...
    def receive(self) -> AsyncIterator[InboundMessage]: ...
    async def send(self, author: str, text: str) -> None: ...
    def notify(self, message: str, kind: str = "info") -> None: ...
