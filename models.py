"""Core data model — personas, session overrides, turns.

Plain dataclasses shared by every component. Turns serialize to plain
dicts for the archive store; nothing here talks to a provider.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Valid values for enumerated fields
ROLES = ("user", "agent", "system")
RESPONSE_LENGTHS = ("terse", "normal", "verbose")
PRESENCE_STATES = ("online", "away", "busy")

MIN_CONTENT_LEVEL = 1
MAX_CONTENT_LEVEL = 5

# persona id → directive text, supplied by an operator console
RuntimePatch = Mapping[str, str]


@dataclass
class Persona:
    id: str
    display_name: str
    persona_kind: str = "buddy"
    bio: str = ""
    content_level: int = 1
    is_primary: bool = False
    runtime_bio: str | None = None
    custom_description: str = ""
    avatar_url: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Persona:
        return cls(
            id=data["id"],
            display_name=data.get("display_name", data.get("name", data["id"])),
            persona_kind=data.get("persona_kind", data.get("kind", "buddy")),
            bio=data.get("bio", ""),
            content_level=int(data.get("content_level", 1)),
            is_primary=bool(data.get("is_primary", data.get("primary", False))),
            runtime_bio=data.get("runtime_bio"),
            custom_description=data.get("custom_description", ""),
            avatar_url=data.get("avatar_url", ""),
        )


def primary_persona(personas: list[Persona]) -> Persona:
    """Return the single primary persona, raising if there isn't exactly one."""
    primaries = [p for p in personas if p.is_primary]
    if len(primaries) != 1:
        raise ValueError(
            f"Exactly one primary persona required, found {len(primaries)}"
        )
    return primaries[0]


@dataclass
class SessionOverrides:
    """Per-session knobs changed through the command parser."""

    response_length: str = "normal"
    content_level_override: int | None = None

    def reset(self) -> None:
        self.response_length = "normal"
        self.content_level_override = None


@dataclass
class Attachment:
    media_type: str   # "image/jpeg", "image/png", ...
    data: str         # base64 payload
    filename: str = ""

    def to_dict(self) -> dict:
        return {"media_type": self.media_type, "data": self.data, "filename": self.filename}

    @classmethod
    def from_dict(cls, data: dict) -> Attachment:
        return cls(
            media_type=data["media_type"],
            data=data["data"],
            filename=data.get("filename", ""),
        )


@dataclass(frozen=True)
class Turn:
    """One entry in the conversation history. Never mutated once created."""

    role: str  # "user" | "agent" | "system"
    content: str
    attachment: Attachment | None = None
    author_persona_id: str | None = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid turn role: {self.role!r}")

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.attachment:
            d["attachment"] = self.attachment.to_dict()
        if self.author_persona_id:
            d["author_persona_id"] = self.author_persona_id
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Turn:
        attachment = data.get("attachment")
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            attachment=Attachment.from_dict(attachment) if attachment else None,
            author_persona_id=data.get("author_persona_id"),
            timestamp=float(data.get("timestamp", time.time())),
        )


def turns_to_messages(turns: list[Turn]) -> list[dict]:
    """Convert turn history to the internal provider message format.

    System turns are UI-facing only and never reach the provider.
    Attachments become neutral image blocks ahead of the text.
    """
    messages: list[dict] = []
    for turn in turns:
        if turn.role == "user":
            if turn.attachment:
                content: Any = [{
                    "type": "image",
                    "media_type": turn.attachment.media_type,
                    "data": turn.attachment.data,
                }]
                if turn.content:
                    content.append({"type": "text", "text": turn.content})
            else:
                content = turn.content
            messages.append({"role": "user", "content": content})
        elif turn.role == "agent":
            messages.append({"role": "assistant", "text": turn.content})
    return messages
