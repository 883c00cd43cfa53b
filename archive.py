"""Archive store — chat history, journal, life events, tags.

The session and idle scheduler only depend on the ArchiveStore protocol.
FileArchiveStore keeps one JSON state file per owner, written atomically
(temp file + fsync + rename) on every mutation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from models import Turn

log = logging.getLogger(__name__)

TAG_TYPES = ("person", "pet", "place", "thing", "event", "unknown")
JOURNAL_KINDS = ("reflection", "conversation")

# Journal entries keep a short slice of the chat that produced them
RELATED_HISTORY_TURNS = 5


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class LifeEvent:
    id: str
    title: str
    date: str  # YYYY-MM-DD
    details: str = ""
    tag_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> LifeEvent:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            date=data.get("date", ""),
            details=data.get("details", ""),
            tag_ids=list(data.get("tag_ids", [])),
        )


@dataclass
class Tag:
    id: str
    name: str
    type: str = "unknown"
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def deceased(self) -> bool:
        dates = self.metadata.get("dates") or {}
        return self.type == "person" and bool(dates.get("death"))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Tag:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=data.get("type", "unknown"),
            description=data.get("description", ""),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class Comment:
    """One message in the comment thread under a journal entry."""

    id: str
    author_id: str  # owner id or persona id
    author_name: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Comment:
        return cls(
            id=data["id"],
            author_id=data.get("author_id", ""),
            author_name=data.get("author_name", ""),
            content=data.get("content", ""),
            timestamp=float(data.get("timestamp", time.time())),
        )


@dataclass
class JournalEntry:
    id: str
    title: str
    content: str
    kind: str = "reflection"
    created_at: float = field(default_factory=time.time)
    participants: list[str] = field(default_factory=list)  # persona ids
    related_history: list[Turn] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "kind": self.kind,
            "created_at": self.created_at,
            "participants": list(self.participants),
            "related_history": [t.to_dict() for t in self.related_history],
            "comments": [c.to_dict() for c in self.comments],
        }

    @classmethod
    def from_dict(cls, data: dict) -> JournalEntry:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            kind=data.get("kind", "reflection"),
            created_at=float(data.get("created_at", time.time())),
            participants=list(data.get("participants", [])),
            related_history=[Turn.from_dict(t) for t in data.get("related_history", [])],
            comments=[Comment.from_dict(c) for c in data.get("comments", [])],
        )


class ArchiveStore(Protocol):
    """Persistence used by the session controller, tools and idle scheduler."""

    async def get_chat_history(self, owner: str) -> list[Turn]: ...

    async def save_chat_history(self, owner: str, turns: list[Turn]) -> None: ...

    async def save_journal_entry(self, owner: str, entry: JournalEntry) -> None: ...

    async def create_or_update_event(self, owner: str, event: LifeEvent) -> LifeEvent: ...

    async def create_or_update_tag(self, owner: str, tag: Tag) -> Tag: ...

    async def update_tag(self, owner: str, tag: Tag) -> Tag: ...

    async def list_events(self, owner: str) -> list[LifeEvent]: ...

    async def list_tags(self, owner: str) -> list[Tag]: ...

    async def find_tag(self, owner: str, name: str) -> Tag | None: ...

    async def list_journal(self, owner: str) -> list[JournalEntry]: ...

    async def get_journal_entry(self, owner: str, entry_id: str) -> JournalEntry | None: ...

    async def add_journal_comment(
        self, owner: str, entry_id: str, comment: Comment,
    ) -> JournalEntry | None: ...


def _atomic_write(path: Path, data: str) -> None:
    """Write to temp file then rename — atomic on POSIX."""
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.@-]")


def _safe_name(owner: str) -> str:
    if not owner:
        raise ValueError("owner must not be empty")
    return _UNSAFE_CHARS.sub("_", owner)


def _shape_problem(data: Any, sections: dict) -> str:
    """Describe why a parsed state file is unusable, or return "" if it is fine."""
    if not isinstance(data, dict):
        return f"expected an object, got {type(data).__name__}"
    for key in sections:
        value = data.get(key, [])
        if not isinstance(value, list):
            return f"{key} is {type(value).__name__}, not a list"
        if not all(isinstance(item, dict) for item in value):
            return f"{key} holds non-object items"
    return ""


class FileArchiveStore:
    """ArchiveStore backed by ``<archive_dir>/<owner>.archive.json``."""

    def __init__(self, archive_dir: Path):
        self.dir = Path(archive_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def state_path(self, owner: str) -> Path:
        return self.dir / f"{_safe_name(owner)}.archive.json"

    def _load(self, owner: str) -> dict:
        path = self.state_path(owner)
        state = {"chat_history": [], "journal": [], "events": [], "tags": []}
        if not path.exists():
            return state
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            return self._set_aside(owner, path, state, str(e))
        problem = _shape_problem(data, state)
        if problem:
            return self._set_aside(owner, path, state, problem)
        for key in state:
            state[key] = data.get(key, [])
        return state

    @staticmethod
    def _set_aside(owner: str, path: Path, state: dict, reason: str) -> dict:
        # Keep the damaged file around for inspection, start fresh
        backup = path.with_suffix(f".corrupt-{int(time.time())}")
        path.rename(backup)
        log.warning("Corrupt archive for %s moved to %s: %s", owner, backup.name, reason)
        return state

    def _save(self, owner: str, state: dict) -> None:
        state["owner"] = owner
        state["updated_at"] = time.time()
        _atomic_write(self.state_path(owner), json.dumps(state, ensure_ascii=False))

    # --- chat history ---

    async def get_chat_history(self, owner: str) -> list[Turn]:
        async with self._lock:
            state = self._load(owner)
        turns = []
        for raw in state["chat_history"]:
            try:
                turns.append(Turn.from_dict(raw))
            except (KeyError, ValueError) as e:
                log.warning("Skipping malformed turn in %s archive: %s", owner, e)
        return turns

    async def save_chat_history(self, owner: str, turns: list[Turn]) -> None:
        async with self._lock:
            state = self._load(owner)
            state["chat_history"] = [t.to_dict() for t in turns]
            self._save(owner, state)

    # --- journal ---

    async def save_journal_entry(self, owner: str, entry: JournalEntry) -> None:
        async with self._lock:
            state = self._load(owner)
            journal = [j for j in state["journal"] if j.get("id") != entry.id]
            journal.append(entry.to_dict())
            state["journal"] = journal
            self._save(owner, state)
        log.info("Saved journal entry %s (%s) for %s", entry.id, entry.kind, owner)

    async def list_journal(self, owner: str) -> list[JournalEntry]:
        async with self._lock:
            state = self._load(owner)
        return [JournalEntry.from_dict(j) for j in state["journal"]]

    async def get_journal_entry(self, owner: str, entry_id: str) -> JournalEntry | None:
        for entry in await self.list_journal(owner):
            if entry.id == entry_id:
                return entry
        return None

    async def add_journal_comment(
        self, owner: str, entry_id: str, comment: Comment,
    ) -> JournalEntry | None:
        """Append a comment in place; None when the entry doesn't exist."""
        async with self._lock:
            state = self._load(owner)
            for raw in state["journal"]:
                if raw.get("id") == entry_id:
                    raw["comments"] = [*(raw.get("comments") or []), comment.to_dict()]
                    self._save(owner, state)
                    return JournalEntry.from_dict(raw)
        return None

    # --- life events ---

    async def create_or_update_event(self, owner: str, event: LifeEvent) -> LifeEvent:
        async with self._lock:
            state = self._load(owner)
            events = state["events"]
            for i, existing in enumerate(events):
                if existing.get("id") == event.id:
                    events[i] = event.to_dict()
                    break
            else:
                events.append(event.to_dict())
            self._save(owner, state)
        return event

    async def list_events(self, owner: str) -> list[LifeEvent]:
        async with self._lock:
            state = self._load(owner)
        return [LifeEvent.from_dict(e) for e in state["events"]]

    # --- tags ---

    async def create_or_update_tag(self, owner: str, tag: Tag) -> Tag:
        """Insert a tag, or return the existing one with the same name."""
        async with self._lock:
            state = self._load(owner)
            tags = state["tags"]
            for i, existing in enumerate(tags):
                if existing.get("id") == tag.id:
                    tags[i] = tag.to_dict()
                    break
                if existing.get("name", "").lower() == tag.name.lower():
                    log.info("Tag %r already exists for %s", tag.name, owner)
                    return Tag.from_dict(existing)
            else:
                tags.append(tag.to_dict())
            self._save(owner, state)
        return tag

    async def update_tag(self, owner: str, tag: Tag) -> Tag:
        """Replace an existing tag by id. Raises KeyError if absent."""
        async with self._lock:
            state = self._load(owner)
            tags = state["tags"]
            for i, existing in enumerate(tags):
                if existing.get("id") == tag.id:
                    tags[i] = tag.to_dict()
                    self._save(owner, state)
                    return tag
        raise KeyError(f"Tag not found: {tag.id}")

    async def list_tags(self, owner: str) -> list[Tag]:
        async with self._lock:
            state = self._load(owner)
        return [Tag.from_dict(t) for t in state["tags"]]

    async def find_tag(self, owner: str, name: str) -> Tag | None:
        wanted = name.strip().lower()
        for tag in await self.list_tags(owner):
            if tag.name.lower() == wanted:
                return tag
        return None
