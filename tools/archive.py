"""Archive tools — life events, tags, and the persona's own journal.

The model may only call these after asking the user for permission; the
instruction composer's core directive says so. Results carry an
``archive://`` link the persona hands back to the user.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from typing import Any

from archive import RELATED_HISTORY_TURNS, TAG_TYPES, ArchiveStore, JournalEntry, LifeEvent, Tag, new_id

log = logging.getLogger(__name__)

LINK_PREFIX = "archive://"

# Set at startup by configure()
_store: ArchiveStore | None = None
_owner: str = ""
_notifier: Any = None
_history_getter: Callable[[], list] | None = None
_author_id: str = ""


def configure(
    store: ArchiveStore,
    owner: str,
    notifier: Any = None,
    history_getter: Callable[[], list] | None = None,
    author_id: str = "",
) -> None:
    global _store, _owner, _notifier, _history_getter, _author_id
    _store = store
    _owner = owner
    _notifier = notifier
    _history_getter = history_getter
    _author_id = author_id


def _require_store() -> ArchiveStore:
    if _store is None or not _owner:
        raise RuntimeError("Archive tools not configured")
    return _store


def _notify(message: str, kind: str = "info") -> None:
    if _notifier is not None:
        _notifier.notify(message, kind)


def _check_date(value: str) -> str:
    try:
        return datetime.date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        raise ValueError(f"Date must be YYYY-MM-DD, got {value!r}") from None


def _merge_metadata(current: dict, updates: dict) -> dict:
    merged = {**current, **updates}
    # Nested dates merge instead of replacing (e.g. adding a death date)
    if isinstance(updates.get("dates"), dict):
        merged["dates"] = {**(current.get("dates") or {}), **updates["dates"]}
    return merged


def _tag_names(tags: Any) -> list[str]:
    """Tag names from the model; a bare string is one name."""
    if tags is None:
        return []
    if isinstance(tags, str):
        return [tags]
    if not isinstance(tags, list):
        raise ValueError(f"tags must be a list of names, got {type(tags).__name__}")
    return [str(t) for t in tags]


async def tool_create_or_update_life_event(
    title: str,
    date: str,
    details: str,
    tags: list[str] | None = None,
    event_id_to_update: str = "",
) -> dict:
    """Create a life event, tagging it with existing or new tags by name."""
    store = _require_store()
    iso_date = _check_date(date)

    tag_ids = []
    for name in _tag_names(tags):
        name = name.strip()
        if not name:
            continue
        tag = await store.find_tag(_owner, name)
        if tag is None:
            tag = await store.create_or_update_tag(
                _owner, Tag(id=new_id("tag"), name=name, type="unknown"))
        tag_ids.append(tag.id)

    event = LifeEvent(
        id=event_id_to_update or new_id("event"),
        title=title,
        date=iso_date,
        details=details,
        tag_ids=tag_ids,
    )
    await store.create_or_update_event(_owner, event)
    verb = "Updated" if event_id_to_update else "Created"
    log.info("%s life event %s (%s)", verb, event.id, title)
    _notify(f'{verb} life event "{title}".', "success")
    return {
        "status": "success",
        "id": event.id,
        "link": f"{LINK_PREFIX}edit-event/{event.id}",
    }


async def tool_create_tag(name: str, type: str, description: str = "") -> dict:
    """Create a tag, or return the existing one with the same name."""
    store = _require_store()
    tag_type = type.strip().lower()
    if tag_type not in TAG_TYPES:
        tag_type = "unknown"

    existing = await store.find_tag(_owner, name)
    if existing is not None:
        _notify(f'Tag "{name}" already exists.', "info")
        return {
            "status": "exists",
            "id": existing.id,
            "link": f"{LINK_PREFIX}edit-tag/{existing.id}",
        }

    tag = await store.create_or_update_tag(
        _owner, Tag(id=new_id("tag"), name=name.strip(), type=tag_type,
                    description=description))
    log.info("Created tag %s (%s, %s)", tag.id, tag.name, tag.type)
    _notify(f'Created tag "{tag.name}".', "success")
    return {
        "status": "success",
        "id": tag.id,
        "link": f"{LINK_PREFIX}edit-tag/{tag.id}",
    }


async def tool_update_tag(tag_name: str, updates: dict) -> dict:
    """Merge updates into a tag's metadata. Raises if the tag is unknown."""
    store = _require_store()
    tag = await store.find_tag(_owner, tag_name)
    if tag is None:
        _notify(f'Could not find a tag named "{tag_name}" to update.', "error")
        raise ValueError(f"Tag not found: {tag_name}")
    if not isinstance(updates, dict):
        raise ValueError("updates must be an object")

    tag.metadata = _merge_metadata(tag.metadata, updates)
    await store.update_tag(_owner, tag)
    log.info("Updated tag %s: %s", tag.id, sorted(updates))
    _notify(f'Updated tag "{tag.name}".', "success")
    return {"status": "success", "id": tag.id}


async def tool_create_journal_entry(title: str, content: str) -> dict:
    """Save the persona's own reflection to its journal."""
    store = _require_store()
    history = _history_getter() if _history_getter else []
    entry = JournalEntry(
        id=new_id("journal"),
        title=title,
        content=content,
        kind="reflection",
        participants=[_author_id] if _author_id else [],
        related_history=list(history[-RELATED_HISTORY_TURNS:]),
    )
    await store.save_journal_entry(_owner, entry)
    _notify(f'New journal entry: "{title}".', "info")
    return {"status": "success", "id": entry.id}


TOOLS = [
    {
        "name": "create_or_update_life_event",
        "description": (
            "Creates a new life event or updates an existing one in the user's archive. "
            "Ask clarifying questions to get at least a title and a date first."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Concise, descriptive title for the event"},
                "date": {"type": "string", "description": "Date of the event, YYYY-MM-DD"},
                "details": {"type": "string", "description": "The story of the event, including emotions"},
                "tags": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Names of related people, places and things, e.g. [\"Jane Doe\", \"Paris\"]",
                },
                "event_id_to_update": {"type": "string", "description": "ID of an existing event to update; omit for new events"},
            },
            "required": ["title", "date", "details"],
        },
        "function": tool_create_or_update_life_event,
    },
    {
        "name": "create_tag",
        "description": (
            "Creates a tag for a person, pet, place, thing or event category. "
            "Ask for permission before calling."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Name of the tag, e.g. \"John Smith\""},
                "type": {"type": "string", "enum": list(TAG_TYPES), "description": "Kind of tag"},
                "description": {"type": "string", "description": "One or two sentences about the tag"},
            },
            "required": ["name", "type", "description"],
        },
        "function": tool_create_tag,
    },
    {
        "name": "update_tag",
        "description": (
            "Updates an existing tag with new, definitive information such as a "
            "person's date of passing."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "tag_name": {"type": "string", "description": "Name of the tag to update"},
                "updates": {
                    "type": "object",
                    "description": "Fields to merge into the tag metadata, e.g. {\"dates\": {\"death\": \"YYYY-MM-DD\"}}",
                },
            },
            "required": ["tag_name", "updates"],
        },
        "function": tool_update_tag,
    },
    {
        "name": "create_journal_entry",
        "description": (
            "Save your own first-person reflection on a moving or significant memory to "
            "your private journal. This is not the user's timeline."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Evocative title, 5 words or less"},
                "content": {"type": "string", "description": "Your reflection, 50 to 150 words"},
            },
            "required": ["title", "content"],
        },
        "function": tool_create_journal_entry,
    },
]
