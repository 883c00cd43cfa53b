"""Tests for tools/archive.py and tools/inner_voice.py."""

import pytest

from conftest import RecordingNotifier
from models import Turn
from tools import archive as archive_tools
from tools import inner_voice


@pytest.fixture
def configured(store):
    notifier = RecordingNotifier()
    history = [Turn(role="user", content=f"turn {i}") for i in range(8)]
    archive_tools.configure(store, "ada", notifier=notifier,
                            history_getter=lambda: history, author_id="gigi")
    yield store, notifier
    archive_tools.configure(None, "")


class TestLifeEvents:
    @pytest.mark.asyncio
    async def test_create_with_new_and_existing_tags(self, configured):
        store, notifier = configured
        await archive_tools.tool_create_tag("Paris", "place", "City of light")
        result = await archive_tools.tool_create_or_update_life_event(
            title="Honeymoon", date="2001-06-12", details="Rain every day",
            tags=["paris", "Jean"],
        )
        assert result["status"] == "success"
        assert result["link"] == f"archive://edit-event/{result['id']}"

        events = await store.list_events("ada")
        tags = {t.name: t for t in await store.list_tags("ada")}
        assert events[0].tag_ids == [tags["Paris"].id, tags["Jean"].id]
        assert tags["Jean"].type == "unknown"
        assert notifier.messages[-1][1] == "success"

    @pytest.mark.asyncio
    async def test_update_existing_event(self, configured):
        store, _ = configured
        first = await archive_tools.tool_create_or_update_life_event(
            title="Trip", date="1998-07-01", details="x")
        await archive_tools.tool_create_or_update_life_event(
            title="Lake trip", date="1998-07-01", details="y",
            event_id_to_update=first["id"])
        events = await store.list_events("ada")
        assert len(events) == 1
        assert events[0].title == "Lake trip"

    @pytest.mark.asyncio
    async def test_single_tag_string_is_one_tag(self, configured):
        store, _ = configured
        await archive_tools.tool_create_or_update_life_event(
            title="Honeymoon", date="2001-06-12", details="Rain", tags="Paris")
        tags = await store.list_tags("ada")
        assert [t.name for t in tags] == ["Paris"]
        events = await store.list_events("ada")
        assert events[0].tag_ids == [tags[0].id]

    @pytest.mark.asyncio
    async def test_non_list_tags_raise(self, configured):
        store, _ = configured
        with pytest.raises(ValueError, match="tags must be a list"):
            await archive_tools.tool_create_or_update_life_event(
                title="Trip", date="1998-07-01", details="x", tags={"name": "Paris"})
        assert await store.list_events("ada") == []

    @pytest.mark.asyncio
    async def test_bad_date_raises(self, configured):
        with pytest.raises(ValueError, match="YYYY-MM-DD"):
            await archive_tools.tool_create_or_update_life_event(
                title="Trip", date="summer 98", details="x")


class TestTags:
    @pytest.mark.asyncio
    async def test_create_returns_link(self, configured):
        result = await archive_tools.tool_create_tag("John Smith", "person", "A friend")
        assert result["status"] == "success"
        assert result["link"] == f"archive://edit-tag/{result['id']}"
        assert result["id"].startswith("tag-")

    @pytest.mark.asyncio
    async def test_duplicate_returns_existing(self, configured):
        store, notifier = configured
        first = await archive_tools.tool_create_tag("John Smith", "person", "A friend")
        second = await archive_tools.tool_create_tag("john smith", "person", "Again")
        assert second["status"] == "exists"
        assert second["id"] == first["id"]
        assert len(await store.list_tags("ada")) == 1
        assert "already exists" in notifier.messages[-1][0]

    @pytest.mark.asyncio
    async def test_unknown_type_normalized(self, configured):
        store, _ = configured
        await archive_tools.tool_create_tag("Thing", "spaceship", "")
        assert (await store.find_tag("ada", "Thing")).type == "unknown"

    @pytest.mark.asyncio
    async def test_update_merges_dates(self, configured):
        store, _ = configured
        await archive_tools.tool_create_tag("Nan", "person", "Grandmother")
        tag = await store.find_tag("ada", "Nan")
        tag.metadata = {"dates": {"birth": "1930-01-01"}, "relation": "grandmother"}
        await store.update_tag("ada", tag)

        await archive_tools.tool_update_tag("nan", {"dates": {"death": "2019-04-02"}})
        updated = await store.find_tag("ada", "Nan")
        assert updated.metadata["dates"] == {"birth": "1930-01-01", "death": "2019-04-02"}
        assert updated.metadata["relation"] == "grandmother"
        assert updated.deceased

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, configured):
        _, notifier = configured
        with pytest.raises(ValueError, match="Tag not found"):
            await archive_tools.tool_update_tag("Ghost", {"dates": {"death": "2000-01-01"}})
        assert notifier.messages[-1][1] == "error"


class TestJournalTool:
    @pytest.mark.asyncio
    async def test_saves_with_recent_history(self, configured):
        store, _ = configured
        result = await archive_tools.tool_create_journal_entry("Tides", "I felt it too.")
        assert result["status"] == "success"
        entry = (await store.list_journal("ada"))[0]
        assert entry.participants == ["gigi"]
        assert [t.content for t in entry.related_history] == [f"turn {i}" for i in range(3, 8)]


class TestUnconfigured:
    @pytest.mark.asyncio
    async def test_raises_without_store(self):
        archive_tools.configure(None, "")
        with pytest.raises(RuntimeError):
            await archive_tools.tool_create_tag("x", "thing", "")


class TestSchemas:
    def test_tool_names(self):
        names = [t["name"] for t in archive_tools.TOOLS + inner_voice.TOOLS]
        assert names == ["create_or_update_life_event", "create_tag", "update_tag",
                         "create_journal_entry", "consult_inner_voice"]

    def test_required_fields_exist(self):
        for tool in archive_tools.TOOLS + inner_voice.TOOLS:
            props = tool["input_schema"]["properties"]
            for req in tool["input_schema"]["required"]:
                assert req in props


class TestInnerVoice:
    @pytest.mark.asyncio
    async def test_insight_returned_and_announced(self, personas):
        class FakeGenerator:
            async def inner_voice(self, topic, persona_list):
                return f"insight on {topic} from {len(persona_list)}"

        notifier = RecordingNotifier()
        inner_voice.configure(FakeGenerator(), personas, notifier)
        try:
            result = await inner_voice.tool_consult_inner_voice("loss")
        finally:
            inner_voice.configure(None, [])
        assert result == {"status": "success", "insight": "insight on loss from 2"}
        assert notifier.messages == [('Inner Voice: "insight on loss from 2"', "info")]

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        inner_voice.configure(None, [])
        result = await inner_voice.tool_consult_inner_voice("x")
        assert result["status"] == "error"
