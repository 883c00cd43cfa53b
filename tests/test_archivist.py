"""Tests for archivist.py — image attachments and the console loop."""

import base64
import copy

import pytest
from PIL import Image

from archive import Comment, FileArchiveStore, JournalEntry
from archivist import FROZEN_TEXT, AttachmentError, ArchivistApp, load_image_attachment
from channels import InboundMessage
from config import Config
from generation import Generator
from models import Turn


class FakeChannel:
    def __init__(self, lines):
        self.lines = lines
        self.sent: list[tuple[str, str]] = []
        self.notes: list[tuple[str, str]] = []

    async def connect(self):
        pass

    async def receive(self):
        for line in self.lines:
            yield InboundMessage(text=line, sender="ada", timestamp=0.0, source="test")

    async def send(self, author, text):
        self.sent.append((author, text))

    def notify(self, message, kind="info"):
        self.notes.append((message, kind))


# ─── Attachments ─────────────────────────────────────────────────

class TestLoadImageAttachment:
    def test_png_bytes_unchanged(self, tmp_path):
        path = tmp_path / "beach.png"
        Image.new("RGB", (4, 4), "blue").save(path, format="PNG")
        attachment = load_image_attachment(path)
        assert attachment.media_type == "image/png"
        assert attachment.filename == "beach.png"
        assert base64.b64decode(attachment.data) == path.read_bytes()

    def test_jpeg_detected_by_content(self, tmp_path):
        path = tmp_path / "photo.bin"
        Image.new("RGB", (4, 4), "red").save(path, format="JPEG")
        assert load_image_attachment(path).media_type == "image/jpeg"

    def test_not_an_image(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("just words")
        with pytest.raises(AttachmentError, match="Not an image"):
            load_image_attachment(path)

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "scan.bmp"
        Image.new("RGB", (4, 4)).save(path, format="BMP")
        with pytest.raises(AttachmentError, match="Unsupported"):
            load_image_attachment(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(AttachmentError, match="Cannot read"):
            load_image_attachment(tmp_path / "nope.png")


# ─── Console loop ────────────────────────────────────────────────

@pytest.fixture
def app_config(minimal_toml_data, tmp_path):
    data = copy.deepcopy(minimal_toml_data)
    data["models"]["primary"] = {"provider": "gemini-compat", "model": "gemini-2.5-flash"}
    data["paths"] = {"archive_dir": str(tmp_path / "archive"),
                     "log_file": str(tmp_path / "archivist.log")}
    return Config(data)


async def _run(app_config, lines, monkeypatch):
    # existing history: no welcome call goes out
    await FileArchiveStore(app_config.archive_dir).save_chat_history(
        "ada", [Turn(role="agent", content="Welcome back", author_persona_id="gigi")])
    monkeypatch.setattr(ArchivistApp, "_setup_logging", lambda self: None)
    channel = FakeChannel(lines)
    app = ArchivistApp(app_config, channel=channel)
    await app.run()
    return app, channel


class TestConsole:
    @pytest.mark.asyncio
    async def test_directives(self, app_config, monkeypatch, tmp_path):
        image = tmp_path / "a.png"
        Image.new("RGB", (2, 2)).save(image, format="PNG")
        app, channel = await _run(app_config, [
            ":away",
            ":patch gigi mention the lighthouse",
            ":patch nobody hi",
            f":attach {image}",
            ":freeze",
            ":daydream off",
            ":quit",
            "never read",
        ], monkeypatch)

        assert app.presence == "away"
        assert app.session.patch_for(app.session.primary) == "mention the lighthouse"
        assert app.session.staged_attachment.filename == "a.png"
        assert app.frozen
        assert not app.idle.enabled
        assert not app.idle.scheduled
        assert ("Unknown persona: 'nobody'", "error") in channel.notes
        assert not app.running

    @pytest.mark.asyncio
    async def test_clearing_patch(self, app_config, monkeypatch):
        app, _ = await _run(app_config, [":patch gigi be brief", ":patch gigi", ":quit"],
                            monkeypatch)
        assert app.session.patch_for(app.session.primary) is None

    @pytest.mark.asyncio
    async def test_command_rendered(self, app_config, monkeypatch):
        _, channel = await _run(app_config, ["/gigi help", ":quit"], monkeypatch)
        assert channel.sent[0][0] == "System"
        assert "/gigi journal" in channel.sent[0][1]

    @pytest.mark.asyncio
    async def test_unknown_directive_shows_help(self, app_config, monkeypatch):
        _, channel = await _run(app_config, [":dance", ":quit"], monkeypatch)
        assert any("Console directives" in m for m, _ in channel.notes)

    @pytest.mark.asyncio
    async def test_tools_registered(self, app_config, monkeypatch):
        app, _ = await _run(app_config, [":quit"], monkeypatch)
        assert set(app.session.tools.tool_names) == {
            "create_or_update_life_event", "create_tag", "update_tag",
            "create_journal_entry", "consult_inner_voice"}

    @pytest.mark.asyncio
    async def test_frozen_blocks_conversation(self, app_config, monkeypatch):
        app, channel = await _run(app_config, [":freeze", "hello there", ":quit"], monkeypatch)
        assert (FROZEN_TEXT, "info") in channel.notes
        assert [t.content for t in app.session.history] == ["Welcome back"]
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_thaw_lets_commands_through(self, app_config, monkeypatch):
        _, channel = await _run(app_config, [":freeze", ":thaw", "/gigi help", ":quit"],
                                monkeypatch)
        assert (FROZEN_TEXT, "info") not in channel.notes
        assert channel.sent[0][0] == "System"


# ─── Journal comments ────────────────────────────────────────────

async def _seed_journal(app_config):
    await FileArchiveStore(app_config.archive_dir).save_journal_entry(
        "ada", JournalEntry(id="j1", title="Salt and Sun", content="The lake again.",
                            participants=["gigi"]))


class TestJournalDirectives:
    @pytest.mark.asyncio
    async def test_journal_lists_entries(self, app_config, monkeypatch):
        await _seed_journal(app_config)
        _, channel = await _run(app_config, [":journal", ":quit"], monkeypatch)
        listing = next(m for m, _ in channel.notes if m.startswith("Journal entries"))
        assert "j1  Salt and Sun (0 comments)" in listing

    @pytest.mark.asyncio
    async def test_empty_journal(self, app_config, monkeypatch):
        _, channel = await _run(app_config, [":journal", ":quit"], monkeypatch)
        assert ("The journal is empty", "info") in channel.notes

    @pytest.mark.asyncio
    async def test_comment_reply_sent(self, app_config, monkeypatch):
        await _seed_journal(app_config)

        async def fake_reply(self, entry, comments, personas, force=None, patches=None):
            author = force or personas[0]
            return Comment(id=f"comment-{author.id}", author_id=author.id,
                           author_name=author.display_name, content="Thank you!")

        monkeypatch.setattr(Generator, "comment_reply", fake_reply)
        app, channel = await _run(app_config, [":comment j1 Lovely entry", ":quit"],
                                  monkeypatch)
        assert ("Gigi", "Thank you!") in channel.sent
        entry = await app.session.store.get_journal_entry("ada", "j1")
        assert entry.comments[0].content == "Lovely entry"
        assert app.session.history[-1].role == "system"

    @pytest.mark.asyncio
    async def test_comment_unknown_entry(self, app_config, monkeypatch):
        _, channel = await _run(app_config, [":comment nope hi", ":quit"], monkeypatch)
        assert ("No journal entry 'nope'", "error") in channel.notes

    @pytest.mark.asyncio
    async def test_comment_usage(self, app_config, monkeypatch):
        _, channel = await _run(app_config, [":comment j1", ":quit"], monkeypatch)
        assert ("Usage: :comment <entry-id> <text>", "error") in channel.notes

    @pytest.mark.asyncio
    async def test_comment_blocked_while_frozen(self, app_config, monkeypatch):
        await _seed_journal(app_config)
        _, channel = await _run(app_config, [":freeze", ":comment j1 hi", ":quit"],
                                monkeypatch)
        assert (FROZEN_TEXT, "info") in channel.notes
        entry = await FileArchiveStore(app_config.archive_dir).get_journal_entry("ada", "j1")
        assert entry.comments == []
