#!/usr/bin/env python3
"""Archivist — multi-persona life-archive interviewer.

Entry point. Wires config → providers → archive store → tools → session
controller → idle scheduler → console channel, then runs the input loop.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import logging
import logging.handlers
import os
import sys
from io import BytesIO
from pathlib import Path
from typing import Any

# Add archivist directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from PIL import Image, UnidentifiedImageError

from archive import FileArchiveStore
from channels.cli import CLIChannel
from config import Config, ConfigError, load_config
from context import InstructionComposer
from generation import Generator
from idle import IdleScheduler
from models import PRESENCE_STATES, Attachment, Turn
from providers import create_provider
from responder import DefaultRandom
from retry import CredentialSignal, RetryPolicy
from session import SessionController, UnknownJournalEntry
from tools import ToolRegistry
from tools import archive as archive_tools
from tools import inner_voice as inner_voice_tools

log = logging.getLogger("archivist")

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

CONSOLE_HELP = """\
Console directives:
  :online | :away | :busy     set presence
  :attach <path>              attach an image to your next message
  :patch <persona> [text]     set (or clear) a runtime directive
  :daydream on|off            toggle idle journaling
  :freeze | :thaw             pause conversation and idle journaling
  :journal                    list journal entries
  :comment <entry-id> <text>  comment on a journal entry (@Name picks who answers)
  :restart                    restart the session
  :quit                       exit"""
FROZEN_TEXT = "The archive is frozen. Use :thaw to continue."


class AttachmentError(Exception):
    """Raised when a file can't be staged as an image attachment."""


def load_image_attachment(path: str | Path) -> Attachment:
    """Read an image file as a base64 attachment. The bytes are not altered."""
    p = Path(path).expanduser()
    try:
        data = p.read_bytes()
    except OSError as e:
        raise AttachmentError(f"Cannot read {p}: {e}") from e
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
    except UnidentifiedImageError as e:
        raise AttachmentError(f"Not an image: {p.name}") from e
    media_type = Image.MIME.get(fmt or "", "")
    if media_type not in SUPPORTED_IMAGE_TYPES:
        raise AttachmentError(f"Unsupported image type {media_type or fmt!r}: {p.name}")
    return Attachment(
        media_type=media_type,
        data=base64.b64encode(data).decode("ascii"),
        filename=p.name,
    )


class ArchivistApp:
    def __init__(self, config: Config, channel: Any = None):
        self.config = config
        self.running = True
        self.channel = channel or CLIChannel(sender=config.owner)
        self.signal = CredentialSignal()
        self.patches: dict[str, str] = dict(config.runtime_patches)
        self.presence = "online"
        self.frozen = False
        self.session: SessionController | None = None
        self.idle: IdleScheduler | None = None
        self._pending: set[asyncio.Task] = set()

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr stays quiet so it doesn't interleave with the chat
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.WARNING)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "anthropic", "openai", "PIL"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _on_credentials_rejected(self, error: BaseException) -> None:
        self.channel.notify("The API key was rejected. Update it in your configuration.", "error")

    def build(self) -> None:
        """Construct every component from config."""
        cfg = self.config
        personas = cfg.personas

        provider = create_provider(cfg.model_config("primary"), cfg.model_api_key("primary"))
        banter_provider = None
        if cfg.has_model("banter"):
            banter_provider = create_provider(cfg.model_config("banter"),
                                              cfg.model_api_key("banter"))

        self.signal.subscribe(self._on_credentials_rejected)
        retry = RetryPolicy(
            signal=self.signal,
            max_attempts=cfg.retry_max_attempts,
            base_delay=cfg.retry_base_delay,
            max_jitter=cfg.retry_max_jitter,
        )
        rng = DefaultRandom()
        composer = InstructionComposer()
        store = FileArchiveStore(cfg.archive_dir)
        generator = Generator(
            provider, retry, composer, rng,
            timeout=cfg.api_timeout,
            banter_provider=banter_provider,
            banter_max_tokens=cfg.banter_max_tokens,
        )

        registry = ToolRegistry()
        self.session = SessionController(
            owner_id=cfg.owner,
            personas=personas,
            provider=provider,
            store=store,
            tool_registry=registry,
            retry=retry,
            composer=composer,
            generator=generator,
            notifier=self.channel,
            rng=rng,
            runtime_patch=self.patches,
            max_tool_rounds=cfg.max_tool_rounds,
            banter_probability=cfg.banter_probability,
            banter_delay=cfg.banter_delay,
            command_sentinel=cfg.command_sentinel,
            api_timeout=cfg.api_timeout,
            on_turn=self._render,
        )

        archive_tools.configure(
            store, cfg.owner, notifier=self.channel,
            history_getter=lambda: self.session.history,
            author_id=self.session.primary.id,
        )
        inner_voice_tools.configure(generator, personas, notifier=self.channel)
        registry.register_many(archive_tools.TOOLS)
        registry.register_many(inner_voice_tools.TOOLS)
        log.info("Tools: %s", ", ".join(registry.tool_names))

        self.idle = IdleScheduler(
            session=self.session,
            generator=generator,
            store=store,
            notifier=self.channel,
            presence_getter=lambda: self.presence,
            rng=rng,
            idle_timeout=cfg.idle_timeout,
            away_delay=cfg.away_delay,
            daydream_interval=cfg.daydream_interval,
            enabled=cfg.daydreaming,
            frozen_getter=lambda: self.frozen,
            dialogue_probability=cfg.dialogue_probability,
        )

    # ─── Output ──────────────────────────────────────────────────

    def _author_name(self, turn: Turn) -> str:
        if turn.role == "user":
            return "You"
        if turn.role == "system":
            return "System"
        for p in self.session.personas:
            if p.id == turn.author_persona_id:
                return p.display_name
        return "Agent"

    def _render(self, turn: Turn) -> None:
        if turn.role == "user":
            return  # already on screen
        task = asyncio.get_running_loop().create_task(
            self.channel.send(self._author_name(turn), turn.content))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ─── Console directives ──────────────────────────────────────

    async def _handle_directive(self, text: str) -> None:
        cmd, _, arg = text[1:].partition(" ")
        cmd, arg = cmd.lower(), arg.strip()

        if cmd in PRESENCE_STATES:
            self.presence = cmd
            self.idle.set_presence(cmd)
            self.channel.notify(f"Presence: {cmd}", "info")
        elif cmd == "attach":
            try:
                attachment = load_image_attachment(arg)
            except AttachmentError as e:
                self.channel.notify(str(e), "error")
                return
            self.session.stage_attachment(attachment)
            self.channel.notify(f"Attached {attachment.filename}", "success")
        elif cmd == "patch":
            persona_id, _, directive = arg.partition(" ")
            if not any(p.id == persona_id for p in self.session.personas):
                self.channel.notify(f"Unknown persona: {persona_id!r}", "error")
            elif directive.strip():
                self.patches[persona_id] = directive.strip()
                self.channel.notify(f"Runtime directive set for {persona_id}", "success")
            else:
                self.patches.pop(persona_id, None)
                self.channel.notify(f"Runtime directive cleared for {persona_id}", "info")
        elif cmd == "daydream":
            enabled = arg.lower() in ("on", "true", "1", "yes")
            self.idle.set_enabled(enabled)
            self.channel.notify(f"Daydreaming {'on' if enabled else 'off'}", "info")
        elif cmd in ("freeze", "thaw"):
            self.frozen = cmd == "freeze"
            self.channel.notify("Archive frozen" if self.frozen
                                else "Archive thawed", "info")
        elif cmd == "journal":
            await self._list_journal()
        elif cmd == "comment":
            await self._comment(arg)
        elif cmd == "restart":
            await self.session.restart()
            self.channel.notify("Session restarted", "info")
        elif cmd in ("quit", "exit"):
            self.running = False
        else:
            self.channel.notify(CONSOLE_HELP, "info")

    async def _list_journal(self) -> None:
        entries = await self.session.store.list_journal(self.config.owner)
        if not entries:
            self.channel.notify("The journal is empty", "info")
            return
        lines = [f"  {e.id}  {e.title} ({len(e.comments)} comments)" for e in entries]
        self.channel.notify("Journal entries:\n" + "\n".join(lines), "info")

    async def _comment(self, arg: str) -> None:
        entry_id, _, text = arg.partition(" ")
        if not entry_id or not text.strip():
            self.channel.notify("Usage: :comment <entry-id> <text>", "error")
            return
        if self.frozen:
            self.channel.notify(FROZEN_TEXT, "info")
            return
        try:
            added = await self.session.comment_on_journal(entry_id, text)
        except UnknownJournalEntry:
            self.channel.notify(f"No journal entry {entry_id!r}", "error")
            return
        for c in added[1:]:
            await self.channel.send(c.author_name, c.content)

    # ─── Main loop ───────────────────────────────────────────────

    async def run(self) -> None:
        self._setup_logging()
        log.info("Starting Archivist for '%s'", self.config.owner)
        self.build()
        await self.channel.connect()
        await self.session.initialize()
        self.idle.record_activity()

        try:
            async for msg in self.channel.receive():
                self.idle.record_activity()
                text = msg.text.strip()
                if text.startswith(":"):
                    await self._handle_directive(text)
                elif self.frozen:
                    self.channel.notify(FROZEN_TEXT, "info")
                else:
                    await self.session.handle_input(text)
                if not self.running:
                    break
        finally:
            self.idle.stop()
            self.session.close()
            if self._pending:
                await asyncio.gather(*self._pending, return_exceptions=True)
            log.info("Archivist stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="Archivist — multi-persona life-archive interviewer",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("ARCHIVIST_CONFIG", "./archivist.toml"),
        help="Path to config file (default: $ARCHIVIST_CONFIG or ./archivist.toml)",
    )
    parser.add_argument(
        "--no-daydream", action="store_true",
        help="Disable idle journaling for this run",
    )
    args = parser.parse_args()

    overrides = {}
    if args.no_daydream:
        overrides["idle.daydreaming"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    app = ArchivistApp(config)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
