"""Session controller — one owner's conversation with their personas.

Owns the turn history, session overrides and the staged attachment.
Foreground turns are strictly sequential (TurnGuard); the idle scheduler
checks the same guard and skips its tick while a turn is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from agentic import DEFAULT_MAX_ROUNDS, run_tool_loop
from archive import RELATED_HISTORY_TURNS, ArchiveStore, Comment, JournalEntry, new_id
from commands import DEFAULT_SENTINEL, HelpCommand, JournalCommand, SetCommand, try_parse
from context import InstructionComposer
from generation import Generator
from models import Attachment, Persona, SessionOverrides, Turn, primary_persona, turns_to_messages
from providers import LLMProvider, LLMResponse
from responder import (
    BANTER_PROBABILITY,
    DefaultRandom,
    RandomSource,
    mentioned_persona,
    select_responder,
    should_banter,
)
from retry import AuthenticationError, ProviderError, RetryPolicy
from tools import ToolRegistry

log = logging.getLogger(__name__)

AUTH_ERROR_TEXT = "Sorry, your API key is invalid. Please update it in your configuration."
ERROR_TEXT = "Sorry, I encountered an error. {error}"
CONNECT_ERROR_TEXT = "Could not connect to the AI. Please check your API key and network."
WRITING_NOW_TEXT = "Writing now!"
SETTINGS_HEADER = "Settings updated for this session:"
BANTER_NUDGE = (
    "[{responder} just replied. As {banterer}, add a brief, natural comment of "
    "your own to the conversation.]"
)
COMMENT_FOLLOWUP_PROBABILITY = 0.3
COMMENT_THREAD_TURNS = 5
COMMENT_THREAD_TEXT = (
    "A new comment thread has unfolded in your journal. Here are the latest "
    "messages:\n\n---\n{thread}\n---\n\nWhat are your thoughts?"
)


class UnknownJournalEntry(LookupError):
    """Raised when a comment targets a journal entry that doesn't exist."""


class Notifier(Protocol):
    """Out-of-band notification sink (toasts in a UI, lines on a console)."""

    def notify(self, message: str, kind: str = "info") -> None: ...


class LogNotifier:
    """Notifier that only logs. Used when no channel is attached."""

    def notify(self, message: str, kind: str = "info") -> None:
        log.info("[%s] %s", kind, message)


class TurnGuard:
    """Mutual exclusion between foreground turns and idle generations."""

    def __init__(self):
        self._lock = asyncio.Lock()

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> TurnGuard:
        await self._lock.acquire()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._lock.release()


class SessionController:
    """Turns user input into history turns via commands, tools and banter."""

    def __init__(
        self,
        owner_id: str,
        personas: list[Persona],
        provider: LLMProvider,
        store: ArchiveStore,
        tool_registry: ToolRegistry,
        retry: RetryPolicy,
        composer: InstructionComposer,
        generator: Generator,
        notifier: Notifier | None = None,
        rng: RandomSource | None = None,
        runtime_patch: Mapping[str, str] | None = None,
        max_tool_rounds: int = DEFAULT_MAX_ROUNDS,
        banter_probability: float = BANTER_PROBABILITY,
        banter_delay: float = 1.2,
        command_sentinel: str = DEFAULT_SENTINEL,
        api_timeout: float = 600.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_turn: Callable[[Turn], Any] | None = None,
    ):
        self.primary = primary_persona(personas)
        self.owner_id = owner_id
        self.personas = list(personas)
        self.provider = provider
        self.store = store
        self.tools = tool_registry
        self.retry = retry
        self.composer = composer
        self.generator = generator
        self.notifier = notifier or LogNotifier()
        self.rng = rng or DefaultRandom()
        self.runtime_patch: Mapping[str, str] = runtime_patch if runtime_patch is not None else {}
        self.max_tool_rounds = max_tool_rounds
        self.banter_probability = banter_probability
        self.banter_delay = banter_delay
        self.command_sentinel = command_sentinel
        self.api_timeout = api_timeout
        self._sleep = sleep
        self.on_turn = on_turn

        self.history: list[Turn] = []
        self.overrides = SessionOverrides()
        self.guard = TurnGuard()
        self.initialized = False
        self._staged: Attachment | None = None
        self._banter_task: asyncio.Task | None = None

    # ─── Lifecycle ───────────────────────────────────────────────

    @property
    def turn_in_flight(self) -> bool:
        return self.guard.locked()

    def patch_for(self, persona: Persona) -> str | None:
        return self.runtime_patch.get(persona.id) or None

    async def initialize(self) -> list[Turn]:
        """Seed history from the archive; greet when it is empty."""
        if self.initialized:
            return []
        self.history = await self.store.get_chat_history(self.owner_id)
        self.initialized = True
        log.info("Session for %s initialized (%d turns)", self.owner_id, len(self.history))
        if self.history:
            return []

        try:
            text = await self.generator.welcome(self.primary)
        except ProviderError as e:
            log.warning("Welcome message failed: %s", e)
            return [self._append(Turn(role="system", content=CONNECT_ERROR_TEXT))]
        turn = self._append(Turn(role="agent", content=text,
                                 author_persona_id=self.primary.id))
        await self._save()
        return [turn]

    async def restart(self) -> list[Turn]:
        """Cancel timers, reset overrides, reload history from the archive."""
        self._cancel_timers()
        async with self.guard:
            self.initialized = False
            self.overrides.reset()
            self._staged = None
            self.history = []
            return await self.initialize()

    def close(self) -> None:
        self._cancel_timers()

    def _cancel_timers(self) -> None:
        if self._banter_task is not None and not self._banter_task.done():
            self._banter_task.cancel()
        self._banter_task = None

    def stage_attachment(self, attachment: Attachment) -> None:
        """Attach an image to the next user turn (replaces any staged one)."""
        self._staged = attachment
        log.info("Staged attachment %s (%s)", attachment.filename or "<unnamed>",
                 attachment.media_type)

    @property
    def staged_attachment(self) -> Attachment | None:
        return self._staged

    # ─── Turns ───────────────────────────────────────────────────

    def _append(self, turn: Turn) -> Turn:
        self.history.append(turn)
        if self.on_turn is not None:
            self.on_turn(turn)
        return turn

    async def _save(self) -> None:
        await self.store.save_chat_history(self.owner_id, self.history)

    async def handle_input(self, text: str) -> list[Turn]:
        """Process one line of user input; return the turns it created."""
        async with self.guard:
            if not self.initialized:
                await self.initialize()
            start = len(self.history)

            command = try_parse(text, self.command_sentinel)
            if command is not None:
                await self._run_command(command)
                return self.history[start:]

            if not (text or "").strip() and self._staged is None:
                return []

            try:
                await self._run_turn(text.strip())
            except AuthenticationError as e:
                log.warning("Turn failed, credentials rejected: %s", e)
                self._append(Turn(role="system", content=AUTH_ERROR_TEXT))
            except ProviderError as e:
                log.error("Turn failed: %s", e)
                self._append(Turn(role="system", content=ERROR_TEXT.format(error=e)))
            await self._save()
            return self.history[start:]

    async def _run_command(self, command: HelpCommand | JournalCommand | SetCommand) -> None:
        if isinstance(command, HelpCommand):
            self._append(Turn(role="system", content=command.text))
        elif isinstance(command, SetCommand):
            changes = command.apply(self.overrides)
            if changes:
                lines = "\n".join(f"- {c}" for c in changes)
                self._append(Turn(role="system", content=f"{SETTINGS_HEADER}\n{lines}"))
        elif isinstance(command, JournalCommand):
            self._append(Turn(role="agent", content=WRITING_NOW_TEXT,
                              author_persona_id=self.primary.id))
            try:
                await self._forced_journal(command)
            except AuthenticationError as e:
                log.warning("Forced journal failed, credentials rejected: %s", e)
                self._append(Turn(role="system", content=AUTH_ERROR_TEXT))
            await self._save()

    async def _forced_journal(self, command: JournalCommand) -> None:
        title, content = await self.generator.forced_journal(
            self.primary, topic=command.topic, chapter=command.chapter,
            patch=self.patch_for(self.primary),
        )
        entry = JournalEntry(
            id=new_id("journal"),
            title=title,
            content=content,
            kind="reflection",
            participants=[self.primary.id],
            related_history=self.history[-RELATED_HISTORY_TURNS:],
        )
        await self.store.save_journal_entry(self.owner_id, entry)
        self.notifier.notify(
            f'{self.primary.display_name} wrote a new journal entry: "{title}".', "info")

    async def _run_turn(self, text: str) -> None:
        attachment, self._staged = self._staged, None
        self._append(Turn(role="user", content=text, attachment=attachment))

        selection = select_responder(text, self.personas, self.primary)
        responder = selection.responder
        instruction = self.composer.compose(
            responder, self.overrides, self.patch_for(responder))
        messages = turns_to_messages(self.history)

        def _on_response(response: LLMResponse) -> None:
            if response.tool_calls:
                self.notifier.notify(f"{responder.display_name} is working on that...", "info")

        reply = await run_tool_loop(
            self.provider,
            messages,
            instruction,
            self.tools.get_schemas(),
            self.tools,
            self.retry,
            max_rounds=self.max_tool_rounds,
            timeout=self.api_timeout,
            on_response=_on_response,
        )
        self._append(Turn(role="agent", content=reply, author_persona_id=responder.id))

        banterer = selection.banterer
        if banterer is None or not should_banter(self.rng, self.banter_probability):
            return
        await self._banter(responder, banterer)

    async def _banter(self, responder: Persona, banterer: Persona) -> None:
        instruction = self.composer.compose(banterer, runtime_patch=self.patch_for(banterer))
        messages = turns_to_messages(self.history)
        messages.append({
            "role": "user",
            "content": BANTER_NUDGE.format(responder=responder.display_name,
                                           banterer=banterer.display_name),
        })
        text = await self.generator.banter(banterer, messages, instruction)
        if not text:
            return

        self._banter_task = asyncio.create_task(self._sleep(self.banter_delay))
        task = self._banter_task
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()
            self._banter_task = None
        if task.cancelled():
            log.debug("Banter from %s cancelled", banterer.id)
            return
        self._append(Turn(role="agent", content=text, author_persona_id=banterer.id))

    # ─── Journal comments ────────────────────────────────────────

    async def comment_on_journal(self, entry_id: str, text: str) -> list[Comment]:
        """Post an owner comment under a journal entry and collect persona replies.

        An @mention forces the responder. Without one, the second persona may
        add a follow-up. When anyone replied, the latest thread lands in the
        chat as a system turn. Returns the comments added, the owner's first.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Comment must not be empty")

        async with self.guard:
            if not self.initialized:
                await self.initialize()
            comment = Comment(id=new_id("comment"), author_id=self.owner_id,
                              author_name=self.owner_id, content=text)
            entry = await self.store.add_journal_comment(self.owner_id, entry_id, comment)
            if entry is None:
                raise UnknownJournalEntry(entry_id)
            self.notifier.notify("Comment posted!", "success")
            added = [comment]

            try:
                await self._comment_replies(entry, mentioned_persona(text, self.personas), added)
            except AuthenticationError as e:
                log.warning("Comment reply failed, credentials rejected: %s", e)
                self._append(Turn(role="system", content=AUTH_ERROR_TEXT))
                await self._save()
            return added

    async def _comment_replies(
        self, entry: JournalEntry, force: Persona | None, added: list[Comment],
    ) -> None:
        patches = dict(self.runtime_patch)
        reply = await self.generator.comment_reply(
            entry, entry.comments, self.personas, force=force, patches=patches)
        if reply is None:
            return
        entry = await self.store.add_journal_comment(self.owner_id, entry.id, reply)
        added.append(reply)
        self.notifier.notify(
            f"{force.display_name} replied!" if force else "An AI companion has replied!",
            "info")

        second = next((p for p in self.personas if not p.is_primary), None)
        if (second is not None and reply.author_id != second.id and force is None
                and self.rng.next() < COMMENT_FOLLOWUP_PROBABILITY):
            followup = await self.generator.comment_reply(
                entry, entry.comments, self.personas, force=second, patches=patches)
            if followup is not None:
                entry = await self.store.add_journal_comment(self.owner_id, entry.id, followup)
                added.append(followup)
                self.notifier.notify(f"{second.display_name} also commented!", "info")

        thread = "\n".join(
            f"**{c.author_name}:** {c.content}"
            for c in entry.comments[-COMMENT_THREAD_TURNS:]
        )
        self._append(Turn(role="system", content=COMMENT_THREAD_TEXT.format(thread=thread)))
        await self._save()
