"""Idle scheduler — daydreams while the user is away.

After a presence-dependent quiet period the scheduler writes a journal
entry (a solo reflection, or sometimes a dialogue between two personas),
then keeps doing so every daydream interval until the user is active
again. It never runs while a foreground turn holds the session guard.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from archive import RELATED_HISTORY_TURNS, ArchiveStore, JournalEntry, new_id
from generation import Generator
from models import PRESENCE_STATES
from responder import DefaultRandom, RandomSource
from retry import ProviderError
from session import LogNotifier, Notifier, SessionController

log = logging.getLogger(__name__)

DIALOGUE_PROBABILITY = 0.3


class IdleScheduler:
    def __init__(
        self,
        session: SessionController,
        generator: Generator,
        store: ArchiveStore,
        notifier: Notifier | None = None,
        presence_getter: Callable[[], str] | None = None,
        rng: RandomSource | None = None,
        idle_timeout: float = 300.0,
        away_delay: float = 10.0,
        daydream_interval: float = 300.0,
        enabled: bool = True,
        frozen_getter: Callable[[], bool] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        dialogue_probability: float = DIALOGUE_PROBABILITY,
    ):
        self.session = session
        self.generator = generator
        self.store = store
        self.notifier = notifier or LogNotifier()
        self._presence_getter = presence_getter
        self._presence = "online"
        self.rng = rng or DefaultRandom()
        self.idle_timeout = idle_timeout
        self.away_delay = away_delay
        self.daydream_interval = daydream_interval
        self.enabled = enabled
        self._frozen_getter = frozen_getter
        self._sleep = sleep
        self._clock = clock
        self.dialogue_probability = dialogue_probability

        self.last_activity = clock()
        self.ticks = 0  # completed generations
        self._task: asyncio.Task | None = None

    @property
    def presence(self) -> str:
        if self._presence_getter is not None:
            return self._presence_getter()
        return self._presence

    @property
    def frozen(self) -> bool:
        return bool(self._frozen_getter and self._frozen_getter())

    @property
    def idle_for(self) -> float:
        return self._clock() - self.last_activity

    @property
    def scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    # ─── Scheduling ──────────────────────────────────────────────

    def record_activity(self) -> None:
        """User did something: restart the quiet period."""
        self.last_activity = self._clock()
        self._reschedule()

    def set_presence(self, presence: str) -> None:
        if presence not in PRESENCE_STATES:
            raise ValueError(f"Invalid presence: {presence!r}")
        self._presence = presence
        log.info("Presence set to %s", presence)
        self._reschedule()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if enabled:
            self._reschedule()
        else:
            self._cancel()

    def stop(self) -> None:
        self._cancel()

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _delay(self) -> float | None:
        presence = self.presence
        if presence == "away":
            return self.away_delay
        if presence == "online":
            return self.idle_timeout
        return None  # busy

    def _reschedule(self) -> None:
        self._cancel()
        if not self.enabled:
            return
        delay = self._delay()
        if delay is None:
            log.debug("Busy, idle timer not scheduled")
            return
        self._task = asyncio.create_task(self._run(delay))

    async def _run(self, delay: float) -> None:
        await self._sleep(delay)
        while True:
            await self.tick()
            await self._sleep(self.daydream_interval)

    # ─── Generation ──────────────────────────────────────────────

    async def tick(self) -> bool:
        """One daydream attempt. Returns True if a journal entry was written."""
        if not self.enabled or self.frozen or not self.session.history:
            return False
        if self.session.guard.locked():
            log.debug("Turn in flight, skipping daydream")
            return False

        async with self.session.guard:
            try:
                entry = await self._generate()
            except ProviderError as e:
                log.warning("Daydream generation failed: %s", e)
                return False
            except Exception:
                log.exception("Daydream failed")
                return False
        if entry is None:
            return False
        self.ticks += 1
        return True

    async def _generate(self) -> JournalEntry | None:
        session = self.session
        owner = session.owner_id
        history = list(session.history)
        events = await self.store.list_events(owner)
        tags = await self.store.list_tags(owner)
        primary = session.primary
        others = [p for p in session.personas if p.id != primary.id]

        if others and self.rng.next() < self.dialogue_probability:
            second = others[0]
            dialogue = await self.generator.dialogue(
                primary, second, history, events, tags,
                patches=dict(session.runtime_patch),
            )
            if dialogue is None:
                log.info("Dialogue generation produced nothing")
                return None
            entry = JournalEntry(
                id=new_id("journal"),
                title=dialogue.title,
                content=dialogue.content,
                kind="conversation",
                participants=dialogue.participants,
                related_history=history[-RELATED_HISTORY_TURNS:],
            )
            message = (f"{primary.display_name} and {second.display_name} "
                       f'had a conversation: "{entry.title}".')
        else:
            title, content = await self.generator.reflection(
                primary, history, events, tags, patch=session.patch_for(primary),
            )
            entry = JournalEntry(
                id=new_id("journal"),
                title=title,
                content=content,
                kind="reflection",
                participants=[primary.id],
                related_history=history[-RELATED_HISTORY_TURNS:],
            )
            message = f'{primary.display_name} wrote a new journal entry: "{entry.title}".'

        await self.store.save_journal_entry(owner, entry)
        log.info("Daydream saved (%s): %s", entry.kind, entry.title)
        self.notifier.notify(message, "info")
        return entry
