"""Responder selection — which persona answers, and who might chime in."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import Protocol

from models import Persona

BANTER_PROBABILITY = 0.45

_MENTION_RE = re.compile(r"@(\w+)")


class RandomSource(Protocol):
    def next(self) -> float:
        """Return a float in [0.0, 1.0)."""
        ...


class DefaultRandom:
    """RandomSource backed by the random module."""

    def __init__(self, seed: int | None = None):
        self._rng = random.Random(seed)  # noqa: S311

    def next(self) -> float:
        return self._rng.random()


class SequenceRandom:
    """RandomSource replaying a fixed sequence (cycles when exhausted)."""

    def __init__(self, values: list[float]):
        if not values:
            raise ValueError("SequenceRandom needs at least one value")
        self._values = list(values)
        self._index = 0

    def next(self) -> float:
        value = self._values[self._index % len(self._values)]
        self._index += 1
        return value


@dataclass
class Selection:
    responder: Persona
    banterer: Persona | None = None
    explicit: bool = False  # addressed with an @mention


def _find_by_name(personas: list[Persona], name: str) -> Persona | None:
    name = name.lower()
    for p in personas:
        if p.display_name.lower() == name:
            return p
    return None


def _mentions_name(text: str, name: str) -> bool:
    """Whole-word, case-insensitive match of a display name."""
    return re.search(rf"\b{re.escape(name)}\b", text, re.IGNORECASE) is not None


def mentioned_persona(text: str, personas: list[Persona]) -> Persona | None:
    """First @mention in the text that names a known persona."""
    for match in _MENTION_RE.finditer(text):
        target = _find_by_name(personas, match.group(1))
        if target is not None:
            return target
    return None


def _other(personas: list[Persona], persona: Persona) -> Persona | None:
    for p in personas:
        if p.id != persona.id:
            return p
    return None


def select_responder(
    input_text: str,
    personas: list[Persona],
    primary: Persona,
) -> Selection:
    """Pick the responder and an optional banterer for one user turn.

    1. @mention of a known persona: that persona answers alone.
    2. Display name used as a plain keyword: that persona answers, the
       other one may banter.
    3. Otherwise the primary answers, the other one may banter.
    """
    target = mentioned_persona(input_text, personas)
    if target is not None:
        return Selection(responder=target, banterer=None, explicit=True)

    for p in personas:
        if p.display_name and _mentions_name(input_text, p.display_name):
            return Selection(responder=p, banterer=_other(personas, p))

    return Selection(responder=primary, banterer=_other(personas, primary))


def should_banter(rng: RandomSource, probability: float = BANTER_PROBABILITY) -> bool:
    """One draw against the banter probability."""
    return rng.next() < probability
