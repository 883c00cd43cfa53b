"""Session command parser.

Recognizes sentinel-prefixed directives typed into the chat box:

    /gigi help
    /gigi journal [--chapter] [--topic "<text>"]
    /gigi set [--length terse|normal|verbose] [--spice 1..5]

Anything else (including an unknown subcommand) is plain chat input.
Invalid flag values are ignored one by one; the command still parses.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass

from models import MAX_CONTENT_LEVEL, MIN_CONTENT_LEVEL, RESPONSE_LENGTHS, SessionOverrides

log = logging.getLogger(__name__)

DEFAULT_SENTINEL = "/gigi"

HELP_TEXT = """\
**Commands:**
- `{s} journal [--chapter] [--topic "<topic>"]`: Writes a journal entry now.
  - `--chapter`: Makes the entry chapter-length.
  - `--topic`: Specifies a topic for the entry.
- `{s} set [--length <mode>] [--spice <level>]`: Changes behavior for this session.
  - `--length`: 'terse', 'normal', or 'verbose'.
  - `--spice`: 1 (Tame) to 5 (Unfiltered).
- `{s} help`: Shows this help message."""

_TOPIC_RE = re.compile(r'--topic\s+"([^"]+)"')


@dataclass
class HelpCommand:
    text: str


@dataclass
class JournalCommand:
    chapter: bool = False
    topic: str | None = None


@dataclass
class SetCommand:
    response_length: str | None = None
    content_level: int | None = None

    def apply(self, overrides: SessionOverrides) -> list[str]:
        """Apply to session overrides; return human-readable changes."""
        changes = []
        if self.response_length is not None:
            overrides.response_length = self.response_length
            changes.append(f"Response length set to {self.response_length}.")
        if self.content_level is not None:
            overrides.content_level_override = self.content_level
            changes.append(f"Spice level set to {self.content_level}.")
        return changes


Command = HelpCommand | JournalCommand | SetCommand


def _split(text: str) -> list[str]:
    try:
        return shlex.split(text)
    except ValueError:
        # Unbalanced quotes: fall back to whitespace
        return text.split()


def _flag_value(args: list[str], flag: str) -> str | None:
    if flag not in args:
        return None
    idx = args.index(flag)
    if idx + 1 >= len(args):
        return None
    return args[idx + 1]


def _parse_set(args: list[str]) -> SetCommand:
    cmd = SetCommand()

    length = _flag_value(args, "--length")
    if length is not None:
        if length in RESPONSE_LENGTHS:
            cmd.response_length = length
        else:
            log.info("Ignoring invalid --length value %r", length)

    spice = _flag_value(args, "--spice")
    if spice is not None:
        try:
            level = int(spice)
        except ValueError:
            level = None
        if level is not None and MIN_CONTENT_LEVEL <= level <= MAX_CONTENT_LEVEL:
            cmd.content_level = level
        else:
            log.info("Ignoring invalid --spice value %r", spice)

    return cmd


def _parse_journal(text: str, args: list[str]) -> JournalCommand:
    topic = None
    match = _TOPIC_RE.search(text)
    if match:
        topic = match.group(1)
    else:
        value = _flag_value(args, "--topic")
        if value and not value.startswith("--"):
            topic = value
    return JournalCommand(chapter="--chapter" in args, topic=topic)


def try_parse(text: str, sentinel: str = DEFAULT_SENTINEL) -> Command | None:
    """Return a Command for directive input, None for plain chat."""
    stripped = (text or "").strip()
    if not stripped.startswith(sentinel):
        return None
    rest = stripped[len(sentinel):]
    # "/gigiwhatever" is not the sentinel
    if rest and not rest[0].isspace():
        return None

    args = _split(rest)
    if not args:
        return None
    sub, params = args[0].lower(), args[1:]

    if sub == "help":
        return HelpCommand(text=HELP_TEXT.format(s=sentinel))
    if sub == "journal":
        return _parse_journal(rest, params)
    if sub == "set":
        return _parse_set(params)

    log.debug("Unknown subcommand %r, treating as chat", sub)
    return None
