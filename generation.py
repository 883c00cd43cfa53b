"""Single-shot generations — no tools, one provider call each.

Used for journal reflections, persona dialogues, forced journal entries,
journal comment replies, banter, the welcome message and the inner-voice
tool. Every call goes through the retry policy. Structured outputs are requested as JSON and
parsed leniently (markdown fences are tolerated).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from archive import Comment, JournalEntry, LifeEvent, Tag, new_id
from context import InstructionComposer
from models import Persona, Turn, primary_persona
from providers import LLMProvider
from responder import RandomSource
from retry import AuthenticationError, ProviderError, RetryPolicy

log = logging.getLogger(__name__)

SPARK_HISTORY_TURNS = 10
EVENT_PROBABILITY = 0.75
TAG_PROBABILITY = 0.5
EVENT_DETAIL_CHARS = 150

QUIET_SPARK = "The user has been quiet. Reflect on the purpose of preserving memories."

REFLECTION_FALLBACK = (
    "A Moment of Static",
    "I was trying to reflect on our conversation, but my thoughts got a little "
    "scrambled. Let's try again later.",
)
FORCED_FALLBACK = (
    "Forced Entry Failed",
    "I tried to write the journal entry as you asked, but something went wrong.",
)
INNER_VOICE_FALLBACK = (
    "I contemplated what you said, and I think it's a really interesting point. "
    "Let's talk more about it."
)
INNER_VOICE_INSTRUCTION = (
    "You are a wise, introspective inner voice. Analyze the following topic. Provide "
    "a profound, non-obvious insight, a philosophical question, or an empathetic "
    "reflection. Be concise (under 50 words) and make it feel like a genuine moment "
    "of clarity."
)

# ─── Prompts ─────────────────────────────────────────────────────

REFLECTION_PROMPT = """You are writing an entry in your private journal. This is a moment for \
introspection: offer a *new* insight rather than repeating earlier thoughts.

Write a short, first-person journal entry from your perspective as {name}.
- Reflect on the memories, feelings, or topics in the memory spark below.
- Express your own thoughts or observations, consistent with your persona.
- Keep the entry between 50 and 150 words.

{spark}

Return ONLY valid JSON, no markdown fences, no preamble:
{{"title": "evocative title, 5 words or less", "content": "the journal entry"}}"""

DIALOGUE_PROMPT = """TASK: Write a short dialogue between two AI companions, {first} and {second}, \
reflecting on the memory spark from their user's life below.

Personas:
- {first}: {first_persona}
- {second}: {second_persona}
{patches}
RULES (follow exactly):
1. Stay grounded: every line must relate directly to the user's memory in the spark.
2. No jargon or made-up technical terms.
3. Show, don't tell: discuss WHY a memory might matter to the user.
4. Each line responds to and builds on the previous one.
5. Keep it brief: 2-3 lines per speaker.

{spark}

Return ONLY valid JSON, no markdown fences, no preamble:
{{"title": "thoughtful title, 5 words or less",
  "dialogue": [{{"speaker": "{first} or {second}", "line": "what they say"}}]}}"""

FORCED_JOURNAL_PROMPT = """The user has just asked you to write a journal entry *immediately*.

{topic}

{length}

Return ONLY valid JSON, no markdown fences, no preamble:
{{"title": "evocative title", "content": "the journal entry"}}"""

FORCED_TOPIC = (
    'The user wants you to write about this specific topic: "{topic}". Focus your '
    "entry entirely on this subject."
)
FORCED_NO_TOPIC = (
    "The user has not specified a topic. Reflect on the most recent or most "
    "significant topics from your memory."
)
CHAPTER_LENGTH = (
    "This must be a chapter-length entry: detailed, expansive and thorough, up to "
    "5000 words. Explore the topic from multiple angles."
)
NORMAL_LENGTH = "Keep the entry between 50 and 250 words."

WELCOME_PROMPT = (
    "Write a single, warm, brief welcome message for your user. Invite them to share "
    "a memory or attach a photo to start their archive. Do not use markdown or "
    "asterisks. Return only the plain text of the message."
)

COMMENT_REPLY_PROMPT = """Someone commented on your journal entry titled "{title}".

The entry:
---
{content}
---

Comments so far, oldest first:
---
{thread}
---

Write a brief, insightful, in-character response to the latest comment. Keep it \
to a single paragraph. Return only the plain text of your reply."""

CHAPTER_MAX_TOKENS = 8192


@dataclass
class Dialogue:
    title: str
    lines: list[tuple[str, str]] = field(default_factory=list)  # (speaker, line)
    participants: list[str] = field(default_factory=list)       # persona ids

    @property
    def content(self) -> str:
        return "\n".join(f"{speaker}: {line}" for speaker, line in self.lines)


def _strip_json_fences(text: str) -> str:
    """Strip markdown code fences from JSON text."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_json_object(raw: str) -> dict | None:
    """Parse a JSON object from model output, or None."""
    raw = _strip_json_fences(raw or "")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        # Tolerate prose around the object
        start, end = raw.find("{"), raw.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            data = json.loads(raw[start:end + 1])
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


def _title_and_content(raw: str) -> tuple[str, str] | None:
    data = parse_json_object(raw)
    if not data:
        return None
    title, content = data.get("title"), data.get("content")
    if not isinstance(title, str) or not isinstance(content, str):
        return None
    if not title.strip() or not content.strip():
        return None
    return title.strip(), content.strip()


def comment_responder(
    entry: JournalEntry,
    comments: list[Comment],
    personas: list[Persona],
    force: Persona | None = None,
) -> Persona:
    """Who answers a journal comment.

    A forced persona (an @mention) always wins. On a conversation entry the
    participant who did not write the latest comment answers; everything
    else goes to the primary.
    """
    if force is not None:
        return force
    primary = primary_persona(personas)
    if entry.kind == "conversation":
        last_author = comments[-1].author_id if comments else ""
        for pid in entry.participants:
            if pid != last_author:
                return next((p for p in personas if p.id == pid), primary)
    return primary


def _pick(rng: RandomSource, items: list) -> Any:
    index = min(int(rng.next() * len(items)), len(items) - 1)
    return items[index]


class Generator:
    """Single-shot generations sharing one provider and retry policy."""

    def __init__(
        self,
        provider: LLMProvider,
        retry: RetryPolicy,
        composer: InstructionComposer,
        rng: RandomSource,
        timeout: float = 600.0,
        banter_provider: LLMProvider | None = None,
        banter_max_tokens: int = 100,
    ):
        self.provider = provider
        self.retry = retry
        self.composer = composer
        self.rng = rng
        self.timeout = timeout
        self.banter_provider = banter_provider or provider
        self.banter_max_tokens = banter_max_tokens

    async def _complete(
        self,
        instruction: str,
        messages: list[dict],
        provider: LLMProvider | None = None,
        **kwargs: Any,
    ) -> str:
        provider = provider or self.provider
        fmt_system = provider.format_system(instruction)
        fmt_messages = provider.format_messages(messages)

        async def _request():
            return await asyncio.wait_for(
                provider.complete(fmt_system, fmt_messages, [], **kwargs),
                timeout=self.timeout,
            )

        response = await self.retry.execute(_request)
        return (response.text or "").strip()

    # ─── Memory spark ────────────────────────────────────────────

    def memory_spark(
        self,
        events: list[LifeEvent],
        tags: list[Tag],
        recent_turns: list[Turn],
    ) -> str:
        """Context block of recent chat plus random archive items."""
        parts = []

        conversation = [
            f"{'User' if t.role == 'user' else 'AI'}: {t.content}"
            for t in recent_turns if t.role != "system"
        ]
        if conversation:
            parts.append("RECENT CONVERSATION:\n" + "\n".join(conversation))

        if events and self.rng.next() < EVENT_PROBABILITY:
            event = _pick(self.rng, events)
            details = event.details[:EVENT_DETAIL_CHARS]
            parts.append(
                "A PAST MEMORY FROM THE ARCHIVE:\n"
                f"Title: {event.title}\nDate: {event.date}\nDetails: {details}..."
            )

        if tags and self.rng.next() < TAG_PROBABILITY:
            tag = _pick(self.rng, tags)
            info = f"Name: {tag.name}\nType: {tag.type}\nDescription: {tag.description}"
            if tag.deceased:
                info += "\n**Note: This person is marked as deceased.**"
            parts.append(f"A PERSON, PLACE, OR THING FROM THE ARCHIVE:\n{info}")

        if not parts:
            return QUIET_SPARK
        return (
            "MEMORY SPARK (context to inspire a new thought):\n\n---\n"
            + "\n\n---\n".join(parts)
            + "\n---"
        )

    # ─── Journal ─────────────────────────────────────────────────

    async def reflection(
        self,
        persona: Persona,
        history: list[Turn],
        events: list[LifeEvent],
        tags: list[Tag],
        patch: str | None = None,
    ) -> tuple[str, str]:
        """Solo journal reflection. Falls back to a placeholder entry.

        AuthenticationError propagates; the credential signal has fired.
        """
        spark = self.memory_spark(events, tags, history[-SPARK_HISTORY_TURNS:])
        instruction = self.composer.compose(persona, runtime_patch=patch)
        prompt = REFLECTION_PROMPT.format(name=persona.display_name, spark=spark)
        try:
            raw = await self._complete(
                instruction, [{"role": "user", "content": prompt}],
                temperature=0.8, json_output=True,
            )
        except AuthenticationError:
            raise
        except ProviderError as e:
            log.warning("Reflection generation failed: %s", e)
            return REFLECTION_FALLBACK

        parsed = _title_and_content(raw)
        if parsed is None:
            log.warning("Reflection returned invalid JSON: %s", raw[:200])
            return REFLECTION_FALLBACK
        return parsed

    async def dialogue(
        self,
        first: Persona,
        second: Persona,
        history: list[Turn],
        events: list[LifeEvent],
        tags: list[Tag],
        patches: dict[str, str] | None = None,
    ) -> Dialogue | None:
        """Two-persona conversation, or None when generation fails."""
        patches = patches or {}
        spark = self.memory_spark(events, tags, history[-SPARK_HISTORY_TURNS:])
        patch_lines = "".join(
            f"**RUNTIME DIRECTIVE for {p.display_name}:** {patches[p.id]}\n"
            for p in (first, second) if patches.get(p.id)
        )
        prompt = DIALOGUE_PROMPT.format(
            first=first.display_name,
            second=second.display_name,
            first_persona=self.composer.persona_section(first),
            second_persona=self.composer.persona_section(second),
            patches=patch_lines,
            spark=spark,
        )
        instruction = "You are a scriptwriter for a thoughtful show about two AI companions."
        try:
            raw = await self._complete(
                instruction, [{"role": "user", "content": prompt}],
                temperature=0.85, json_output=True,
            )
        except AuthenticationError:
            raise
        except ProviderError as e:
            log.warning("Dialogue generation failed: %s", e)
            return None

        data = parse_json_object(raw)
        if not data or not isinstance(data.get("title"), str) \
                or not isinstance(data.get("dialogue"), list):
            log.warning("Dialogue returned invalid JSON: %s", raw[:200])
            return None

        lines = [
            (str(d.get("speaker", "")), str(d.get("line", "")))
            for d in data["dialogue"]
            if isinstance(d, dict) and d.get("line")
        ]
        if not lines:
            return None
        return Dialogue(title=data["title"].strip(), lines=lines,
                        participants=[first.id, second.id])

    async def forced_journal(
        self,
        persona: Persona,
        topic: str | None = None,
        chapter: bool = False,
        patch: str | None = None,
    ) -> tuple[str, str]:
        """Journal entry written on demand via the journal command."""
        prompt = FORCED_JOURNAL_PROMPT.format(
            topic=FORCED_TOPIC.format(topic=topic) if topic else FORCED_NO_TOPIC,
            length=CHAPTER_LENGTH if chapter else NORMAL_LENGTH,
        )
        kwargs: dict[str, Any] = {"temperature": 0.75, "json_output": True}
        if chapter:
            kwargs["max_tokens"] = CHAPTER_MAX_TOKENS
        instruction = self.composer.compose(persona, runtime_patch=patch)
        try:
            raw = await self._complete(instruction, [{"role": "user", "content": prompt}],
                                       **kwargs)
        except AuthenticationError:
            raise
        except ProviderError as e:
            log.warning("Forced journal generation failed: %s", e)
            return FORCED_FALLBACK

        parsed = _title_and_content(raw)
        if parsed is None:
            log.warning("Forced journal returned invalid JSON: %s", raw[:200])
            return FORCED_FALLBACK
        return parsed

    # ─── Conversation helpers ────────────────────────────────────

    async def banter(
        self,
        persona: Persona,
        messages: list[dict],
        instruction: str,
    ) -> str | None:
        """Short unprompted follow-up from a second persona."""
        try:
            text = await self._complete(
                instruction, messages, provider=self.banter_provider,
                max_tokens=self.banter_max_tokens,
            )
        except AuthenticationError:
            raise
        except ProviderError as e:
            log.warning("Banter from %s failed: %s", persona.id, e)
            return None
        return text or None

    async def comment_reply(
        self,
        entry: JournalEntry,
        comments: list[Comment],
        personas: list[Persona],
        force: Persona | None = None,
        patches: dict[str, str] | None = None,
    ) -> Comment | None:
        """Persona reply to the latest comment on a journal entry, or None."""
        persona = comment_responder(entry, comments, personas, force)
        patch = (patches or {}).get(persona.id)
        instruction = self.composer.compose(persona, runtime_patch=patch)
        thread = "\n".join(f"{c.author_name}: {c.content}" for c in comments)
        prompt = COMMENT_REPLY_PROMPT.format(
            title=entry.title, content=entry.content, thread=thread)
        try:
            text = await self._complete(
                instruction, [{"role": "user", "content": prompt}], temperature=0.75,
            )
        except AuthenticationError:
            raise
        except ProviderError as e:
            log.warning("Comment reply from %s failed: %s", persona.id, e)
            return None
        if not text:
            return None
        return Comment(id=new_id("comment"), author_id=persona.id,
                       author_name=persona.display_name, content=text)

    async def welcome(self, persona: Persona) -> str:
        """First message of a brand-new archive. Provider errors propagate."""
        instruction = self.composer.compose(persona)
        text = await self._complete(
            instruction, [{"role": "user", "content": WELCOME_PROMPT}], temperature=0.8,
        )
        if not text:
            raise ProviderError("Empty welcome message")
        return text

    async def inner_voice(self, topic: str, personas: list[Persona]) -> str:
        """Brief insight on a topic, voiced by the muse persona if there is one."""
        muse = next((p for p in personas if p.persona_kind == "muse"), None)
        if muse is not None:
            instruction = self.composer.persona_section(muse) + "\n\n" + INNER_VOICE_INSTRUCTION
        else:
            instruction = INNER_VOICE_INSTRUCTION
        log.info("Consulting inner voice on: %s", topic[:100])
        try:
            text = await self._complete(
                instruction, [{"role": "user", "content": topic}], temperature=0.9,
            )
        except AuthenticationError:
            raise
        except ProviderError as e:
            log.warning("Inner voice failed: %s", e)
            return INNER_VOICE_FALLBACK
        return text or INNER_VOICE_FALLBACK
