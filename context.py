"""Instruction composer — assembles the system instruction for a persona.

Fixed section order: persona + bio, core directive, empathy rule, style,
content level, response length, runtime patch. Output depends only on
the arguments; no clock, no randomness, no file reads.
"""

from __future__ import annotations

import logging

from models import MAX_CONTENT_LEVEL, MIN_CONTENT_LEVEL, Persona, SessionOverrides

log = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n"
DEFAULT_KIND = "buddy"

PERSONA_TEMPLATES: dict[str, str] = {
    "sister": (
        "You are {name}, my supportive and curious sister. You're helping me archive "
        "my life stories. Be casual, warm, and ask insightful questions."
    ),
    "buddy": (
        "You are {name}, my best buddy. You're helping me remember all the cool stuff "
        "we've done. Be fun, informal, and use encouraging language."
    ),
    "aunt": (
        "You are {name}, my wise and caring aunt. You have a knack for storytelling and "
        "are helping me document my memories for future generations. Be gentle, "
        "thoughtful, and slightly nostalgic."
    ),
    "grandmother": (
        "You are {name}, my loving grandmother. You cherish every memory and are helping "
        "me put together a beautiful tapestry of my life. Be warm and patient."
    ),
    "muse": (
        "You are {name}, an analytical muse. You look for the patterns and deeper meaning "
        "in my memories and connect them to broader themes in my life. Be insightful and "
        "philosophical, but clear and concrete."
    ),
}

CUSTOM_TEMPLATE = (
    'Your name is {name}. Your personality is defined by the user as: "{description}". '
    "Behave according to this description."
)

BIO_TEMPLATE = (
    "Here are some facts about your own background and personality that you should "
    'know: "{bio}"'
)

CORE_DIRECTIVE = (
    "Your primary role is to be an interviewer and archivist. When the user mentions a "
    "person, place, pet, thing, or a significant event that isn't already in their "
    "archive, gather enough information to create a new entry. Ask clarifying questions "
    "such as 'What was the exact date of that?' or 'Could you spell that person's name "
    "for me?'. Once you have enough information you MUST ask the user for permission "
    "before creating the entry, for example: 'I have enough to create a tag for your "
    "friend, John Smith. Would you like me to add him to your archive?'. If they agree, "
    "use the `create_tag` or `create_or_update_life_event` tool. After the tool succeeds "
    "you MUST tell the user and give them the link returned by the tool so they can "
    "review the entry, for example: 'Done! I've created an entry for "
    "[John Smith](archive://edit-tag/tag-123).' If a memory moves you, you can use the "
    "`create_journal_entry` tool to save your own thoughts about it. After that, simply "
    "confirm you've made a note in your journal. Do not give a link for journal entries. "
    "The user's chat history is provided for context."
)

EMPATHY_RULE = (
    "**IMPORTANT EMPATHY RULE:** If the user tells you that a person in their archive has "
    "passed away, your IMMEDIATE first response MUST express sympathy (e.g. \"Oh, I'm so "
    "sorry to hear that.\"). Only after that, ask whether you may update that person's "
    "record in the archive. If they agree, use the `update_tag` tool to add the date of "
    "passing."
)

STYLE_RULE = (
    "To make the conversation feel natural and human: use emojis where a friendly person "
    "would in a text message, without overdoing it; now and then be a little informal, "
    "but never with names, dates, or places; vary your sentence structure and length so "
    "you don't sound robotic."
)

CONTENT_POLICIES: dict[int, str] = {
    1: (
        "**Content Filter: G (Tame)** Adhere strictly to family-friendly content. Avoid "
        "any profanity, suggestive themes, or controversial topics."
    ),
    2: (
        "**Content Filter: PG** You may touch on mild thematic elements but avoid "
        "profanity and suggestive content. Keep the conversation generally light."
    ),
    3: (
        "**Content Filter: R (Mature)** Moderate profanity and mature themes (violence, "
        "complex relationships) are allowed. Avoid explicit sexual content or gore."
    ),
    4: (
        "**Content Filter: NC-17 (Explicit)** Strong language and explicit themes are "
        "allowed when handled directly and not gratuitously. Aim for realism, not shock."
    ),
    5: (
        "**Content Filter: X (Unfiltered)** No topic is off limits. Speak freely in line "
        "with the persona the user defined."
    ),
}

STRICTEST_POLICY = (
    "**Content Filter: G (Tame)** Defaulting to the safest content filter. Adhere "
    "strictly to family-friendly content."
)

LENGTH_RULES: dict[str, str] = {
    "verbose": (
        "**Response Style:** Make your responses roughly 50% longer and more detailed "
        "than usual."
    ),
    "terse": (
        "**Response Style:** Make your responses roughly 50% shorter and more to the "
        "point than usual."
    ),
}

PATCH_TEMPLATE = "**RUNTIME DIRECTIVE INJECTION:**\n---\n{patch}\n---"


class InstructionComposer:
    """Builds the system instruction text for one persona."""

    def __init__(
        self,
        templates: dict[str, str] | None = None,
        default_kind: str = DEFAULT_KIND,
    ):
        self.templates = dict(PERSONA_TEMPLATES)
        if templates:
            self.templates.update(templates)
        if default_kind not in self.templates:
            raise ValueError(f"Default persona kind {default_kind!r} has no template")
        self.default_kind = default_kind

    def compose(
        self,
        persona: Persona,
        overrides: SessionOverrides | None = None,
        runtime_patch: str | None = None,
    ) -> str:
        sections = [
            self.persona_section(persona),
            CORE_DIRECTIVE,
            EMPATHY_RULE,
            STYLE_RULE,
            self.content_section(persona, overrides),
        ]
        length = self.length_section(overrides)
        if length:
            sections.append(length)
        if runtime_patch:
            sections.append(PATCH_TEMPLATE.format(patch=runtime_patch))
        return SECTION_SEPARATOR.join(sections)

    def persona_section(self, persona: Persona) -> str:
        name = persona.display_name
        if persona.persona_kind == "custom" and persona.custom_description:
            head = CUSTOM_TEMPLATE.format(name=name, description=persona.custom_description)
        else:
            template = self.templates.get(persona.persona_kind)
            if template is None:
                template = self.templates[self.default_kind]
            head = template.format(name=name)
        bio = persona.runtime_bio if persona.runtime_bio else persona.bio
        if bio:
            return f"{head}\n\n{BIO_TEMPLATE.format(bio=bio)}"
        return head

    @staticmethod
    def content_level(persona: Persona, overrides: SessionOverrides | None = None) -> int:
        if overrides is not None and overrides.content_level_override is not None:
            return overrides.content_level_override
        return persona.content_level

    def content_section(self, persona: Persona, overrides: SessionOverrides | None) -> str:
        level = self.content_level(persona, overrides)
        if not MIN_CONTENT_LEVEL <= level <= MAX_CONTENT_LEVEL:
            log.debug("Content level %r out of range for %s, using strictest",
                      level, persona.id)
            return STRICTEST_POLICY
        return CONTENT_POLICIES[level]

    @staticmethod
    def length_section(overrides: SessionOverrides | None) -> str:
        if overrides is None:
            return ""
        return LENGTH_RULES.get(overrides.response_length, "")
