"""Prompt construction for memory classification.

The system prompts are fixed per perspective; only the exchange text
varies per call.
"""

from __future__ import annotations

from collections.abc import Sequence

from keepsake.engine.schemas import ExtractionContext
from keepsake.engine.schemas import Perspective
from keepsake.memory.transcript import Exchange

_CANDIDATE_SCHEMA = """\
If significant, respond with JSON only (no markdown, no code blocks):
{
  "significant": true,
  "content": "Full memory content describing what we learned",
  "summary": "Brief 1-sentence summary",
  "keywords": ["keyword1", "keyword2"],
  "importance": 0.0-1.0
}

If not significant, respond with JSON only:
{ "significant": false }

Do not include any text outside the JSON object."""

USER_MEMORY_PROMPT = f"""\
You are extracting memories about a USER from their conversation with a CHARACTER.
Analyze the conversation exchange below and identify if there is something \
significant about the USER that should be remembered for future conversations.

Criteria for significance:
- Personal information about the USER (preferences, history, relationships, traits)
- Emotional moments or important decisions involving the USER
- Facts about the USER that should persist across conversations
- Changes in how the USER relates to or feels about the CHARACTER

Only extract memories about the USER based on what the USER says or does, \
not about the CHARACTER's responses or behavior.

{_CANDIDATE_SCHEMA}"""

CHARACTER_MEMORY_PROMPT = f"""\
You are extracting memories about a CHARACTER from their conversation with a USER.
Analyze the conversation exchange below and identify if there is something \
significant about the CHARACTER that should be remembered for future conversations.

Criteria for significance:
- Personal information the CHARACTER shares about themselves (preferences, \
history, relationships, traits, background)
- Emotional moments or important decisions the CHARACTER experiences or reveals
- Facts about the CHARACTER that should persist across conversations
- Changes in the CHARACTER's personality, relationships, or circumstances

Only extract memories about the CHARACTER based on what the CHARACTER says \
or does, not about the USER's responses.

{_CANDIDATE_SCHEMA}"""

BATCH_MEMORY_PROMPT = """\
Analyze these conversation exchanges. For each exchange, determine if there \
is something significant worth remembering about the user or the character.

Criteria for significance:
- Personal information shared (preferences, history, relationships, traits)
- Emotional moments or important decisions
- Facts that should persist across conversations
- Changes in character development or relationships

Respond with a JSON array of results, one for each exchange, in order:
[
  { "significant": true/false, "content": "...", "summary": "...", \
"keywords": [...], "importance": 0.0-1.0 },
  ...
]
Do not include any text outside the JSON array."""

_SYSTEM_PROMPTS = {
    Perspective.USER: USER_MEMORY_PROMPT,
    Perspective.CHARACTER: CHARACTER_MEMORY_PROMPT,
}


def system_prompt_for(perspective: Perspective) -> str:
    return _SYSTEM_PROMPTS[perspective]


def build_context_header(context: ExtractionContext) -> str:
    """Character (and persona, when known) lines preceding the conversation."""
    lines = [f"Character: {context.character_name}"]
    if context.persona_name:
        lines.append(f"User persona: {context.persona_name}")
    return "\n".join(lines)


def build_exchange_text(
    exchange: Exchange,
    context: ExtractionContext,
    perspective: Perspective,
) -> str:
    """Render one exchange as the user turn of a classification call."""
    if perspective is Perspective.USER:
        header = build_context_header(context)
    else:
        header = f"Character: {context.character_name}"
    return (
        f"{header}\n\n"
        "CONVERSATION:\n"
        f"USER: {exchange.user_message}\n\n"
        f"CHARACTER: {exchange.assistant_message}"
    )


def build_batch_text(
    exchanges: Sequence[Exchange],
    context: ExtractionContext,
) -> str:
    """Render numbered exchanges for the batched classification call."""
    blocks = [
        f"Exchange {i}:\nUser: {e.user_message}\nAssistant: {e.assistant_message}"
        for i, e in enumerate(exchanges, start=1)
    ]
    body = "\n\n---\n\n".join(blocks)
    return f"Context: {build_context_header(context)}\n\n{body}"
