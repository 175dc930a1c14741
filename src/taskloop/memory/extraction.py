"""Background extraction of durable facts from a finished conversation."""

from __future__ import annotations

import json
import re
from typing import Any

from taskloop.ai.gateway import ModelGateway
from taskloop.core.models import ConversationMessage
from taskloop.core.types import FactTag, Role
from taskloop.log import get_logger
from taskloop.memory.facts import FactStore
from taskloop.storage.models import MemoryFact

logger = get_logger(__name__)

EXTRACTION_SYSTEM_PROMPT = (
    "You extract memories from conversations. Reply with a JSON array only, nothing else."
)

EXTRACTION_PROMPT = """Read the conversation below and list the facts about the user that are worth remembering for future conversations.

Worth remembering:
- personal or professional facts (role, company, projects, skills)
- stated preferences (tone, tools, formats)
- ongoing tasks or goals
- important context about their work or life

Not worth remembering:
- one-off requests
- generic questions without personal context
- errors and system messages

Reply with ONLY a JSON array, no prose and no markdown, for example:
[
  {{"content": "Works as a backend developer", "tag": "fact"}},
  {{"content": "Prefers bullet-point summaries", "tag": "preference"}}
]

Valid tags: fact, preference, task, context.
If nothing is worth remembering reply with exactly: []

Conversation:
{transcript}"""

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")


def build_transcript(messages: list[ConversationMessage]) -> str:
    lines = []
    for message in messages:
        if message.role in (Role.SYSTEM, Role.TOOL):
            continue
        if not message.content or not message.content.strip():
            continue
        speaker = "User" if message.role == Role.USER else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


def parse_extracted(raw: str | None) -> list[dict[str, Any]]:
    """Decode the model reply into ``[{content, tag}]``; anything unexpected yields ``[]``."""
    if not raw or not raw.strip():
        return []
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", raw.strip())).strip()
    if not cleaned.startswith("["):
        logger.warning("extraction_not_array", preview=cleaned[:100])
        return []
    try:
        items = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("extraction_parse_failed", error=str(exc))
        return []
    if not isinstance(items, list):
        return []

    facts = []
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        facts.append({"content": content.strip(), "tag": FactTag.normalize(item.get("tag"))})
    return facts


class FactExtractor:
    """Runs on the background pool.

    *gateway* must carry its own breaker, separate from the one guarding live
    runs, so extraction failures never make user-facing calls short-circuit.
    """

    def __init__(self, gateway: ModelGateway, facts: FactStore):
        self._gateway = gateway
        self._facts = facts

    async def extract_and_store(
        self, owner_id: str, session_id: str, messages: list[ConversationMessage]
    ) -> list[MemoryFact]:
        if len(messages) < 2:
            return []
        transcript = build_transcript(messages)
        if not transcript.strip():
            return []

        logger.info("fact_extraction_started", owner_id=owner_id, session_id=session_id, messages=len(messages))
        response = await self._gateway.chat(
            [
                ConversationMessage.system(EXTRACTION_SYSTEM_PROMPT),
                ConversationMessage.user(EXTRACTION_PROMPT.format(transcript=transcript)),
            ],
            tools=None,
        )
        if response.fallback:
            logger.warning("fact_extraction_skipped", session_id=session_id, reason="gateway_fallback")
            return []

        stored = []
        for item in parse_extracted(response.content):
            stored.append(
                await self._facts.store(owner_id, item["content"], item["tag"], source_session_id=session_id)
            )
        logger.info("fact_extraction_finished", owner_id=owner_id, session_id=session_id, stored=len(stored))
        return stored
