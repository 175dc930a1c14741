"""Tests for background fact extraction."""

import pytest

from conftest import ScriptedGateway, answer
from taskloop.ai.gateway import ModelResponse
from taskloop.core.models import ConversationMessage, ToolCall
from taskloop.memory.extraction import FactExtractor, build_transcript, parse_extracted
from taskloop.memory.facts import FactStore

CONVERSATION = [
    ConversationMessage.system("system prompt"),
    ConversationMessage.user("I'm a data engineer at Foo and I like short answers"),
    ConversationMessage.assistant_tool_call(ToolCall(id="c1", name="echo", arguments={})),
    ConversationMessage.tool_result(ToolCall(id="c1", name="echo"), "Echo: internal"),
    ConversationMessage.assistant("Got it!"),
]


class TestParsing:
    def test_transcript_skips_system_and_tool_turns(self):
        """Should only include what the user and assistant said."""
        assert build_transcript(CONVERSATION) == (
            "User: I'm a data engineer at Foo and I like short answers\nAssistant: Got it!"
        )

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ('[{"content": "Works at Foo", "tag": "fact"}]', [{"content": "Works at Foo", "tag": "fact"}]),
            (
                '```json\n[{"content": "Likes short answers", "tag": "preference"}]\n```',
                [{"content": "Likes short answers", "tag": "preference"}],
            ),
            ('[{"content": "Odd tag", "tag": "weird"}]', [{"content": "Odd tag", "tag": "fact"}]),
            ('[{"content": "  "}, {"tag": "fact"}, "text"]', []),
            ("[]", []),
            ("Sure! Here are the facts", []),
            ("[not json", []),
            (None, []),
        ],
    )
    def test_parse_extracted(self, raw, expected):
        """Should decode valid arrays and ignore anything else."""
        assert parse_extracted(raw) == expected


class TestFactExtractor:
    async def test_stores_extracted_facts(self, db):
        """Should store each extracted fact with its source session."""
        facts = FactStore(db)
        gateway = ScriptedGateway([answer(
            '[{"content": "Data engineer at Foo", "tag": "fact"},'
            ' {"content": "Prefers short answers", "tag": "preference"}]'
        )])

        stored = await FactExtractor(gateway, facts).extract_and_store("alice", "s1", CONVERSATION)

        assert [(f.content, f.tag, f.source_session_id) for f in stored] == [
            ("Data engineer at Foo", "fact", "s1"),
            ("Prefers short answers", "preference", "s1"),
        ]
        assert gateway.tool_sets == [None]

    async def test_skips_short_conversations(self, db):
        """Should not call the model for fewer than two messages."""
        gateway = ScriptedGateway()

        stored = await FactExtractor(gateway, FactStore(db)).extract_and_store(
            "alice", "s1", [ConversationMessage.user("hi")]
        )

        assert stored == []
        assert gateway.calls == []

    async def test_fallback_response_stores_nothing(self, db):
        """Should ignore fallback answers from a degraded gateway."""
        facts = FactStore(db)
        gateway = ScriptedGateway([ModelResponse(content='[{"content": "x", "tag": "fact"}]', fallback=True)])

        stored = await FactExtractor(gateway, facts).extract_and_store("alice", "s1", CONVERSATION)

        assert stored == []
        assert await facts.count("alice") == 0
