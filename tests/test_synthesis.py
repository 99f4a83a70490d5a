"""Tests for answer synthesis and conversation history."""

from __future__ import annotations

import duckdb
import pytest

from conftest import MockGenAIClient, MockModels
from warehouse_kb.answers import AnswerSynthesizer, confidence_score, system_prompt
from warehouse_kb.errors import NotFoundError
from warehouse_kb.providers.completion import CompletionProvider
from warehouse_kb.storage import ConversationRepository, ScoredChunk


def _chunks(*scores: float) -> list[ScoredChunk]:
    return [
        ScoredChunk(
            chunk_id=f"c{n}",
            document_id=f"d{n}",
            content=f"Content {n}",
            chunk_index=0,
            score=score,
            title=f"Doc {n}",
        )
        for n, score in enumerate(scores)
    ]


@pytest.fixture
def conversations() -> ConversationRepository:
    conn = duckdb.connect(":memory:")
    yield ConversationRepository(conn)
    conn.close()


def _synthesizer(models: MockModels, conversations=None, **kwargs) -> AnswerSynthesizer:
    completion = CompletionProvider(
        client=MockGenAIClient(models), max_retries=1, retry_base_delay=0.0
    )
    return AnswerSynthesizer(completion, conversations, **kwargs)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def test_confidence_score_is_clamped() -> None:
    assert confidence_score([]) == 0.0
    assert confidence_score([0.5, 0.7]) == pytest.approx(0.72)
    assert confidence_score([0.95, 0.9]) == 1.0
    assert confidence_score([-0.5]) == 0.0


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------


def test_system_prompt_mentions_language_and_type() -> None:
    prompt = system_prompt("ar", "safety")
    assert "Arabic" in prompt
    assert "protective equipment" in prompt


def test_build_messages_numbers_sources_and_caps_context() -> None:
    synthesizer = _synthesizer(MockModels(), max_context_chunks=2)

    [system, user] = synthesizer.build_messages("What PPE?", _chunks(0.9, 0.8, 0.7))

    assert system.role == "system"
    assert "[Source 1] Doc 0\nContent 0" in user.content
    assert "[Source 2] Doc 1" in user.content
    assert "Source 3" not in user.content
    assert user.content.index("Context:") < user.content.index("Question: What PPE?")


# ---------------------------------------------------------------------------
# generate()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_generate_returns_none_without_chunks() -> None:
    models = MockModels()
    assert await _synthesizer(models).generate("What PPE?", []) is None
    assert models.generate_calls == []


@pytest.mark.asyncio
async def test_generate_builds_answer_with_sources_and_related() -> None:
    models = MockModels(answer="Wear gloves [Source 1].")

    answer = await _synthesizer(models).generate("What PPE?", _chunks(0.8, 0.6))

    assert answer is not None
    assert answer.text == "Wear gloves [Source 1]."
    assert answer.confidence == pytest.approx(0.84)
    assert [source.id for source in answer.sources] == ["c0", "c1"]
    assert answer.related_questions == [
        "How often are forklifts inspected?",
        "Who may drive a forklift?",
    ]
    assert answer.usage["total_tokens"] > 0


@pytest.mark.asyncio
async def test_related_questions_tolerate_bad_json() -> None:
    models = MockModels(related="not json at all")
    answer = await _synthesizer(models).generate("What PPE?", _chunks(0.8))
    assert answer is not None
    assert answer.related_questions == []


@pytest.mark.asyncio
async def test_related_questions_strip_code_fences() -> None:
    models = MockModels(related='```json\n["Where are gloves stored?"]\n```')
    questions = await _synthesizer(models).related_questions("q", "a")
    assert questions == ["Where are gloves stored?"]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_generate_remembers_turns_and_uses_history(
    conversations: ConversationRepository,
) -> None:
    models = MockModels(answer="Use bay 3.")
    synthesizer = _synthesizer(models, conversations)
    conversation = conversations.create_conversation(user_id="u1", title="Charging")

    await synthesizer.generate("Where do I charge?", _chunks(0.8), conversation_id=conversation.id)
    await synthesizer.generate("And at night?", _chunks(0.8), conversation_id=conversation.id)

    messages = conversations.recent_messages(conversation.id, limit=10)
    assert [(m.seq, m.role) for m in messages] == [
        (1, "user"),
        (2, "assistant"),
        (3, "user"),
        (4, "assistant"),
    ]
    second_prompt = models.generate_calls[2]["contents"][0].parts[0].text
    assert "Previous conversation:\nUser: Where do I charge?\nAssistant: Use bay 3." in second_prompt


@pytest.mark.asyncio
async def test_unknown_conversation_raises(conversations: ConversationRepository) -> None:
    synthesizer = _synthesizer(MockModels(), conversations)
    with pytest.raises(NotFoundError):
        await synthesizer.generate("Where?", _chunks(0.8), conversation_id="missing")


@pytest.mark.asyncio
async def test_stream_yields_fragments_and_remembers(
    conversations: ConversationRepository,
) -> None:
    models = MockModels(stream_chunks=["Bay ", "3."])
    synthesizer = _synthesizer(models, conversations)
    conversation = conversations.create_conversation(user_id=None, title="Charging")

    fragments = [
        fragment
        async for fragment in synthesizer.stream(
            "Where do I charge?", _chunks(0.8), conversation_id=conversation.id
        )
    ]

    assert fragments == ["Bay ", "3."]
    [_, assistant] = conversations.recent_messages(conversation.id)
    assert assistant.content == "Bay 3."
    assert assistant.metadata["sources"][0]["id"] == "c0"
