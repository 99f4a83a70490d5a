"""Tests for the streaming answer workflow."""

from __future__ import annotations

import pytest

from conftest import MockModels
from warehouse_kb.answers.workflow import (
    AnswerEndEvent,
    AnswerFragmentEvent,
    AnswerInputEvent,
)
from warehouse_kb.services import Services


async def _run(services: Services, start_event: AnswerInputEvent):
    handler = services.answer_workflow().run(start_event=start_event)
    fragments = [
        event.content
        async for event in handler.stream_events()
        if isinstance(event, AnswerFragmentEvent)
    ]
    result = await handler
    return fragments, result


@pytest.mark.asyncio
async def test_workflow_streams_fragments_then_ends(
    services: Services, models: MockModels
) -> None:
    fragments, result = await _run(
        services, AnswerInputEvent(query="How do I drive a forklift?", answer_type="safety")
    )

    assert fragments == models.stream_chunks
    assert isinstance(result, AnswerEndEvent)
    assert result.status == "ok"
    assert result.answer == "".join(models.stream_chunks)
    assert [source["title"] for source in result.sources] == ["Forklift Safety Manual"]
    assert 0.0 < result.confidence <= 1.0


@pytest.mark.asyncio
async def test_workflow_without_context_ends_immediately(
    services: Services, models: MockModels
) -> None:
    forklift_id = services.store.make_document_id("Forklift Safety Manual")

    fragments, result = await _run(
        services,
        AnswerInputEvent(query="canteen opening hours", document_ids=[forklift_id]),
    )

    assert fragments == []
    assert result.status == "no_context"
    assert result.answer is None
    assert models.generate_calls == []


@pytest.mark.asyncio
async def test_workflow_reports_provider_failure(
    services: Services, models: MockModels
) -> None:
    models.generate_error = RuntimeError("model overloaded")

    fragments, result = await _run(
        services, AnswerInputEvent(query="How do I drive a forklift?")
    )

    assert fragments == []
    assert result.status == "failed"
    assert "model overloaded" in (result.error or "")


@pytest.mark.asyncio
async def test_workflow_reports_retrieval_failure(
    services: Services, models: MockModels
) -> None:
    models.embed_error = RuntimeError("quota")

    _, result = await _run(services, AnswerInputEvent(query="How do I drive a forklift?"))

    assert result.status == "failed"
    assert "quota" in (result.error or "")


@pytest.mark.asyncio
async def test_workflow_remembers_conversation(services: Services, models: MockModels) -> None:
    conversation = services.conversations.create_conversation(user_id="u1", title="Forklifts")

    await _run(
        services,
        AnswerInputEvent(
            query="How do I drive a forklift?", conversation_id=conversation.id
        ),
    )

    messages = services.conversations.recent_messages(conversation.id)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].content == "".join(models.stream_chunks)
