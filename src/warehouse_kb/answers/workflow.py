"""
Streaming answer workflow: retrieve grounding chunks, then stream the answer.

Answer fragments are written to the workflow event stream as
:class:`AnswerFragmentEvent`; the run ends with :class:`AnswerEndEvent`.
"""

from __future__ import annotations

from typing import Any

from workflows import Context, Workflow, step
from workflows.events import Event, StartEvent, StopEvent

from ..errors import WarehouseKBError
from ..models import AnswerType
from ..search.orchestrator import QueryOrchestrator
from .synthesis import AnswerSynthesizer, confidence_score


class AnswerInputEvent(StartEvent):
    query: str
    answer_type: AnswerType = "qa"
    language: str = "en"
    conversation_id: str | None = None
    document_ids: list[str] | None = None


class ContextEvent(Event):
    query: str
    chunks: list[Any]
    answer_type: AnswerType = "qa"
    language: str = "en"
    conversation_id: str | None = None


class AnswerFragmentEvent(Event):
    content: str


class AnswerEndEvent(StopEvent):
    status: str = "ok"
    answer: str | None = None
    confidence: float = 0.0
    sources: list[dict[str, Any]] = []
    error: str | None = None


class AnswerWorkflow(Workflow):
    def __init__(
        self,
        orchestrator: QueryOrchestrator,
        synthesizer: AnswerSynthesizer,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.orchestrator = orchestrator
        self.synthesizer = synthesizer

    @step
    async def retrieve(self, ev: AnswerInputEvent) -> ContextEvent | AnswerEndEvent:
        try:
            chunks = await self.orchestrator.retrieve_for_answer(
                ev.query, document_ids=ev.document_ids
            )
        except WarehouseKBError as exc:
            return AnswerEndEvent(status="failed", error=str(exc))
        if not chunks:
            return AnswerEndEvent(status="no_context")
        return ContextEvent(
            query=ev.query,
            chunks=chunks,
            answer_type=ev.answer_type,
            language=ev.language,
            conversation_id=ev.conversation_id,
        )

    @step
    async def synthesize(self, ev: ContextEvent, ctx: Context) -> AnswerEndEvent:
        context = ev.chunks[: self.synthesizer.max_context_chunks]
        fragments: list[str] = []
        try:
            async for fragment in self.synthesizer.stream(
                ev.query,
                context,
                conversation_id=ev.conversation_id,
                language=ev.language,
                answer_type=ev.answer_type,
            ):
                fragments.append(fragment)
                ctx.write_event_to_stream(AnswerFragmentEvent(content=fragment))
        except WarehouseKBError as exc:
            return AnswerEndEvent(
                status="failed", answer="".join(fragments) or None, error=str(exc)
            )

        return AnswerEndEvent(
            status="ok",
            answer="".join(fragments),
            confidence=confidence_score(
                [chunk.score for chunk in context], self.synthesizer.confidence_scale
            ),
            sources=[
                {"id": chunk.chunk_id, "title": chunk.title, "score": chunk.score}
                for chunk in context
            ],
        )
