"""
Grounded answer generation over retrieved chunks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import AsyncIterator

from ..errors import CompletionProviderError, NotFoundError
from ..models import Answer, AnswerType, SourceRef
from ..providers.completion import ChatMessage, CompletionProvider
from ..storage.base import ScoredChunk
from ..storage.conversations import ConversationRepository, MessageRecord
from .prompts import GAP_INSTRUCTION, RELATED_QUESTIONS_PROMPT, language_name, system_prompt


logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def confidence_score(scores: list[float], scale: float = 1.2) -> float:
    """Mean source score times ``scale``, clamped to [0, 1].

    This is a heuristic for ordering and display. It is not a calibrated
    probability that the answer is correct.
    """
    if not scores:
        return 0.0
    mean = sum(scores) / len(scores)
    return min(1.0, max(0.0, mean * scale))


class AnswerSynthesizer:
    """Build prompts from retrieved chunks and ask the completion provider."""

    def __init__(
        self,
        completion: CompletionProvider,
        conversations: ConversationRepository | None = None,
        *,
        history_turns: int = 5,
        confidence_scale: float = 1.2,
        max_context_chunks: int = 5,
        max_output_tokens: int = 500,
    ) -> None:
        self.completion = completion
        self.conversations = conversations
        self.history_turns = history_turns
        self.confidence_scale = confidence_scale
        self.max_context_chunks = max_context_chunks
        self.max_output_tokens = max_output_tokens

    def build_messages(
        self,
        query: str,
        chunks: list[ScoredChunk],
        *,
        history: list[MessageRecord] | None = None,
        language: str = "en",
        answer_type: AnswerType = "qa",
    ) -> list[ChatMessage]:
        sections: list[str] = []
        if history:
            lines = [
                f"{'User' if message.role == 'user' else 'Assistant'}: {message.content}"
                for message in history[-self.history_turns :]
                if message.role in ("user", "assistant")
            ]
            if lines:
                sections.append("Previous conversation:\n" + "\n".join(lines))

        context = "\n\n".join(
            f"[Source {number}] {chunk.title}\n{chunk.content}"
            for number, chunk in enumerate(chunks[: self.max_context_chunks], start=1)
        )
        sections.append(f"Context:\n{context}")
        sections.append(f"Question: {query}")
        sections.append(GAP_INSTRUCTION)

        return [
            ChatMessage(role="system", content=system_prompt(language, answer_type)),
            ChatMessage(role="user", content="\n\n".join(sections)),
        ]

    async def generate(
        self,
        query: str,
        chunks: list[ScoredChunk],
        *,
        conversation_id: str | None = None,
        language: str = "en",
        answer_type: AnswerType = "qa",
        with_related: bool = True,
    ) -> Answer | None:
        """Answer ``query`` from ``chunks``; None when there is nothing to ground on."""
        if not chunks:
            return None
        context = chunks[: self.max_context_chunks]
        history = await self._history(conversation_id)
        messages = self.build_messages(
            query, context, history=history, language=language, answer_type=answer_type
        )
        result = await self.completion.complete(
            messages, max_output_tokens=self.max_output_tokens
        )
        related = (
            await self.related_questions(query, result.text, language) if with_related else []
        )
        answer = Answer(
            text=result.text,
            confidence=confidence_score(
                [chunk.score for chunk in context], self.confidence_scale
            ),
            sources=[
                SourceRef(id=chunk.chunk_id, title=chunk.title, score=chunk.score)
                for chunk in context
            ],
            related_questions=related,
            usage=result.usage.to_dict(),
        )
        if conversation_id is not None:
            await self._remember(conversation_id, query, answer)
        return answer

    async def stream(
        self,
        query: str,
        chunks: list[ScoredChunk],
        *,
        conversation_id: str | None = None,
        language: str = "en",
        answer_type: AnswerType = "qa",
    ) -> AsyncIterator[str]:
        """Yield answer fragments. Yields nothing when ``chunks`` is empty."""
        if not chunks:
            return
        context = chunks[: self.max_context_chunks]
        history = await self._history(conversation_id)
        messages = self.build_messages(
            query, context, history=history, language=language, answer_type=answer_type
        )
        fragments: list[str] = []
        async for fragment in self.completion.stream(
            messages, max_output_tokens=self.max_output_tokens
        ):
            fragments.append(fragment)
            yield fragment

        if conversation_id is not None:
            answer = Answer(
                text="".join(fragments),
                confidence=confidence_score(
                    [chunk.score for chunk in context], self.confidence_scale
                ),
                sources=[
                    SourceRef(id=chunk.chunk_id, title=chunk.title, score=chunk.score)
                    for chunk in context
                ],
            )
            await self._remember(conversation_id, query, answer)

    async def related_questions(self, query: str, answer: str, language: str = "en") -> list[str]:
        """Follow-up questions from a second completion. Any failure gives []."""
        prompt = RELATED_QUESTIONS_PROMPT.format(
            query=query, answer=answer[:1500], language=language_name(language)
        )
        try:
            result = await self.completion.complete(
                [ChatMessage(role="user", content=prompt)],
                temperature=0.8,
                max_output_tokens=200,
            )
            parsed = json.loads(_CODE_FENCE_RE.sub("", result.text.strip()))
        except (CompletionProviderError, ValueError) as exc:
            logger.warning("Related question generation failed: %s", exc)
            return []
        if not isinstance(parsed, list):
            return []
        return [str(item).strip() for item in parsed if str(item).strip()][:5]

    async def _history(self, conversation_id: str | None) -> list[MessageRecord]:
        if conversation_id is None or self.conversations is None:
            return []
        conversation = await asyncio.to_thread(
            self.conversations.get_conversation, conversation_id
        )
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return await asyncio.to_thread(
            self.conversations.recent_messages, conversation_id, limit=self.history_turns
        )

    async def _remember(self, conversation_id: str, query: str, answer: Answer) -> None:
        if self.conversations is None:
            return
        await asyncio.to_thread(
            self.conversations.append_message, conversation_id, role="user", content=query
        )
        await asyncio.to_thread(
            self.conversations.append_message,
            conversation_id,
            role="assistant",
            content=answer.text,
            metadata={
                "sources": [source.model_dump() for source in answer.sources],
                "confidence": answer.confidence,
            },
            prompt_tokens=int(answer.usage.get("prompt_tokens", 0)),
            completion_tokens=int(answer.usage.get("completion_tokens", 0)),
        )
