"""
Conversation history used to give answers multi-turn context.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import duckdb

from .base import utcnow


Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    user_id: str | None
    title: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    seq: int
    role: Role
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    created_at: datetime = field(default_factory=utcnow)


class ConversationRepository:
    """Conversations and their strictly ordered messages."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, *, initialize: bool = True) -> None:
        self._conn = conn
        # Serializes sequence allocation across worker threads.
        self._append_lock = threading.Lock()
        if initialize:
            self.initialize()

    def initialize(self) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id VARCHAR PRIMARY KEY,
                    user_id VARCHAR,
                    title VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id VARCHAR PRIMARY KEY,
                    conversation_id VARCHAR NOT NULL,
                    seq INTEGER NOT NULL,
                    role VARCHAR NOT NULL,
                    content VARCHAR NOT NULL,
                    metadata_json VARCHAR NOT NULL DEFAULT '{}',
                    prompt_tokens INTEGER NOT NULL DEFAULT 0,
                    completion_tokens INTEGER NOT NULL DEFAULT 0,
                    embedding DOUBLE[],
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE (conversation_id, seq)
                );
                """
            )

    def create_conversation(self, *, user_id: str | None, title: str) -> ConversationRecord:
        now = utcnow()
        record = ConversationRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title[:200],
            created_at=now,
            updated_at=now,
        )
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversations (id, user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [record.id, record.user_id, record.title, record.created_at, record.updated_at],
            )
        return record

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._conn.cursor() as cur:
            row = cur.execute(
                """
                SELECT id, user_id, title, created_at, updated_at
                FROM conversations
                WHERE id = ?
                """,
                [conversation_id],
            ).fetchone()
        if row is None:
            return None
        return ConversationRecord(
            id=str(row[0]),
            user_id=row[1],
            title=str(row[2]),
            created_at=row[3],
            updated_at=row[4],
        )

    def append_message(
        self,
        conversation_id: str,
        *,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        embedding: list[float] | None = None,
    ) -> MessageRecord:
        now = utcnow()
        with self._append_lock, self._conn.cursor() as cur:
            row = cur.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM messages WHERE conversation_id = ?",
                [conversation_id],
            ).fetchone()
            message = MessageRecord(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                seq=int(row[0] if row else 0) + 1,
                role=role,
                content=content,
                metadata=metadata or {},
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                created_at=now,
            )
            cur.execute(
                """
                INSERT INTO messages (
                    id, conversation_id, seq, role, content, metadata_json,
                    prompt_tokens, completion_tokens, embedding, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id,
                    message.conversation_id,
                    message.seq,
                    message.role,
                    message.content,
                    json.dumps(message.metadata, sort_keys=True, default=str),
                    message.prompt_tokens,
                    message.completion_tokens,
                    embedding,
                    message.created_at,
                ],
            )
            cur.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                [now, conversation_id],
            )
        return message

    def recent_messages(self, conversation_id: str, *, limit: int = 5) -> list[MessageRecord]:
        """The newest ``limit`` messages, oldest first."""
        with self._conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT * FROM (
                    SELECT id, conversation_id, seq, role, content, metadata_json,
                           prompt_tokens, completion_tokens, created_at
                    FROM messages
                    WHERE conversation_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                )
                ORDER BY seq ASC
                """,
                [conversation_id, limit],
            ).fetchall()
        return [
            MessageRecord(
                id=str(row[0]),
                conversation_id=str(row[1]),
                seq=int(row[2]),
                role=row[3],
                content=str(row[4]),
                metadata=json.loads(str(row[5])),
                prompt_tokens=int(row[6]),
                completion_tokens=int(row[7]),
                created_at=row[8],
            )
            for row in rows
        ]
