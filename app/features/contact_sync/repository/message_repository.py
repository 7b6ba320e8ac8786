"""
Postgres persistence for synced messages.

(user_id, platform, platform_message_id) is the natural key; inserting an
existing key is a no-op.
"""

import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_val, with_db_retry
from app.features.contact_sync.domain import Message
from app.features.contact_sync.repository.common import jsonb, persistence_errors

MESSAGE_COLUMNS = """
    id, user_id, contact_id, platform, platform_message_id, content,
    timestamp, thread_id, subject, direction, metadata
"""


def _row_to_message(row: dict) -> Message:
    return Message(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        contact_id=str(row["contact_id"]),
        platform=row["platform"],
        platform_message_id=row["platform_message_id"],
        content=row["content"],
        timestamp=row["timestamp"],
        thread_id=row.get("thread_id"),
        subject=row.get("subject"),
        direction=row.get("direction") or "inbound",
        metadata=row.get("metadata") or {},
    )


async def insert_message(message: Message, connection: psycopg.AsyncConnection | None = None) -> int:
    """Insert unless the natural key exists; returns the affected row count."""
    return await execute_query(
        f"""
        INSERT INTO messages ({MESSAGE_COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (user_id, platform, platform_message_id) DO NOTHING
        """,
        (
            message.id,
            message.user_id,
            message.contact_id,
            message.platform,
            message.platform_message_id,
            message.content,
            message.timestamp,
            message.thread_id,
            message.subject,
            message.direction,
            jsonb(message.metadata),
        ),
        connection=connection,
    )


@with_db_retry()
async def _insert_message(message: Message) -> int:
    return await insert_message(message)


class PostgresMessageStore:
    async def message_exists(self, user_id: str, platform: str, platform_message_id: str) -> bool:
        with persistence_errors("message_exists"):
            found = await fetch_val(
                """
                SELECT EXISTS (
                    SELECT 1 FROM messages
                    WHERE user_id = %s AND platform = %s AND platform_message_id = %s
                )
                """,
                (user_id, platform, platform_message_id),
            )
        return bool(found)

    async def save_message(self, message: Message) -> bool:
        with persistence_errors("save_message"):
            inserted = await _insert_message(message)
        return inserted > 0

    async def list_messages(self, user_id: str, contact_id: str | None = None) -> list[Message]:
        query = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE user_id = %s"
        params: tuple = (user_id,)
        if contact_id is not None:
            query += " AND contact_id = %s"
            params = (user_id, contact_id)
        query += " ORDER BY timestamp, id"

        with persistence_errors("list_messages"):
            rows = await fetch_all(query, params)
        return [_row_to_message(row) for row in rows]

    async def count_messages(self, user_id: str, contact_id: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM messages WHERE user_id = %s"
        params: tuple = (user_id,)
        if contact_id is not None:
            query += " AND contact_id = %s"
            params = (user_id, contact_id)

        with persistence_errors("count_messages"):
            count = await fetch_val(query, params)
        return int(count or 0)
