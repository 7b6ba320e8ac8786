"""
Postgres persistence for pending sender approvals and the sender blacklist.

Messages from unknown senders are parked as stubs under one approval row per
(user, platform, sender key). Approving imports the stubs as messages and
deletes the approval; rejecting blacklists the sender and deletes the
approval. Both run in a single transaction.
"""

from typing import Any

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.db.pool import get_db_transaction
from app.features.contact_sync.domain import (
    BlacklistEntry,
    PendingApproval,
    PendingMessageStub,
    ScoredMatch,
    SenderIdentity,
    UnifiedContact,
    new_id,
)
from app.features.contact_sync.repository.common import (
    as_str,
    jsonb,
    persistence_errors,
    raise_identity_conflict,
    sender_from_row,
)
from app.features.contact_sync.repository.contact_repository import insert_contact
from app.features.contact_sync.repository.message_repository import insert_message
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

APPROVAL_COLUMNS = """
    id, user_id, platform, sender_key, sender_platform_id, sender_name,
    sender_email, sender_handle, message_count, first_message_at,
    last_message_at, preview, potential_match_id, potential_match_score,
    potential_match_reasons, created_at
"""

STUB_COLUMNS = """
    pending_approval_id, platform_message_id, content, timestamp,
    thread_id, subject, direction, metadata
"""

BLACKLIST_COLUMNS = """
    id, user_id, platform, sender_platform_id, sender_name, sender_email,
    sender_handle, reason, created_at
"""


def _row_to_stub(row: dict[str, Any]) -> PendingMessageStub:
    return PendingMessageStub(
        platform_message_id=row["platform_message_id"],
        content=row["content"],
        timestamp=row["timestamp"],
        thread_id=row.get("thread_id"),
        subject=row.get("subject"),
        direction=row.get("direction") or "inbound",
        metadata=row.get("metadata") or {},
    )


def _row_to_approval(row: dict[str, Any], stubs: list[PendingMessageStub]) -> PendingApproval:
    return PendingApproval(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        platform=row["platform"],
        sender=sender_from_row(row),
        message_count=row["message_count"],
        first_message_at=row["first_message_at"],
        last_message_at=row["last_message_at"],
        preview=row["preview"],
        potential_match_id=as_str(row.get("potential_match_id")),
        potential_match_score=row.get("potential_match_score"),
        potential_match_reasons=list(row.get("potential_match_reasons") or []),
        messages=stubs,
        created_at=row["created_at"],
    )


def _row_to_blacklist_entry(row: dict[str, Any]) -> BlacklistEntry:
    return BlacklistEntry(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        platform=row["platform"],
        sender=sender_from_row(row),
        reason=row.get("reason"),
        created_at=row["created_at"],
    )


async def _load_stubs(
    approval_ids: list[str], connection: psycopg.AsyncConnection | None = None
) -> dict[str, list[PendingMessageStub]]:
    if not approval_ids:
        return {}
    rows = await fetch_all(
        f"""
        SELECT {STUB_COLUMNS} FROM pending_messages
        WHERE pending_approval_id = ANY(%s::uuid[])
        ORDER BY timestamp, platform_message_id
        """,
        (approval_ids,),
        connection=connection,
    )
    stubs: dict[str, list[PendingMessageStub]] = {approval_id: [] for approval_id in approval_ids}
    for row in rows:
        stubs[str(row["pending_approval_id"])].append(_row_to_stub(row))
    return stubs


async def _hydrate(
    rows: list[dict[str, Any]], connection: psycopg.AsyncConnection | None = None
) -> list[PendingApproval]:
    stubs = await _load_stubs([str(row["id"]) for row in rows], connection=connection)
    return [_row_to_approval(row, stubs.get(str(row["id"]), [])) for row in rows]


async def _insert_blacklist_entry(
    entry: BlacklistEntry, connection: psycopg.AsyncConnection | None = None
) -> None:
    await execute_query(
        f"""
        INSERT INTO blacklisted_senders ({BLACKLIST_COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            entry.id,
            entry.user_id,
            entry.platform,
            entry.sender.platform_id,
            entry.sender.name,
            entry.sender.email,
            entry.sender.handle,
            entry.reason,
            entry.created_at,
        ),
        connection=connection,
    )


class PostgresApprovalStore:
    """Pending approvals, their message stubs and blacklisted senders."""

    async def find_pending(self, user_id: str, platform: str, sender_key: str) -> PendingApproval | None:
        with persistence_errors("find_pending"):
            row = await fetch_one(
                f"""
                SELECT {APPROVAL_COLUMNS} FROM pending_contact_approvals
                WHERE user_id = %s AND platform = %s AND sender_key = %s
                """,
                (user_id, platform, sender_key),
            )
            if not row:
                return None
            return (await _hydrate([row]))[0]

    async def get_pending(self, user_id: str, pending_id: str) -> PendingApproval | None:
        with persistence_errors("get_pending"):
            row = await fetch_one(
                f"SELECT {APPROVAL_COLUMNS} FROM pending_contact_approvals WHERE user_id = %s AND id = %s",
                (user_id, pending_id),
            )
            if not row:
                return None
            return (await _hydrate([row]))[0]

    async def list_pending(self, user_id: str) -> list[PendingApproval]:
        with persistence_errors("list_pending"):
            rows = await fetch_all(
                f"""
                SELECT {APPROVAL_COLUMNS} FROM pending_contact_approvals
                WHERE user_id = %s
                ORDER BY last_message_at DESC, id
                """,
                (user_id,),
            )
            return await _hydrate(rows)

    async def add_pending_message(
        self,
        user_id: str,
        platform: str,
        sender: SenderIdentity,
        stub: PendingMessageStub,
        preview: str,
        potential_match: ScoredMatch | None = None,
    ) -> PendingApproval:
        with persistence_errors("add_pending_message"):
            async with await get_db_transaction() as conn:
                # no-op update so RETURNING yields the existing row on conflict
                approval = await fetch_one(
                    f"""
                    INSERT INTO pending_contact_approvals (
                        id, user_id, platform, sender_key, sender_platform_id,
                        sender_name, sender_email, sender_handle, message_count,
                        first_message_at, last_message_at, preview,
                        potential_match_id, potential_match_score, potential_match_reasons
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 0, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, platform, sender_key)
                    DO UPDATE SET sender_key = EXCLUDED.sender_key
                    RETURNING {APPROVAL_COLUMNS}
                    """,
                    (
                        new_id(),
                        user_id,
                        platform,
                        sender.key,
                        sender.platform_id,
                        sender.name,
                        sender.email,
                        sender.handle,
                        stub.timestamp,
                        stub.timestamp,
                        preview,
                        potential_match.contact_id if potential_match else None,
                        potential_match.score if potential_match else None,
                        jsonb(potential_match.reasons if potential_match else []),
                    ),
                    connection=conn,
                )
                approval_id = str(approval["id"])

                inserted = await execute_query(
                    f"""
                    INSERT INTO pending_messages ({STUB_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (pending_approval_id, platform_message_id) DO NOTHING
                    """,
                    (
                        approval_id,
                        stub.platform_message_id,
                        stub.content,
                        stub.timestamp,
                        stub.thread_id,
                        stub.subject,
                        stub.direction,
                        jsonb(stub.metadata),
                    ),
                    connection=conn,
                )
                if inserted:
                    approval = await fetch_one(
                        f"""
                        UPDATE pending_contact_approvals
                        SET message_count = message_count + 1,
                            first_message_at = LEAST(first_message_at, %s),
                            last_message_at = GREATEST(last_message_at, %s),
                            preview = CASE WHEN %s >= last_message_at THEN %s ELSE preview END
                        WHERE id = %s
                        RETURNING {APPROVAL_COLUMNS}
                        """,
                        (stub.timestamp, stub.timestamp, stub.timestamp, preview, approval_id),
                        connection=conn,
                    )

                pending = (await _hydrate([approval], connection=conn))[0]

        logger.debug(
            "Message parked for approval",
            user_id=user_id,
            platform=platform,
            pending_id=pending.id,
            message_count=pending.message_count,
        )
        return pending

    async def approve_pending(
        self, user_id: str, pending_id: str, contact: UnifiedContact, create_contact: bool = True
    ) -> int | None:
        with persistence_errors("approve_pending"):
            try:
                async with await get_db_transaction() as conn:
                    row = await fetch_one(
                        """
                        SELECT id, platform FROM pending_contact_approvals
                        WHERE user_id = %s AND id = %s
                        FOR UPDATE
                        """,
                        (user_id, pending_id),
                        connection=conn,
                    )
                    if not row:
                        return None

                    stubs = (await _load_stubs([pending_id], connection=conn)).get(pending_id, [])
                    if create_contact:
                        await insert_contact(conn, contact)

                    imported = 0
                    for stub in stubs:
                        message = stub.to_message(user_id, contact.id, row["platform"])
                        imported += await insert_message(message, connection=conn)

                    await execute_query(
                        "DELETE FROM pending_contact_approvals WHERE id = %s",
                        (pending_id,),
                        connection=conn,
                    )
            except DatabaseError as e:
                identity = next(iter(contact.identities.values()), None)
                if identity is not None:
                    raise_identity_conflict(e, identity.platform, identity.platform_id)
                raise

        return imported

    async def reject_pending(self, user_id: str, pending_id: str, entry: BlacklistEntry) -> bool:
        with persistence_errors("reject_pending"):
            async with await get_db_transaction() as conn:
                row = await fetch_one(
                    "SELECT id FROM pending_contact_approvals WHERE user_id = %s AND id = %s FOR UPDATE",
                    (user_id, pending_id),
                    connection=conn,
                )
                if not row:
                    return False
                await _insert_blacklist_entry(entry, connection=conn)
                await execute_query(
                    "DELETE FROM pending_contact_approvals WHERE id = %s",
                    (pending_id,),
                    connection=conn,
                )

        return True

    async def list_blacklist(self, user_id: str, platform: str | None = None) -> list[BlacklistEntry]:
        query = f"SELECT {BLACKLIST_COLUMNS} FROM blacklisted_senders WHERE user_id = %s"
        params: tuple = (user_id,)
        if platform is not None:
            query += " AND platform = %s"
            params = (user_id, platform)
        query += " ORDER BY created_at, id"

        with persistence_errors("list_blacklist"):
            rows = await fetch_all(query, params)
        return [_row_to_blacklist_entry(row) for row in rows]

    async def add_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        with persistence_errors("add_blacklist_entry"):
            await _insert_blacklist_entry(entry)
        return entry

    async def remove_blacklist_entry(self, user_id: str, entry_id: str) -> bool:
        with persistence_errors("remove_blacklist_entry"):
            deleted = await execute_query(
                "DELETE FROM blacklisted_senders WHERE user_id = %s AND id = %s",
                (user_id, entry_id),
            )
        return deleted > 0
