"""
Postgres persistence for unified contacts, their platform identities and
merge reviews.

contact_platform_identities doubles as the (platform, platform_id) ->
contact lookup table; it is only written in the same transaction as the
contact rows it belongs to.
"""

from typing import Any

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from app.db.pool import get_db_transaction
from app.features.contact_sync.domain import (
    ContactStatus,
    MergePlan,
    MergeReview,
    PlatformIdentity,
    UnifiedContact,
)
from app.features.contact_sync.domain.metadata import dump_metadata, parse_identity_metadata
from app.features.contact_sync.repository.common import (
    jsonb,
    parse_timestamp,
    persistence_errors,
    raise_identity_conflict,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CONTACT_SELECT = """
    SELECT
        c.id, c.user_id, c.display_name, c.email, c.photo_url, c.status,
        c.metadata, c.created_at,
        COALESCE(
            json_agg(
                json_build_object(
                    'platform', i.platform,
                    'platform_id', i.platform_id,
                    'display_name', i.display_name,
                    'handle', i.handle,
                    'email', i.email,
                    'avatar_url', i.avatar_url,
                    'metadata', i.metadata,
                    'added_at', i.added_at
                )
            ) FILTER (WHERE i.platform IS NOT NULL),
            '[]'::json
        ) AS identities
    FROM unified_contacts c
    LEFT JOIN contact_platform_identities i ON i.contact_id = c.id
"""

REVIEW_COLUMNS = "id, user_id, contact_id, candidate_contact_id, score, reasons, created_at"


def _row_to_identity(raw: dict[str, Any]) -> PlatformIdentity:
    return PlatformIdentity(
        platform=raw["platform"],
        platform_id=raw["platform_id"],
        display_name=raw.get("display_name") or "",
        handle=raw.get("handle"),
        email=raw.get("email"),
        avatar_url=raw.get("avatar_url"),
        metadata=parse_identity_metadata(raw.get("metadata")),
        added_at=parse_timestamp(raw.get("added_at")),
    )


def _row_to_contact(row: dict | None) -> UnifiedContact | None:
    if not row:
        return None
    identities = [_row_to_identity(raw) for raw in row.get("identities") or []]
    return UnifiedContact(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        display_name=row["display_name"],
        email=row.get("email"),
        photo_url=row.get("photo_url"),
        status=ContactStatus(row["status"]),
        identities={identity.platform: identity for identity in identities},
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_review(row: dict | None) -> MergeReview | None:
    if not row:
        return None
    return MergeReview(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        contact_id=str(row["contact_id"]),
        candidate_contact_id=str(row["candidate_contact_id"]),
        score=float(row["score"]),
        reasons=list(row.get("reasons") or []),
        created_at=row["created_at"],
    )


async def insert_contact(conn: psycopg.AsyncConnection, contact: UnifiedContact) -> None:
    """Insert a contact and its identities on an open transaction."""
    await execute_query(
        """
        INSERT INTO unified_contacts (
            id, user_id, display_name, email, photo_url, status, metadata, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            contact.id,
            contact.user_id,
            contact.display_name,
            contact.email,
            contact.photo_url,
            contact.status.value,
            jsonb(contact.metadata),
            contact.created_at,
        ),
        connection=conn,
    )
    for identity in contact.identities.values():
        await upsert_identity(conn, contact.user_id, contact.id, identity)


async def upsert_identity(
    conn: psycopg.AsyncConnection, user_id: str, contact_id: str, identity: PlatformIdentity
) -> None:
    await execute_query(
        """
        INSERT INTO contact_platform_identities (
            user_id, contact_id, platform, platform_id, display_name,
            handle, email, avatar_url, metadata, added_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (contact_id, platform)
        DO UPDATE SET
            platform_id = EXCLUDED.platform_id,
            display_name = EXCLUDED.display_name,
            handle = EXCLUDED.handle,
            email = EXCLUDED.email,
            avatar_url = EXCLUDED.avatar_url,
            metadata = EXCLUDED.metadata
        """,
        (
            user_id,
            contact_id,
            identity.platform,
            identity.platform_id,
            identity.display_name,
            identity.handle,
            identity.email,
            identity.avatar_url,
            jsonb(dump_metadata(identity.metadata)),
            identity.added_at,
        ),
        connection=conn,
    )


@with_db_retry()
async def _fetch_rows(query: str, params: tuple) -> list[dict]:
    return await fetch_all(query, params)


def _first_identity(contact: UnifiedContact) -> PlatformIdentity | None:
    return next(iter(contact.identities.values()), None)


class PostgresContactStore:
    """Contacts, identity links and merge reviews."""

    async def list_contacts(self, user_id: str, include_archived: bool = False) -> list[UnifiedContact]:
        query = f"""
            {CONTACT_SELECT}
            WHERE c.user_id = %s AND (%s OR c.status <> 'ARCHIVED_AS_DUPLICATE')
            GROUP BY c.id
            ORDER BY c.created_at, c.id
        """
        with persistence_errors("list_contacts"):
            rows = await _fetch_rows(query, (user_id, include_archived))
        return [_row_to_contact(row) for row in rows]

    async def get_contact(self, user_id: str, contact_id: str) -> UnifiedContact | None:
        query = f"{CONTACT_SELECT} WHERE c.user_id = %s AND c.id = %s GROUP BY c.id"
        with persistence_errors("get_contact"):
            return _row_to_contact(await fetch_one(query, (user_id, contact_id)))

    async def find_contact_by_identity(
        self, user_id: str, platform: str, platform_id: str
    ) -> UnifiedContact | None:
        with persistence_errors("find_contact_by_identity"):
            contact_id = await fetch_val(
                """
                SELECT contact_id FROM contact_platform_identities
                WHERE user_id = %s AND platform = %s AND platform_id = %s
                """,
                (user_id, platform, platform_id),
            )
        if contact_id is None:
            return None
        return await self.get_contact(user_id, str(contact_id))

    async def list_identity_links(self, user_id: str, platform: str) -> dict[str, str]:
        with persistence_errors("list_identity_links"):
            rows = await fetch_all(
                """
                SELECT platform_id, contact_id FROM contact_platform_identities
                WHERE user_id = %s AND platform = %s
                """,
                (user_id, platform),
            )
        return {row["platform_id"]: str(row["contact_id"]) for row in rows}

    async def create_contact(self, contact: UnifiedContact) -> UnifiedContact:
        with persistence_errors("create_contact"):
            try:
                async with await get_db_transaction() as conn:
                    await insert_contact(conn, contact)
            except DatabaseError as e:
                identity = _first_identity(contact)
                if identity is not None:
                    raise_identity_conflict(e, identity.platform, identity.platform_id)
                raise

        logger.info("Unified contact created", user_id=contact.user_id, contact_id=contact.id, status=contact.status)
        return contact

    async def create_contact_with_review(self, contact: UnifiedContact, review: MergeReview) -> UnifiedContact:
        with persistence_errors("create_contact_with_review"):
            try:
                async with await get_db_transaction() as conn:
                    await insert_contact(conn, contact)
                    await execute_query(
                        f"""
                        INSERT INTO contact_merge_reviews ({REVIEW_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            review.id,
                            review.user_id,
                            review.contact_id,
                            review.candidate_contact_id,
                            review.score,
                            jsonb(review.reasons),
                            review.created_at,
                        ),
                        connection=conn,
                    )
            except DatabaseError as e:
                identity = _first_identity(contact)
                if identity is not None:
                    raise_identity_conflict(e, identity.platform, identity.platform_id)
                raise
        return contact

    async def link_identity(self, contact: UnifiedContact, identity: PlatformIdentity) -> UnifiedContact:
        with persistence_errors("link_identity"):
            try:
                async with await get_db_transaction() as conn:
                    await upsert_identity(conn, contact.user_id, contact.id, identity)
                    await execute_query(
                        """
                        UPDATE unified_contacts
                        SET email = %s, photo_url = %s, updated_at = NOW()
                        WHERE id = %s AND user_id = %s
                        """,
                        (contact.email, contact.photo_url, contact.id, contact.user_id),
                        connection=conn,
                    )
            except DatabaseError as e:
                raise_identity_conflict(e, identity.platform, identity.platform_id)
                raise
        return contact

    async def update_contact_status(self, user_id: str, contact_id: str, status: ContactStatus) -> None:
        with persistence_errors("update_contact_status"):
            await execute_query(
                "UPDATE unified_contacts SET status = %s, updated_at = NOW() WHERE id = %s AND user_id = %s",
                (status.value, contact_id, user_id),
            )

    async def merge_contacts(self, user_id: str, plan: MergePlan) -> int:
        primary = plan.primary
        merged_ids = list(plan.merged_ids)
        with persistence_errors("merge_contacts"):
            async with await get_db_transaction() as conn:
                # free the absorbed identities before re-pointing them at the survivor
                await execute_query(
                    "DELETE FROM contact_platform_identities WHERE user_id = %s AND contact_id = ANY(%s::uuid[])",
                    (user_id, merged_ids),
                    connection=conn,
                )
                for identity in primary.identities.values():
                    await upsert_identity(conn, user_id, primary.id, identity)

                moved = await execute_query(
                    "UPDATE messages SET contact_id = %s WHERE user_id = %s AND contact_id = ANY(%s::uuid[])",
                    (primary.id, user_id, merged_ids),
                    connection=conn,
                )
                await execute_query(
                    """
                    UPDATE pending_contact_approvals SET potential_match_id = %s
                    WHERE user_id = %s AND potential_match_id = ANY(%s::uuid[])
                    """,
                    (primary.id, user_id, merged_ids),
                    connection=conn,
                )
                await execute_query(
                    """
                    DELETE FROM contact_merge_reviews
                    WHERE user_id = %s
                      AND (contact_id = ANY(%s::uuid[]) OR candidate_contact_id = ANY(%s::uuid[]))
                    """,
                    (user_id, merged_ids, merged_ids),
                    connection=conn,
                )
                await execute_query(
                    "DELETE FROM unified_contacts WHERE user_id = %s AND id = ANY(%s::uuid[])",
                    (user_id, merged_ids),
                    connection=conn,
                )
                await execute_query(
                    """
                    UPDATE unified_contacts
                    SET display_name = %s, email = %s, photo_url = %s, status = %s,
                        metadata = %s, updated_at = NOW()
                    WHERE id = %s AND user_id = %s
                    """,
                    (
                        primary.display_name,
                        primary.email,
                        primary.photo_url,
                        primary.status.value,
                        jsonb(primary.metadata),
                        primary.id,
                        user_id,
                    ),
                    connection=conn,
                )
        return moved

    async def count_contacts(self, user_id: str) -> int:
        with persistence_errors("count_contacts"):
            count = await fetch_val(
                "SELECT COUNT(*) FROM unified_contacts WHERE user_id = %s AND status <> 'ARCHIVED_AS_DUPLICATE'",
                (user_id,),
            )
        return int(count or 0)

    async def list_merge_reviews(self, user_id: str) -> list[MergeReview]:
        with persistence_errors("list_merge_reviews"):
            rows = await fetch_all(
                f"SELECT {REVIEW_COLUMNS} FROM contact_merge_reviews WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            )
        return [_row_to_review(row) for row in rows]

    async def get_merge_review(self, user_id: str, review_id: str) -> MergeReview | None:
        with persistence_errors("get_merge_review"):
            row = await fetch_one(
                f"SELECT {REVIEW_COLUMNS} FROM contact_merge_reviews WHERE user_id = %s AND id = %s",
                (user_id, review_id),
            )
        return _row_to_review(row)

    async def delete_merge_review(self, user_id: str, review_id: str) -> bool:
        with persistence_errors("delete_merge_review"):
            deleted = await execute_query(
                "DELETE FROM contact_merge_reviews WHERE user_id = %s AND id = %s",
                (user_id, review_id),
            )
        return deleted > 0
