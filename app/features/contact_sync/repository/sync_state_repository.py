"""
Postgres persistence for per-(user, platform) sync state.

is_syncing is only written through try_claim and set_syncing so that a
regular state save can never clear another run's claim.
"""

from datetime import datetime

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.features.contact_sync.domain import SyncState
from app.features.contact_sync.repository.common import persistence_errors

STATE_COLUMNS = """
    user_id, platform, initial_sync_complete, last_sync_at, last_message_at,
    total_messages_processed, is_syncing, last_error, failure_count
"""


def _row_to_state(row: dict | None) -> SyncState | None:
    if not row:
        return None
    return SyncState(
        user_id=str(row["user_id"]),
        platform=row["platform"],
        initial_sync_complete=row["initial_sync_complete"],
        last_sync_at=row.get("last_sync_at"),
        last_message_at=row.get("last_message_at"),
        total_messages_processed=int(row.get("total_messages_processed") or 0),
        is_syncing=row["is_syncing"],
        last_error=row.get("last_error"),
        failure_count=int(row.get("failure_count") or 0),
    )


@with_db_retry()
async def _set_syncing(user_id: str, platform: str, value: bool) -> None:
    await execute_query(
        """
        INSERT INTO platform_sync_state (user_id, platform, is_syncing)
        VALUES (%s, %s, %s)
        ON CONFLICT (user_id, platform)
        DO UPDATE SET
            is_syncing = EXCLUDED.is_syncing,
            sync_started_at = CASE WHEN EXCLUDED.is_syncing THEN NOW() ELSE NULL END,
            updated_at = NOW()
        """,
        (user_id, platform, value),
    )


class PostgresSyncStateRepository:
    async def get_state(self, user_id: str, platform: str) -> SyncState | None:
        with persistence_errors("get_sync_state"):
            row = await fetch_one(
                f"SELECT {STATE_COLUMNS} FROM platform_sync_state WHERE user_id = %s AND platform = %s",
                (user_id, platform),
            )
        return _row_to_state(row)

    async def list_states(self, user_id: str) -> list[SyncState]:
        with persistence_errors("list_sync_states"):
            rows = await fetch_all(
                f"SELECT {STATE_COLUMNS} FROM platform_sync_state WHERE user_id = %s ORDER BY platform",
                (user_id,),
            )
        return [_row_to_state(row) for row in rows]

    async def save_state(self, state: SyncState) -> None:
        """Upsert everything except is_syncing; timestamps and totals never move backwards."""
        with persistence_errors("save_sync_state"):
            await execute_query(
                """
                INSERT INTO platform_sync_state (
                    user_id, platform, initial_sync_complete, last_sync_at,
                    last_message_at, total_messages_processed, last_error, failure_count
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, platform)
                DO UPDATE SET
                    initial_sync_complete = EXCLUDED.initial_sync_complete,
                    last_sync_at = GREATEST(platform_sync_state.last_sync_at, EXCLUDED.last_sync_at),
                    last_message_at = GREATEST(platform_sync_state.last_message_at, EXCLUDED.last_message_at),
                    total_messages_processed = GREATEST(
                        platform_sync_state.total_messages_processed, EXCLUDED.total_messages_processed
                    ),
                    last_error = EXCLUDED.last_error,
                    failure_count = EXCLUDED.failure_count,
                    updated_at = NOW()
                """,
                (
                    state.user_id,
                    state.platform,
                    state.initial_sync_complete,
                    state.last_sync_at,
                    state.last_message_at,
                    state.total_messages_processed,
                    state.last_error,
                    state.failure_count,
                ),
            )

    async def try_claim(self, user_id: str, platform: str, now: datetime) -> bool:
        with persistence_errors("claim_sync"):
            row = await fetch_one(
                """
                INSERT INTO platform_sync_state (user_id, platform, is_syncing, sync_started_at)
                VALUES (%s, %s, TRUE, %s)
                ON CONFLICT (user_id, platform)
                DO UPDATE SET is_syncing = TRUE, sync_started_at = EXCLUDED.sync_started_at, updated_at = NOW()
                WHERE platform_sync_state.is_syncing = FALSE
                RETURNING user_id
                """,
                (user_id, platform, now),
            )
        return row is not None

    async def set_syncing(self, user_id: str, platform: str, value: bool) -> None:
        with persistence_errors("set_syncing"):
            await _set_syncing(user_id, platform, value)

    async def delete_states(self, user_id: str, platform: str | None = None) -> int:
        query = "DELETE FROM platform_sync_state WHERE user_id = %s"
        params: tuple = (user_id,)
        if platform is not None:
            query += " AND platform = %s"
            params = (user_id, platform)

        with persistence_errors("delete_sync_states"):
            return await execute_query(query, params)
