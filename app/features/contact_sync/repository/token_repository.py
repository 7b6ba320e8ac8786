"""
Read-only access to platform OAuth tokens written by the connect flows.
"""

from app.db.helpers import fetch_all, fetch_val
from app.features.contact_sync.repository.common import persistence_errors


class PostgresTokenProvider:
    async def get_access_token(self, user_id: str, platform: str) -> str | None:
        """Return the stored token unless it has expired."""
        with persistence_errors("get_access_token"):
            return await fetch_val(
                """
                SELECT access_token FROM platform_tokens
                WHERE user_id = %s AND platform = %s
                  AND (expires_at IS NULL OR expires_at > NOW())
                """,
                (user_id, platform),
            )

    async def list_users_with_tokens(self, platforms: list[str]) -> list[str]:
        with persistence_errors("list_users_with_tokens"):
            rows = await fetch_all(
                """
                SELECT DISTINCT user_id FROM platform_tokens
                WHERE platform = ANY(%s)
                  AND (expires_at IS NULL OR expires_at > NOW())
                ORDER BY user_id
                """,
                (list(platforms),),
            )
        return [str(row["user_id"]) for row in rows]
