"""
Scheduled contact sync.

Every cycle lists the users holding a token for any configured platform and
runs a unified sync for each. A failing user is recorded and skipped; the
cycle always reaches the remaining users.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from app.config import settings
from app.db.pool import db_pool
from app.features.contact_sync.container import ContactSyncContainer, build_container
from app.features.contact_sync.domain import UnifiedSyncResult, utcnow
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JOB_INTERVAL_MINUTES = 15
MAX_CONCURRENT_USERS = 5


@dataclass
class ContactSyncJobMetrics:
    started_at: datetime = field(default_factory=utcnow)
    users_processed: int = 0
    users_failed: int = 0
    new_messages: int = 0
    cross_platform_merges: int = 0
    errors: list[dict] = field(default_factory=list)

    def record_result(self, result: UnifiedSyncResult) -> None:
        self.users_processed += 1
        self.new_messages += result.total_messages
        self.cross_platform_merges += result.cross_platform_merges

    def record_failure(self, user_id: str, error: Exception) -> None:
        self.users_processed += 1
        self.users_failed += 1
        self.errors.append({"user_id": user_id, "error": str(error), "error_type": type(error).__name__})

    def to_dict(self) -> dict:
        return {
            "job_run": "contact_sync",
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round((utcnow() - self.started_at).total_seconds(), 2),
            "users_processed": self.users_processed,
            "users_failed": self.users_failed,
            "new_messages": self.new_messages,
            "cross_platform_merges": self.cross_platform_merges,
            "errors_count": len(self.errors),
        }


class ContactSyncJob:
    def __init__(self, container: ContactSyncContainer, max_concurrent_users: int = MAX_CONCURRENT_USERS):
        self.container = container
        self.max_concurrent_users = max(1, max_concurrent_users)
        self.is_running = False

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Contact sync job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        metrics = ContactSyncJobMetrics()
        try:
            platforms = self.container.orchestrator.platforms
            user_ids = await self.container.stores.tokens.list_users_with_tokens(platforms)
            logger.info("Starting contact sync job", users=len(user_ids), platforms=platforms)

            semaphore = asyncio.Semaphore(self.max_concurrent_users)
            await asyncio.gather(*(self._sync_user(semaphore, user_id, metrics) for user_id in user_ids))
        finally:
            self.is_running = False

        summary = metrics.to_dict()
        logger.info("Contact sync job completed", **summary)
        return summary

    async def _sync_user(self, semaphore: asyncio.Semaphore, user_id: str, metrics: ContactSyncJobMetrics) -> None:
        async with semaphore:
            try:
                result = await self.container.orchestrator.sync_all_platforms(user_id)
            except Exception as e:
                metrics.record_failure(user_id, e)
                logger.error("Contact sync failed for user", user_id=user_id, error=str(e))
                return
            metrics.record_result(result)


async def start_contact_sync_scheduler() -> None:
    """Worker entry point: sync every connected user on a fixed interval."""
    await db_pool.initialize()
    container = build_container(config=settings)
    job = ContactSyncJob(container)
    logger.info("Starting contact sync scheduler", interval_minutes=JOB_INTERVAL_MINUTES)

    try:
        while True:
            try:
                await job.run_once()
            except Exception as e:
                logger.error("Error in contact sync scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(JOB_INTERVAL_MINUTES * 60)
    finally:
        await container.close()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_contact_sync_scheduler())
