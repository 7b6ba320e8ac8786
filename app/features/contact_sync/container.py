"""
Wiring for the contact sync feature.

Builds the Postgres stores, services, platform adapters and the
orchestrator from settings. The API keeps one container on app.state;
the worker builds its own.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from functools import partial

from app.config import Settings, settings
from app.features.contact_sync.platforms.base import PlatformAdapter
from app.features.contact_sync.platforms.gmail import GmailAdapter
from app.features.contact_sync.platforms.rate_limited_client import RateLimitedClient
from app.features.contact_sync.platforms.slack import SlackAdapter
from app.features.contact_sync.repository.approval_repository import PostgresApprovalStore
from app.features.contact_sync.repository.base import (
    AccessTokenProvider,
    ApprovalStore,
    ContactStore,
    MessageStore,
    SyncStateRepository,
)
from app.features.contact_sync.repository.contact_repository import PostgresContactStore
from app.features.contact_sync.repository.message_repository import PostgresMessageStore
from app.features.contact_sync.repository.sync_state_repository import PostgresSyncStateRepository
from app.features.contact_sync.repository.token_repository import PostgresTokenProvider
from app.features.contact_sync.services.approval_gate import ApprovalGate
from app.features.contact_sync.services.bot_detection import BotDetector
from app.features.contact_sync.services.consolidation import ContactConsolidator
from app.features.contact_sync.services.deduplication import DeduplicationFilter
from app.features.contact_sync.services.identity_resolver import IdentityResolver
from app.features.contact_sync.services.orchestrator import SyncOrchestrator
from app.features.contact_sync.services.sync_state import SyncStateStore
from app.features.contact_sync.services.unification import ContactUnificationService
from app.features.contact_sync.services.user_cache import UserCache
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class ContactSyncStores:
    contacts: ContactStore
    messages: MessageStore
    approvals: ApprovalStore
    sync_state: SyncStateRepository
    tokens: AccessTokenProvider


def postgres_stores() -> ContactSyncStores:
    return ContactSyncStores(
        contacts=PostgresContactStore(),
        messages=PostgresMessageStore(),
        approvals=PostgresApprovalStore(),
        sync_state=PostgresSyncStateRepository(),
        tokens=PostgresTokenProvider(),
    )


def _user_cache(config: Settings) -> UserCache:
    return UserCache(max_users=config.USER_CACHE_MAX_USERS, ttl_seconds=config.USER_CACHE_TTL_SECONDS)


def build_adapters(tokens: AccessTokenProvider, config: Settings) -> dict[str, PlatformAdapter]:
    """One adapter per configured platform, each with its own rate limiter."""
    adapters: dict[str, PlatformAdapter] = {}
    for platform in config.CONTACT_SYNC_PLATFORMS:
        limiter = RateLimitedClient(
            max_retries=config.RATE_LIMIT_MAX_RETRIES,
            default_retry_after=config.RATE_LIMIT_DEFAULT_RETRY_AFTER,
            platform=platform,
        )
        if platform == "slack":
            adapters[platform] = SlackAdapter(
                tokens,
                limiter,
                directory_cache=_user_cache(config),
                self_id_cache=_user_cache(config),
                timeout=config.PLATFORM_REQUEST_TIMEOUT,
                default_fetch_limit=config.CONTACT_SYNC_MESSAGE_FETCH_LIMIT,
            )
        elif platform == "gmail":
            adapters[platform] = GmailAdapter(
                tokens,
                limiter,
                self_address_cache=_user_cache(config),
                timeout=config.PLATFORM_REQUEST_TIMEOUT,
                default_fetch_limit=config.CONTACT_SYNC_MESSAGE_FETCH_LIMIT,
            )
        else:
            logger.warning("Skipping unsupported contact sync platform", platform=platform)
    return adapters


@dataclass(slots=True)
class ContactSyncContainer:
    stores: ContactSyncStores
    adapters: dict[str, PlatformAdapter]
    approval_gate: ApprovalGate
    orchestrator: SyncOrchestrator

    async def close(self) -> None:
        for platform, adapter in self.adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.error("Error closing platform adapter", platform=platform, error=str(e))


def build_container(
    stores: ContactSyncStores | None = None,
    adapters: Mapping[str, PlatformAdapter] | None = None,
    config: Settings = settings,
) -> ContactSyncContainer:
    stores = stores or postgres_stores()
    adapters = dict(adapters) if adapters is not None else build_adapters(stores.tokens, config)

    resolver = IdentityResolver()
    approval_gate = ApprovalGate(
        stores.contacts,
        stores.messages,
        stores.approvals,
        resolver=resolver,
        preview_length=config.PENDING_PREVIEW_LENGTH,
        potential_match_threshold=config.CONTACT_SYNC_AUTO_CREATE_THRESHOLD,
    )
    unification = ContactUnificationService(
        stores.contacts,
        approval_gate,
        resolver,
        BotDetector(),
        auto_merge_threshold=config.CONTACT_SYNC_AUTO_MERGE_THRESHOLD,
        auto_create_threshold=config.CONTACT_SYNC_AUTO_CREATE_THRESHOLD,
    )
    orchestrator = SyncOrchestrator(
        adapters=adapters,
        contact_store=stores.contacts,
        message_store=stores.messages,
        sync_state=SyncStateStore(stores.sync_state, cooldown_seconds=config.CONTACT_SYNC_COOLDOWN_SECONDS),
        unification=unification,
        approval_gate=approval_gate,
        consolidator=ContactConsolidator(stores.contacts),
        identity_cache=_user_cache(config),
        dedup_factory=partial(
            DeduplicationFilter,
            window_size=config.DEDUP_WINDOW_SIZE,
            similarity_threshold=config.DEDUP_SIMILARITY_THRESHOLD,
            snippet_length=config.DEDUP_SNIPPET_LENGTH,
        ),
        initial_lookback_days=config.CONTACT_SYNC_INITIAL_LOOKBACK_DAYS,
        message_fetch_limit=config.CONTACT_SYNC_MESSAGE_FETCH_LIMIT,
        concurrent_platforms=config.CONTACT_SYNC_CONCURRENT_PLATFORMS,
        message_save_attempts=config.CONTACT_SYNC_MESSAGE_SAVE_ATTEMPTS,
    )

    # push-style deliveries go through the same gate as batch syncs
    for adapter in adapters.values():
        adapter.bind_message_handler(approval_gate.handle_incoming)

    logger.info("Contact sync container built", platforms=list(adapters))
    return ContactSyncContainer(
        stores=stores,
        adapters=adapters,
        approval_gate=approval_gate,
        orchestrator=orchestrator,
    )
