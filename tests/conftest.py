import copy
from datetime import datetime

import pytest

from app.auth.verify import auth_dependency
from app.config import Settings
from app.features.contact_sync.container import ContactSyncStores, build_container
from app.features.contact_sync.domain import (
    BlacklistEntry,
    ContactStatus,
    FetchOptions,
    IdentityConflictError,
    MergePlan,
    MergeReview,
    Message,
    OutgoingMessage,
    PendingApproval,
    PendingMessageStub,
    PersistenceError,
    PlatformIdentity,
    PlatformMessage,
    ScoredMatch,
    SenderIdentity,
    SendResult,
    SyncState,
    UnifiedContact,
    new_id,
)
from app.features.contact_sync.platforms.base import PlatformAdapter

USER_ID = "user-123"


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": USER_ID}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class InMemoryStore:
    """Every contact sync storage protocol backed by dicts, with failure injection."""

    def __init__(self):
        self.contacts: dict[str, UnifiedContact] = {}
        self.reviews: dict[str, MergeReview] = {}
        self.messages: dict[tuple[str, str, str], Message] = {}
        self.pending: dict[str, PendingApproval] = {}
        self.blacklist: dict[str, BlacklistEntry] = {}
        self.states: dict[tuple[str, str], SyncState] = {}
        self.tokens: dict[tuple[str, str], str] = {}
        # platform_message_id -> number of save attempts that should still fail
        self.failing_saves: dict[str, int] = {}
        self.fail_clear_syncing = False
        self.save_attempts = 0

    # -- ContactStore ---------------------------------------------------

    def _owner(self, user_id: str, platform: str, platform_id: str) -> UnifiedContact | None:
        for contact in self.contacts.values():
            if contact.user_id == user_id and contact.has_identity(platform, platform_id):
                return contact
        return None

    def _check_identities(self, contact: UnifiedContact) -> None:
        for identity in contact.identities.values():
            owner = self._owner(contact.user_id, identity.platform, identity.platform_id)
            if owner is not None and owner.id != contact.id:
                raise IdentityConflictError(identity.platform, identity.platform_id, owner.id)

    async def list_contacts(self, user_id, include_archived=False):
        contacts = [
            c
            for c in self.contacts.values()
            if c.user_id == user_id and (include_archived or c.status != ContactStatus.ARCHIVED_AS_DUPLICATE)
        ]
        return copy.deepcopy(sorted(contacts, key=lambda c: (c.created_at, c.id)))

    async def get_contact(self, user_id, contact_id):
        contact = self.contacts.get(contact_id)
        if contact is None or contact.user_id != user_id:
            return None
        return copy.deepcopy(contact)

    async def find_contact_by_identity(self, user_id, platform, platform_id):
        owner = self._owner(user_id, platform, platform_id)
        return copy.deepcopy(owner) if owner is not None else None

    async def list_identity_links(self, user_id, platform):
        links = {}
        for contact in self.contacts.values():
            identity = contact.identity_for(platform)
            if contact.user_id == user_id and identity is not None:
                links[identity.platform_id] = contact.id
        return links

    async def create_contact(self, contact):
        self._check_identities(contact)
        self.contacts[contact.id] = copy.deepcopy(contact)
        return contact

    async def create_contact_with_review(self, contact, review):
        await self.create_contact(contact)
        self.reviews[review.id] = copy.deepcopy(review)
        return contact

    async def link_identity(self, contact, identity):
        owner = self._owner(contact.user_id, identity.platform, identity.platform_id)
        if owner is not None and owner.id != contact.id:
            raise IdentityConflictError(identity.platform, identity.platform_id, owner.id)
        stored = self.contacts[contact.id]
        stored.identities[identity.platform] = copy.deepcopy(identity)
        stored.email = contact.email
        stored.photo_url = contact.photo_url
        return contact

    async def update_contact_status(self, user_id, contact_id, status):
        contact = self.contacts.get(contact_id)
        if contact is not None and contact.user_id == user_id:
            contact.status = status

    async def merge_contacts(self, user_id, plan: MergePlan):
        merged = set(plan.merged_ids)
        for contact_id in merged:
            self.contacts.pop(contact_id, None)
        self.contacts[plan.primary.id] = copy.deepcopy(plan.primary)

        moved = 0
        for message in self.messages.values():
            if message.user_id == user_id and message.contact_id in merged:
                message.contact_id = plan.primary.id
                moved += 1
        for pending in self.pending.values():
            if pending.potential_match_id in merged:
                pending.potential_match_id = plan.primary.id
        for review_id in [
            r.id for r in self.reviews.values() if r.contact_id in merged or r.candidate_contact_id in merged
        ]:
            del self.reviews[review_id]
        return moved

    async def count_contacts(self, user_id):
        return len(await self.list_contacts(user_id))

    async def list_merge_reviews(self, user_id):
        reviews = [r for r in self.reviews.values() if r.user_id == user_id]
        return copy.deepcopy(sorted(reviews, key=lambda r: r.created_at, reverse=True))

    async def get_merge_review(self, user_id, review_id):
        review = self.reviews.get(review_id)
        return copy.deepcopy(review) if review is not None and review.user_id == user_id else None

    async def delete_merge_review(self, user_id, review_id):
        review = self.reviews.get(review_id)
        if review is None or review.user_id != user_id:
            return False
        del self.reviews[review_id]
        return True

    # -- MessageStore ---------------------------------------------------

    async def message_exists(self, user_id, platform, platform_message_id):
        return (user_id, platform, platform_message_id) in self.messages

    def _insert_message(self, message: Message) -> bool:
        key = (message.user_id, message.platform, message.platform_message_id)
        if key in self.messages:
            return False
        self.messages[key] = copy.deepcopy(message)
        return True

    async def save_message(self, message):
        self.save_attempts += 1
        remaining = self.failing_saves.get(message.platform_message_id, 0)
        if remaining:
            self.failing_saves[message.platform_message_id] = remaining - 1
            raise PersistenceError("connection reset", operation="save_message", recoverable=True)
        return self._insert_message(message)

    async def list_messages(self, user_id, contact_id=None):
        messages = [
            m
            for m in self.messages.values()
            if m.user_id == user_id and (contact_id is None or m.contact_id == contact_id)
        ]
        return copy.deepcopy(sorted(messages, key=lambda m: (m.timestamp, m.id)))

    async def count_messages(self, user_id, contact_id=None):
        return len(await self.list_messages(user_id, contact_id))

    # -- ApprovalStore --------------------------------------------------

    async def find_pending(self, user_id, platform, sender_key):
        for pending in self.pending.values():
            if pending.user_id == user_id and pending.platform == platform and pending.sender.key == sender_key:
                return copy.deepcopy(pending)
        return None

    async def get_pending(self, user_id, pending_id):
        pending = self.pending.get(pending_id)
        return copy.deepcopy(pending) if pending is not None and pending.user_id == user_id else None

    async def list_pending(self, user_id):
        pending = [p for p in self.pending.values() if p.user_id == user_id]
        pending.sort(key=lambda p: p.last_message_at, reverse=True)
        return copy.deepcopy(pending)

    async def add_pending_message(
        self,
        user_id,
        platform,
        sender: SenderIdentity,
        stub: PendingMessageStub,
        preview: str,
        potential_match: ScoredMatch | None = None,
    ):
        pending = next(
            (
                p
                for p in self.pending.values()
                if p.user_id == user_id and p.platform == platform and p.sender.key == sender.key
            ),
            None,
        )
        if pending is None:
            pending = PendingApproval(
                id=new_id(),
                user_id=user_id,
                platform=platform,
                sender=sender,
                message_count=0,
                first_message_at=stub.timestamp,
                last_message_at=stub.timestamp,
                preview=preview,
                potential_match_id=potential_match.contact_id if potential_match else None,
                potential_match_score=potential_match.score if potential_match else None,
                potential_match_reasons=list(potential_match.reasons) if potential_match else [],
            )
            self.pending[pending.id] = pending

        if all(s.platform_message_id != stub.platform_message_id for s in pending.messages):
            pending.messages.append(copy.deepcopy(stub))
            pending.messages.sort(key=lambda s: s.timestamp)
            pending.message_count += 1
            if stub.timestamp >= pending.last_message_at:
                pending.preview = preview
            pending.first_message_at = min(pending.first_message_at, stub.timestamp)
            pending.last_message_at = max(pending.last_message_at, stub.timestamp)
        return copy.deepcopy(pending)

    async def approve_pending(self, user_id, pending_id, contact, create_contact=True):
        pending = self.pending.get(pending_id)
        if pending is None or pending.user_id != user_id:
            return None
        if create_contact:
            await self.create_contact(contact)
        imported = 0
        for stub in pending.messages:
            if self._insert_message(stub.to_message(user_id, contact.id, pending.platform)):
                imported += 1
        del self.pending[pending_id]
        return imported

    async def reject_pending(self, user_id, pending_id, entry):
        pending = self.pending.get(pending_id)
        if pending is None or pending.user_id != user_id:
            return False
        self.blacklist[entry.id] = copy.deepcopy(entry)
        del self.pending[pending_id]
        return True

    async def list_blacklist(self, user_id, platform=None):
        entries = [
            e
            for e in self.blacklist.values()
            if e.user_id == user_id and (platform is None or e.platform == platform)
        ]
        return copy.deepcopy(sorted(entries, key=lambda e: (e.created_at, e.id)))

    async def add_blacklist_entry(self, entry):
        self.blacklist[entry.id] = copy.deepcopy(entry)
        return entry

    async def remove_blacklist_entry(self, user_id, entry_id):
        entry = self.blacklist.get(entry_id)
        if entry is None or entry.user_id != user_id:
            return False
        del self.blacklist[entry_id]
        return True

    # -- SyncStateRepository --------------------------------------------

    async def get_state(self, user_id, platform):
        state = self.states.get((user_id, platform))
        return copy.deepcopy(state) if state is not None else None

    async def list_states(self, user_id):
        states = [s for (uid, _), s in self.states.items() if uid == user_id]
        return copy.deepcopy(sorted(states, key=lambda s: s.platform))

    async def save_state(self, state):
        current = self.states.get((state.user_id, state.platform))
        saved = copy.deepcopy(state)
        if current is not None:
            saved.is_syncing = current.is_syncing
            saved.total_messages_processed = max(current.total_messages_processed, state.total_messages_processed)
            for field_name in ("last_sync_at", "last_message_at"):
                old = getattr(current, field_name)
                new = getattr(state, field_name)
                setattr(saved, field_name, max(old, new) if old and new else old or new)
        else:
            saved.is_syncing = False
        self.states[(state.user_id, state.platform)] = saved

    async def try_claim(self, user_id, platform, now: datetime):
        state = self.states.get((user_id, platform))
        if state is None:
            self.states[(user_id, platform)] = SyncState(user_id, platform, is_syncing=True)
            return True
        if state.is_syncing:
            return False
        state.is_syncing = True
        return True

    async def set_syncing(self, user_id, platform, value):
        if self.fail_clear_syncing and not value:
            raise PersistenceError("could not clear flag", operation="set_syncing")
        state = self.states.setdefault((user_id, platform), SyncState(user_id, platform))
        state.is_syncing = value

    async def delete_states(self, user_id, platform=None):
        keys = [k for k in self.states if k[0] == user_id and (platform is None or k[1] == platform)]
        for key in keys:
            del self.states[key]
        return len(keys)

    # -- AccessTokenProvider --------------------------------------------

    async def get_access_token(self, user_id, platform):
        return self.tokens.get((user_id, platform))

    async def list_users_with_tokens(self, platforms):
        return sorted({uid for (uid, platform) in self.tokens if platform in platforms})


class FakeAdapter(PlatformAdapter):
    """Scriptable adapter: returns the configured contacts and messages."""

    def __init__(self, platform: str, tokens: InMemoryStore):
        super().__init__(default_fetch_limit=200)
        self.platform = platform
        self.tokens = tokens
        self.contacts: list[PlatformIdentity] = []
        self.messages: list[PlatformMessage] = []
        self.fetch_error: Exception | None = None
        self.contact_fetches = 0
        self.message_fetches: list[FetchOptions] = []
        self.sent: list[OutgoingMessage] = []

    async def is_authenticated(self, user_id):
        return bool(await self.tokens.get_access_token(user_id, self.platform))

    async def fetch_contacts(self, user_id):
        self.contact_fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return copy.deepcopy(self.contacts)

    async def fetch_messages(self, user_id, options):
        self.message_fetches.append(options)
        if self.fetch_error is not None:
            raise self.fetch_error
        messages = sorted(
            (m for m in self.messages if options.since is None or m.timestamp >= options.since),
            key=lambda m: m.timestamp,
        )
        return copy.deepcopy(messages[: options.limit])

    async def send_message(self, user_id, outgoing):
        self.sent.append(outgoing)
        return SendResult(success=True, platform_message_id=f"sent-{len(self.sent)}")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def user_id():
    return USER_ID


@pytest.fixture
def make_adapter(store):
    def _make(platform: str, connected: bool = True) -> FakeAdapter:
        if connected:
            store.tokens[(USER_ID, platform)] = f"{platform}-token"
        return FakeAdapter(platform, store)

    return _make


@pytest.fixture
def build_sync(store):
    """Wire the real services over the in-memory store and the given adapters."""

    def _build(*adapters: FakeAdapter, **overrides):
        config = Settings(
            CONTACT_SYNC_PLATFORMS=[a.platform for a in adapters],
            CONTACT_SYNC_COOLDOWN_SECONDS=overrides.pop("cooldown_seconds", 0),
            **overrides,
        )
        stores = ContactSyncStores(
            contacts=store, messages=store, approvals=store, sync_state=store, tokens=store
        )
        return build_container(stores=stores, adapters={a.platform: a for a in adapters}, config=config)

    return _build
