from datetime import UTC, datetime, timedelta

import pytest

from app.features.contact_sync.domain import (
    ApprovalOutcome,
    BlacklistEntry,
    ContactStatus,
    PlatformIdentity,
    PlatformMessage,
    SenderIdentity,
    UnifiedContact,
)
from app.features.contact_sync.services.approval_gate import (
    PENDING_NOT_FOUND,
    ApprovalGate,
    sender_matches,
)
from app.features.contact_sync.services.identity_resolver import IdentityResolver

USER_ID = "user-123"
T0 = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def _gate(store, **kwargs):
    return ApprovalGate(store, store, store, resolver=IdentityResolver(), **kwargs)


def _message(message_id, sender, content="hello", minutes=0, platform="slack"):
    return PlatformMessage(
        platform=platform,
        platform_message_id=message_id,
        content=content,
        timestamp=T0 + timedelta(minutes=minutes),
        sender=sender,
        thread_id=f"thread-{message_id}",
    )


async def _known_contact(store, platform="slack", platform_id="U1", name="Alice Smith", email=None):
    identity = PlatformIdentity(platform=platform, platform_id=platform_id, display_name=name, email=email)
    return await store.create_contact(UnifiedContact.from_identity(USER_ID, identity))


def test_sender_matching_rules():
    assert sender_matches(SenderIdentity(email="Bob@Acme.com"), SenderIdentity(platform_id="x", email="bob@acme.com"))
    assert not sender_matches(SenderIdentity(platform_id="U1", name="Bob"), SenderIdentity(platform_id="U2", name="Bob"))
    assert sender_matches(SenderIdentity(name="Bob Jones"), SenderIdentity(name=" bob jones"))
    assert not sender_matches(SenderIdentity(name=""), SenderIdentity(name=""))


@pytest.mark.asyncio
async def test_known_contact_is_saved(store):
    contact = await _known_contact(store)

    result = await _gate(store).route(USER_ID, "slack", _message("m1", SenderIdentity(platform_id="U1")))

    assert result.outcome == ApprovalOutcome.SAVED
    assert result.contact.id == contact.id
    assert store.pending == {}


@pytest.mark.asyncio
async def test_known_contact_by_email(store):
    contact = await _known_contact(store, platform="gmail", platform_id="alice@acme.com", email="alice@acme.com")

    result = await _gate(store).route(
        USER_ID, "slack", _message("m1", SenderIdentity(platform_id="U7", email="ALICE@acme.com"))
    )

    assert result.outcome == ApprovalOutcome.SAVED
    assert result.contact.id == contact.id


@pytest.mark.asyncio
async def test_unknown_sender_accumulates_on_one_pending(store):
    gate = _gate(store, preview_length=5)
    sender = SenderIdentity(platform_id="U9", name="Stranger")

    await gate.route(USER_ID, "slack", _message("m2", sender, content="second message", minutes=10))
    await gate.route(USER_ID, "slack", _message("m1", sender, content="first message", minutes=0))
    result = await gate.route(USER_ID, "slack", _message("m1", sender, content="first message", minutes=0))

    assert result.outcome == ApprovalOutcome.PENDING
    [pending] = await gate.list_pending(USER_ID)
    assert pending.message_count == 2
    assert pending.first_message_at == T0
    assert pending.last_message_at == T0 + timedelta(minutes=10)
    assert pending.preview == "secon"
    assert [stub.platform_message_id for stub in pending.messages] == ["m1", "m2"]
    assert store.messages == {}


@pytest.mark.asyncio
async def test_pending_records_potential_match(store):
    contact = await _known_contact(store, platform="gmail", platform_id="mary@acme.com", name="Mary Ann Leeds")

    result = await _gate(store).route(
        USER_ID, "slack", _message("m1", SenderIdentity(platform_id="U5", name="Mary Ann Lee"))
    )

    assert result.pending.potential_match_id == contact.id
    assert result.pending.potential_match_score == 40.0


@pytest.mark.asyncio
async def test_blacklisted_sender_is_blocked(store):
    gate = _gate(store)
    await store.add_blacklist_entry(
        BlacklistEntry(id="b1", user_id=USER_ID, platform="slack", sender=SenderIdentity(platform_id="U9"))
    )

    result = await gate.route(USER_ID, "slack", _message("m1", SenderIdentity(platform_id="U9", name="Spam")))

    assert result.outcome == ApprovalOutcome.BLOCKED
    assert result.blacklist_entry.id == "b1"
    assert store.pending == {}
    assert store.messages == {}


@pytest.mark.asyncio
async def test_approve_creates_contact_and_imports_messages(store):
    gate = _gate(store)
    sender = SenderIdentity(platform_id="U9", name="New Person")
    await gate.route(USER_ID, "slack", _message("m1", sender, content="hi"))
    await gate.route(USER_ID, "slack", _message("m2", sender, content="are you there", minutes=1))
    [pending] = await gate.list_pending(USER_ID)

    result = await gate.approval_decision(USER_ID, pending.id, "approve")

    assert result.success is True
    assert result.messages_imported == 2
    assert store.pending == {}
    contact = store.contacts[result.contact_id]
    assert contact.display_name == "New Person"
    assert contact.has_identity("slack", "U9")
    assert {m.contact_id for m in store.messages.values()} == {contact.id}

    follow_up = await gate.route(USER_ID, "slack", _message("m3", sender, minutes=2))
    assert follow_up.outcome == ApprovalOutcome.SAVED


@pytest.mark.asyncio
async def test_approve_reuses_existing_contact(store):
    gate = _gate(store)
    sender = SenderIdentity(platform_id="U9", name="Person")
    await gate.route(USER_ID, "slack", _message("m1", sender))
    [pending] = await gate.list_pending(USER_ID)
    contact = await _known_contact(store, platform_id="U9", name="Person")

    result = await gate.approval_decision(USER_ID, pending.id, "approve")

    assert result.contact_id == contact.id
    assert len(store.contacts) == 1


@pytest.mark.asyncio
async def test_reject_blacklists_and_discards(store):
    gate = _gate(store)
    sender = SenderIdentity(platform_id="U9", name="Spammer")
    await gate.route(USER_ID, "slack", _message("m1", sender))
    [pending] = await gate.list_pending(USER_ID)

    result = await gate.approval_decision(USER_ID, pending.id, "reject")

    assert result.success is True
    assert store.pending == {}
    assert store.messages == {}
    [entry] = await gate.list_blacklist(USER_ID, "slack")
    assert entry.id == result.blacklist_entry_id

    again = await gate.route(USER_ID, "slack", _message("m2", sender))
    assert again.outcome == ApprovalOutcome.BLOCKED

    assert await gate.remove_blacklist_entry(USER_ID, entry.id) is True
    assert await gate.remove_blacklist_entry(USER_ID, entry.id) is False
    after_removal = await gate.route(USER_ID, "slack", _message("m3", sender))
    assert after_removal.outcome == ApprovalOutcome.PENDING


@pytest.mark.asyncio
async def test_decision_on_missing_pending(store):
    result = await _gate(store).approval_decision(USER_ID, "missing", "approve")

    assert result.success is False
    assert result.error == PENDING_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_decision_is_rejected(store):
    with pytest.raises(ValueError):
        await _gate(store).approval_decision(USER_ID, "p1", "maybe")


@pytest.mark.asyncio
async def test_handle_incoming_persists_once(store):
    await _known_contact(store)
    gate = _gate(store)
    message = _message("m1", SenderIdentity(platform_id="U1"))

    assert await gate.handle_incoming(USER_ID, message) is True
    assert await gate.handle_incoming(USER_ID, message) is False
    assert len(store.messages) == 1


@pytest.mark.asyncio
async def test_list_pending_most_recent_first(store):
    gate = _gate(store)
    await gate.route(USER_ID, "slack", _message("m1", SenderIdentity(platform_id="U8"), minutes=0))
    await gate.route(USER_ID, "slack", _message("m2", SenderIdentity(platform_id="U9"), minutes=30))

    pending = await gate.list_pending(USER_ID)

    assert [p.sender.platform_id for p in pending] == ["U9", "U8"]


@pytest.mark.asyncio
async def test_only_live_contacts_count_as_known(store):
    archived = await _known_contact(store, platform="gmail", platform_id="old@acme.com", email="old@acme.com")
    await store.update_contact_status(USER_ID, archived.id, ContactStatus.ARCHIVED_AS_DUPLICATE)
    in_review = await _known_contact(store, platform="gmail", platform_id="new@acme.com", email="new@acme.com")
    await store.update_contact_status(USER_ID, in_review.id, ContactStatus.PENDING_MERGE_REVIEW)
    gate = _gate(store)

    held = await gate.route(USER_ID, "slack", _message("m1", SenderIdentity(platform_id="U7", email="old@acme.com")))
    saved = await gate.route(USER_ID, "slack", _message("m2", SenderIdentity(platform_id="U8", email="new@acme.com")))

    assert held.outcome == ApprovalOutcome.PENDING
    assert saved.outcome == ApprovalOutcome.SAVED
    assert saved.contact.id == in_review.id
