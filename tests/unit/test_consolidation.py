from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import copy

import pytest

from app.features.contact_sync.domain import (
    ContactStatus,
    Message,
    PersistenceError,
    PlatformIdentity,
    UnifiedContact,
)
from app.features.contact_sync.services.consolidation import ContactConsolidator, grouping_key, plan_merge

USER_ID = "user-123"
T0 = datetime(2024, 5, 1, tzinfo=UTC)


def _contact(contact_id, name, email=None, platforms=(), minutes=0, status=ContactStatus.ACTIVE, photo=None):
    identities = {
        platform: PlatformIdentity(platform=platform, platform_id=platform_id, display_name=name, email=email)
        for platform, platform_id in platforms
    }
    return UnifiedContact(
        id=contact_id,
        user_id=USER_ID,
        display_name=name,
        email=email,
        photo_url=photo,
        status=status,
        identities=identities,
        created_at=T0 + timedelta(minutes=minutes),
    )


def _owned_message(contact_id, message_id, platform="slack", minutes=0):
    return Message(
        user_id=USER_ID,
        contact_id=contact_id,
        platform=platform,
        platform_message_id=message_id,
        content=f"note {message_id}",
        timestamp=T0 + timedelta(minutes=minutes),
    )


def test_grouping_key():
    assert grouping_key(_contact("c1", "Alice", email=" Alice@Acme.com ")) == "email:alice@acme.com"
    assert grouping_key(_contact("c1", "Alice Smith")) == "name:Alice Smith"
    assert grouping_key(_contact("c1", "Unknown Sender")) is None
    assert grouping_key(_contact("c1", "")) is None


def test_plan_merge_keeps_oldest_and_best_fields():
    older = _contact("c1", "alice@acme.com", email="alice@acme.com", platforms=[("gmail", "alice@acme.com")])
    newer = _contact(
        "c2", "Alice Smith", email="alice@acme.com", platforms=[("slack", "U1")], minutes=5, photo="http://img"
    )

    plan = plan_merge([newer, older])

    assert plan.primary.id == "c1"
    assert plan.merged_ids == ["c2"]
    assert set(plan.primary.identities) == {"gmail", "slack"}
    assert plan.primary.display_name == "Alice Smith"
    assert plan.primary.photo_url == "http://img"
    assert plan.primary.status == ContactStatus.ACTIVE
    # the input contact is not mutated
    assert set(older.identities) == {"gmail"}


def test_plan_merge_skips_conflicting_identity():
    first = _contact("c1", "Alice", email="a@acme.com", platforms=[("slack", "U1")])
    second = _contact("c2", "Alice", email="a@acme.com", platforms=[("slack", "U2")], minutes=1)
    third = _contact("c3", "Alice", email="a@acme.com", platforms=[("gmail", "a@acme.com")], minutes=2)

    plan = plan_merge([first, second, third])

    assert plan.merged_ids == ["c3"]
    assert plan.primary.identities["slack"].platform_id == "U1"


def test_plan_merge_with_explicit_primary():
    first = _contact("c1", "Alice", platforms=[("slack", "U1")])
    second = _contact("c2", "Alice", platforms=[("gmail", "a@acme.com")], minutes=1)

    plan = plan_merge([first, second], primary_id="c2")

    assert plan.primary.id == "c2"
    assert plan.merged_ids == ["c1"]


def test_group_only_considers_active_contacts():
    contacts = [
        _contact("c1", "Alice", email="a@acme.com"),
        _contact("c2", "Alice", email="a@acme.com", minutes=1, status=ContactStatus.PENDING_MERGE_REVIEW),
        _contact("c3", "Bob"),
        _contact("c4", "Bob", minutes=1),
    ]

    groups = ContactConsolidator.group(contacts)

    assert [[c.id for c in group] for group in groups] == [["c3", "c4"]]


@pytest.mark.asyncio
async def test_consolidate_merges_and_moves_messages(store):
    await store.create_contact(_contact("c1", "Alice", email="a@acme.com", platforms=[("slack", "U1")]))
    await store.create_contact(
        _contact("c2", "Alice Smith", email="a@acme.com", platforms=[("gmail", "a@acme.com")], minutes=1)
    )
    await store.save_message(
        Message(
            user_id=USER_ID,
            contact_id="c2",
            platform="gmail",
            platform_message_id="m1",
            content="hello",
            timestamp=T0,
        )
    )

    result = await ContactConsolidator(store).consolidate(USER_ID)

    assert result.merged_groups == 1
    assert result.merged_contacts == 1
    assert list(store.contacts) == ["c1"]
    assert set(store.contacts["c1"].identities) == {"slack", "gmail"}
    assert [m.contact_id for m in store.messages.values()] == ["c1"]


@pytest.mark.asyncio
async def test_failed_merge_is_reported_and_left_unmerged(store):
    await store.create_contact(_contact("c1", "Alice", email="a@acme.com", platforms=[("slack", "U1")]))
    await store.create_contact(_contact("c2", "Alice", email="a@acme.com", platforms=[("gmail", "a")], minutes=1))
    store.merge_contacts = AsyncMock(side_effect=PersistenceError("deadlock detected"))

    result = await ContactConsolidator(store).consolidate(USER_ID)

    assert result.merged_contacts == 0
    assert len(result.errors) == 1
    assert "deadlock detected" in result.errors[0]
    assert set(store.contacts) == {"c1", "c2"}


@pytest.mark.asyncio
async def test_merging_three_contacts_keeps_every_message(store):
    await store.create_contact(_contact("c1", "Alice", email="a@acme.com", platforms=[("slack", "U1")]))
    await store.create_contact(
        _contact("c2", "Alice Smith", email="a@acme.com", platforms=[("gmail", "a@acme.com")], minutes=1)
    )
    await store.create_contact(_contact("c3", "alice", email="A@acme.com", minutes=2))
    for message in [
        _owned_message("c1", "s1"),
        _owned_message("c1", "s2", minutes=1),
        _owned_message("c2", "g1", platform="gmail"),
        _owned_message("c3", "s3", minutes=2),
    ]:
        await store.save_message(message)

    result = await ContactConsolidator(store).consolidate(USER_ID)

    assert result.merged_contacts == 2
    assert list(store.contacts) == ["c1"]
    assert set(store.contacts["c1"].identities) == {"slack", "gmail"}
    assert sorted(m.platform_message_id for m in store.messages.values()) == ["g1", "s1", "s2", "s3"]
    assert {m.contact_id for m in store.messages.values()} == {"c1"}
    assert await store.count_messages(USER_ID, "c1") == 4


@pytest.mark.asyncio
async def test_consolidation_rerun_after_convergence_changes_nothing(store):
    await store.create_contact(_contact("c1", "Alice", email="a@acme.com", platforms=[("slack", "U1")]))
    await store.create_contact(_contact("c2", "Alice", email="a@acme.com", platforms=[("gmail", "a")], minutes=1))
    # a second Slack identity cannot join the survivor, so this one stays apart
    await store.create_contact(_contact("c3", "Alice", email="a@acme.com", platforms=[("slack", "U2")], minutes=2))
    await store.save_message(_owned_message("c2", "g1", platform="gmail"))
    await store.save_message(_owned_message("c3", "s1"))
    consolidator = ContactConsolidator(store)

    first = await consolidator.consolidate(USER_ID)
    contacts = copy.deepcopy(store.contacts)
    messages = copy.deepcopy(store.messages)
    second = await consolidator.consolidate(USER_ID)

    assert first.merged_contacts == 1
    assert second.merged_groups == 0
    assert second.merged_contacts == 0
    assert second.errors == []
    assert store.contacts == contacts
    assert store.messages == messages
    assert set(store.contacts) == {"c1", "c3"}
