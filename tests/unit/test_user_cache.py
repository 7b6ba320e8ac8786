import pytest

from app.features.contact_sync.services.user_cache import UserCache


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = UserCache(ttl_seconds=10, clock=clock)
    cache.set("u1", {"slack": {}})

    clock.now = 5
    assert cache.get("u1") == {"slack": {}}

    clock.now = 16
    assert cache.get("u1") is None
    assert len(cache) == 0


def test_least_recently_used_user_is_dropped():
    cache = UserCache(max_users=2)
    cache.set("u1", 1)
    cache.set("u2", 2)
    cache.get("u1")
    cache.set("u3", 3)

    assert "u1" in cache
    assert "u2" not in cache
    assert "u3" in cache


def test_get_or_create_and_evict():
    cache = UserCache()
    created = cache.get_or_create("u1", dict)
    created["slack"] = {"U1": "c1"}

    assert cache.get_or_create("u1", dict) is created

    cache.evict("u1")
    assert cache.get("u1") is None


def test_values_are_per_user():
    cache = UserCache()
    cache.get_or_create("u1", dict)["slack"] = {"U1": "c1"}

    assert cache.get_or_create("u2", dict) == {}


def test_max_users_must_be_positive():
    with pytest.raises(ValueError):
        UserCache(max_users=0)
