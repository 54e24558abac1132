import asyncio

import pytest

from ChannelSync.conftest import FakeProfileClient
from ChannelSync.identity import IdentityResolver, ProfileCache, handle_key, normalize_handle
from ChannelSync.models import UNKNOWN, Profile


@pytest.mark.parametrize("raw", ["alice", "Bob_99", "x"])
def test_normalize_prefixes_sigil(raw):
    assert normalize_handle(raw) == "@" + raw


def test_normalize_keeps_existing_sigil_and_is_idempotent():
    assert normalize_handle("@x") == "@x"
    for raw in ("alice", "@alice", "  carol ", UNKNOWN):
        once = normalize_handle(raw)
        assert normalize_handle(once) == once


def test_normalize_unknown_and_blank():
    assert normalize_handle(UNKNOWN) == UNKNOWN
    assert normalize_handle("") == UNKNOWN
    assert normalize_handle(None) == UNKNOWN


def test_handle_key_is_case_insensitive():
    assert handle_key("Alice") == handle_key("@alice")
    assert handle_key(UNKNOWN) == ""


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_resolver_caches_within_ttl_and_refetches_after():
    clock = FakeClock()
    client = FakeProfileClient({"M1": ("alice", "a@x.com")})
    resolver = IdentityResolver(client, ProfileCache(ttl_seconds=3600, clock=clock))

    first = asyncio.run(resolver.resolve_profile("M1"))
    clock.now += 3599
    second = asyncio.run(resolver.resolve_profile("M1"))
    assert first is second
    assert client.calls == ["M1"]

    clock.now += 2
    third = asyncio.run(resolver.resolve_profile("M1"))
    assert client.calls == ["M1", "M1"]
    assert third is not first


def test_resolver_returns_none_on_failure_and_does_not_cache():
    client = FakeProfileClient({})
    resolver = IdentityResolver(client)
    assert asyncio.run(resolver.resolve_profile("missing")) is None
    assert asyncio.run(resolver.resolve_profile("missing")) is None
    assert client.calls == ["missing", "missing"]
    assert len(resolver.cache) == 0


def test_resolver_skips_blank_member_id():
    client = FakeProfileClient({})
    assert asyncio.run(IdentityResolver(client).resolve_profile("  ")) is None
    assert client.calls == []


def test_extract_handle():
    resolver = IdentityResolver(FakeProfileClient({}))
    with_handle = Profile("M1", "a@x.com", {"custom.telegram-username": {"value": "alice"}})
    with_sigil = Profile("M2", "b@x.com", {"custom.telegram-username": {"value": "@bob"}})
    without = Profile("M3", "c@x.com", {})
    assert resolver.extract_handle(with_handle) == "@alice"
    assert resolver.extract_handle(with_sigil) == "@bob"
    assert resolver.extract_handle(without) == UNKNOWN
    assert resolver.extract_handle(None) == UNKNOWN


def test_profile_from_api_requires_member():
    with pytest.raises(ValueError):
        Profile.from_api({"error": "nope"})
    p = Profile.from_api({"member": {"id": "M9", "contact": {}}})
    assert p.member_id == "M9"
    assert p.login_email == UNKNOWN


def test_expired_profiles_are_evicted():
    clock = FakeClock()
    members = {f"M{i}": (f"user{i}", "") for i in range(1000)}
    client = FakeProfileClient(members)
    cache = ProfileCache(ttl_seconds=60, clock=clock)
    resolver = IdentityResolver(client, cache)

    async def resolve_all():
        for mid in members:
            await resolver.resolve_profile(mid)

    asyncio.run(resolve_all())
    assert len(cache) == 1000

    clock.now += 600
    asyncio.run(resolver.resolve_profile("M0"))
    assert len(cache) <= 1


def test_cache_is_bounded():
    cache = ProfileCache(ttl_seconds=3600, maxsize=2, clock=FakeClock())
    for mid in ("M1", "M2", "M3"):
        cache.set(mid, Profile(mid, ""))
    assert len(cache) == 2
    assert cache.get("M3") is not None
