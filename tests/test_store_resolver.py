"""Tests for primary/fallback store resolution."""

import pytest

from stores.base import StoreError, StoreUnavailableError, User
from stores.local_store import LocalStore
from stores.resolver import ResilientStore, StoreResolver


class FlakyStore(LocalStore):
    """LocalStore whose health and failures are switched by the test."""

    def __init__(self, root, name):
        super().__init__(root)
        self.name = name
        self.healthy = True
        self.health_checks = 0
        self.fail_next = 0

    async def health_check(self):
        self.health_checks += 1
        return self.healthy

    async def get_user(self, user_id):
        if self.fail_next:
            self.fail_next -= 1
            raise StoreError(f"{self.name} connection lost")
        user = await super().get_user(user_id)
        user.email = f"{user_id}@{self.name}"
        return user

    async def increment_usage(self, user_id, field_name, amount=1):
        counters = await super().increment_usage(user_id, field_name, amount)
        if self.fail_next:
            self.fail_next -= 1
            raise StoreError(f"{self.name} connection lost after commit")
        return counters


class FakeMonotonic:
    def __init__(self):
        self.value = 100.0

    def __call__(self):
        return self.value


@pytest.fixture
def stores(tmp_path):
    return FlakyStore(str(tmp_path / "primary"), "postgres"), FlakyStore(str(tmp_path / "local"), "local")


@pytest.fixture
def clock():
    return FakeMonotonic()


class TestStoreResolver:
    """Health-driven selection and caching"""

    @pytest.mark.asyncio
    async def test_prefers_healthy_primary(self, stores, clock):
        primary, fallback = stores
        resolver = StoreResolver(primary, fallback, health_ttl=60, clock=clock)

        assert resolver.state == 'unresolved'
        assert await resolver.resolve() is primary
        assert resolver.state == 'primary'
        assert fallback.health_checks == 0

    @pytest.mark.asyncio
    async def test_falls_back_when_primary_down(self, stores, clock):
        primary, fallback = stores
        primary.healthy = False
        resolver = StoreResolver(primary, fallback, health_ttl=60, clock=clock)

        assert await resolver.resolve() is fallback
        assert resolver.state == 'fallback'

    @pytest.mark.asyncio
    async def test_choice_is_cached_within_ttl(self, stores, clock):
        primary, fallback = stores
        resolver = StoreResolver(primary, fallback, health_ttl=60, clock=clock)

        await resolver.resolve()
        clock.value += 59
        primary.healthy = False
        assert await resolver.resolve() is primary
        assert primary.health_checks == 1

    @pytest.mark.asyncio
    async def test_stale_cache_reprobes_primary_and_recovers(self, stores, clock):
        primary, fallback = stores
        primary.healthy = False
        resolver = StoreResolver(primary, fallback, health_ttl=60, clock=clock)
        assert await resolver.resolve() is fallback

        primary.healthy = True
        clock.value += 30
        assert await resolver.resolve() is fallback

        clock.value += 31
        assert await resolver.resolve() is primary
        assert primary.health_checks == 2

    @pytest.mark.asyncio
    async def test_both_down_raises(self, stores, clock):
        primary, fallback = stores
        primary.healthy = False
        fallback.healthy = False
        resolver = StoreResolver(primary, fallback, clock=clock)

        with pytest.raises(StoreUnavailableError):
            await resolver.resolve()
        assert resolver.state == 'unresolved'

    @pytest.mark.asyncio
    async def test_without_primary_uses_fallback(self, stores, clock):
        _, fallback = stores
        resolver = StoreResolver(None, fallback, clock=clock)
        assert await resolver.resolve() is fallback

    @pytest.mark.asyncio
    async def test_invalidate_forces_reprobe(self, stores, clock):
        primary, fallback = stores
        resolver = StoreResolver(primary, fallback, health_ttl=60, clock=clock)
        await resolver.resolve()

        primary.healthy = False
        resolver.invalidate("test")
        assert resolver.state == 'unresolved'
        assert await resolver.resolve() is fallback


class TestResilientStore:
    """Store facade with a single retry after backend errors"""

    @pytest.mark.asyncio
    async def test_routes_to_resolved_backend(self, stores, clock):
        primary, fallback = stores
        store = ResilientStore(StoreResolver(primary, fallback, clock=clock))

        assert store.name == 'unresolved'
        user = await store.get_user("u1")
        assert user.email == "u1@postgres"
        assert store.name == 'postgres'

    @pytest.mark.asyncio
    async def test_retries_once_on_next_backend(self, stores, clock):
        primary, fallback = stores
        store = ResilientStore(StoreResolver(primary, fallback, clock=clock))
        await store.get_user("u1")

        primary.fail_next = 1
        primary.healthy = False
        user = await store.get_user("u1")

        assert user.email == "u1@local"
        assert store.name == 'local'

    @pytest.mark.asyncio
    async def test_second_failure_propagates(self, stores, clock):
        primary, fallback = stores
        primary.fail_next = 2
        store = ResilientStore(StoreResolver(primary, fallback, clock=clock))

        with pytest.raises(StoreError):
            await store.get_user("u1")

    @pytest.mark.asyncio
    async def test_health_check_reflects_availability(self, stores, clock):
        primary, fallback = stores
        store = ResilientStore(StoreResolver(primary, fallback, clock=clock))
        assert await store.health_check()

        primary.healthy = False
        fallback.healthy = False
        store.resolver.invalidate()
        assert not await store.health_check()

    @pytest.mark.asyncio
    async def test_writes_land_on_fallback(self, stores, clock):
        primary, fallback = stores
        primary.healthy = False
        store = ResilientStore(StoreResolver(primary, fallback, clock=clock))

        await store.save_user(User(id="u1", plan="pro"))
        assert (await fallback.get_user("u1")).plan == "pro"

    @pytest.mark.asyncio
    async def test_counters_are_not_replayed_on_fallback(self, stores, clock):
        primary, fallback = stores
        store = ResilientStore(StoreResolver(primary, fallback, clock=clock))

        primary.fail_next = 1
        with pytest.raises(StoreError):
            await store.increment_usage("u1", "crawls")

        assert await primary.get_monthly_usage("u1") == {"crawls": 1}
        assert await fallback.get_monthly_usage("u1") == {}
        assert store.resolver.state == 'unresolved'
