"""
Unit tests for the reservation cache and its optimistic protocol
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from reservation_engine.core.errors import NetworkError, StateError
from reservation_engine.schemas.reservation import ReservationStatus
from reservation_engine.services.query_keys import (
    PropertyKeys,
    ReservationKeys,
    freeze_params,
    policy_for,
)

KEY = ReservationKeys.detail("res-1")


def set_status(status):
    return lambda reservation: reservation.model_copy(update={"status": status})


class TestQueryKeys:
    """Cache key helpers and policies"""

    def test_params_are_order_independent(self):
        """Param order does not change the key"""
        assert freeze_params({"b": 1, "a": 2}) == freeze_params({"a": 2, "b": 1})
        assert ReservationKeys.list({"b": 1, "a": 2}) == ReservationKeys.list({"a": 2, "b": 1})

    def test_most_specific_policy_wins(self):
        """Longest matching prefix policy is used"""
        assert policy_for(ReservationKeys.conflicts("prop-1", "x")).stale_after == 30
        assert policy_for(ReservationKeys.detail("res-1")).gc_after == 15 * 60
        assert policy_for(PropertyKeys.blocked("prop-1")).stale_after == 60

    def test_unknown_family_uses_settings(self):
        """Unknown keys use the configured defaults"""
        from reservation_engine.core.config import settings

        assert policy_for(("other", "thing")).stale_after == settings.cache_stale_seconds


class TestReadWrite:
    """Plain reads and writes"""

    def test_write_then_read(self, cache, clock, make_reservation):
        """Write stores data with a fresh timestamp"""
        reservation = make_reservation()
        cache.write(KEY, reservation)

        entry = cache.read(KEY)
        assert entry.data is reservation
        assert entry.fetched_at == clock.now
        assert entry.version == 1
        assert cache.read(ReservationKeys.detail("missing")) is None

    def test_last_write_wins(self, cache, make_reservation):
        """The later write replaces the earlier one"""
        cache.write(KEY, make_reservation(version=1))
        cache.write(KEY, make_reservation(version=2))
        assert cache.get(KEY).version == 2
        assert cache.read(KEY).version == 2

    def test_staleness_window(self, cache, clock, make_reservation):
        """Entry turns stale after its window"""
        cache.write(KEY, make_reservation())
        clock.advance(5 * 60)
        assert not cache.is_stale(KEY)
        clock.advance(1)
        assert cache.is_stale(KEY)

    def test_invalidate_by_prefix(self, cache, make_reservation):
        """Invalidate marks every key under the prefix"""
        cache.write(ReservationKeys.list({"page": 1}), [])
        cache.write(ReservationKeys.list({"page": 2}), [])
        cache.write(KEY, make_reservation())

        assert cache.invalidate(ReservationKeys.lists()) == 2
        assert cache.is_stale(ReservationKeys.list({"page": 1}))
        assert not cache.is_stale(KEY)
        # Data stays readable while stale
        assert cache.get(ReservationKeys.list({"page": 1})) == []


class TestOptimisticUpdates:
    """apply_optimistic / commit / rollback"""

    def test_rollback_restores_identical_state(self, cache, make_reservation):
        """Rollback brings back the exact entry"""
        original = make_reservation()
        cache.write(KEY, original)
        before = cache.read(KEY)
        snapshot = (before.fetched_at, before.version, before.invalidated)

        update = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))
        assert cache.get(KEY).status == ReservationStatus.CONFIRMED
        assert update.previous is original

        assert update.rollback() is True
        after = cache.read(KEY)
        assert after.data is original
        assert (after.fetched_at, after.version, after.invalidated) == snapshot
        assert after.layers == []

    def test_rollback_of_new_key_removes_entry(self, cache, make_reservation):
        """Rollback of a new key removes it"""
        key = ReservationKeys.detail("temp-1")
        update = cache.apply_optimistic(key, lambda _: make_reservation(id="temp-1"))
        assert key in cache

        update.rollback()
        assert key not in cache

    def test_second_settle_raises(self, cache, make_reservation):
        """An update settles only once"""
        cache.write(KEY, make_reservation())
        update = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))
        update.commit(make_reservation(status=ReservationStatus.CONFIRMED, version=2))

        with pytest.raises(StateError):
            update.rollback()
        with pytest.raises(StateError):
            update.commit(make_reservation())

    def test_commit_bumps_version_and_freshness(self, cache, clock, make_reservation):
        """Commit stores the value as fresh"""
        cache.write(KEY, make_reservation())
        clock.advance(10)
        update = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))
        final = make_reservation(status=ReservationStatus.CONFIRMED, version=2)

        entry = update.commit(final)
        assert entry.data is final
        assert entry.version == 2
        assert entry.fetched_at == clock.now

    def test_commit_under_new_key(self, cache, make_reservation):
        """Temporary key is moved to the real one"""
        temp_key = ReservationKeys.detail("temp-1")
        update = cache.apply_optimistic(temp_key, lambda _: make_reservation(id="temp-1"))

        real = make_reservation(id="res-9")
        cache.commit(ReservationKeys.detail("res-9"), real, update=update)

        assert temp_key not in cache
        assert cache.get(ReservationKeys.detail("res-9")) is real

    def test_newer_commit_wins_over_late_rollback(self, cache, make_reservation):
        """Late rollback keeps the newer commit"""
        cache.write(KEY, make_reservation(version=1))

        # A: slow cancel, B: fast confirm
        update_a = cache.apply_optimistic(KEY, set_status(ReservationStatus.CANCELLED))
        update_b = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))

        confirmed = make_reservation(status=ReservationStatus.CONFIRMED, version=2)
        update_b.commit(confirmed)

        assert update_a.rollback() is False
        assert cache.get(KEY) is confirmed
        assert cache.read(KEY).layers == []

    def test_rollback_below_pending_layer_keeps_the_other_patch(self, cache, make_reservation):
        """Rollback drops only its own patch"""
        original = make_reservation()
        cache.write(KEY, original)
        update_a = cache.apply_optimistic(KEY, lambda r: r.model_copy(update={"guests": 5}))
        update_b = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))

        assert update_a.rollback() is True
        current = cache.get(KEY)
        assert current.guests == original.guests
        assert current.status == ReservationStatus.CONFIRMED

        assert update_b.rollback() is True
        assert cache.get(KEY) == original

    def test_write_during_pending_update_keeps_patch_visible(self, cache, make_reservation):
        """Pending patch applies over a new write"""
        cache.write(KEY, make_reservation(version=1))
        update = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))

        cache.write(KEY, make_reservation(version=3, guests=4))
        visible = cache.get(KEY)
        assert visible.status == ReservationStatus.CONFIRMED
        assert visible.guests == 4

        assert update.rollback() is False
        assert cache.get(KEY).status == ReservationStatus.PENDING
        assert cache.get(KEY).version == 3


class TestObserversAndGc:
    """Observers and garbage collection"""

    def test_listener_notified_on_changes(self, cache, make_reservation):
        """Listeners see each visible change"""
        listener = MagicMock()
        observation = cache.observe(KEY, listener)

        cache.write(KEY, make_reservation())
        update = cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))
        update.rollback()
        assert listener.call_count == 3

        observation.close()
        cache.write(KEY, make_reservation())
        assert listener.call_count == 3

    def test_failing_listener_does_not_break_writes(self, cache, make_reservation):
        """A listener error does not stop writes"""
        cache.observe(KEY, MagicMock(side_effect=RuntimeError("boom")))
        cache.write(KEY, make_reservation())
        assert cache.get(KEY) is not None

    def test_gc_evicts_only_idle_unobserved_entries(self, cache, clock, make_reservation):
        """GC removes idle entries with no observers"""
        observed = ReservationKeys.detail("observed")
        cache.write(KEY, make_reservation())
        cache.write(observed, make_reservation(id="observed"))
        cache.observe(observed)

        clock.advance(14 * 60)
        assert cache.gc() == 0

        clock.advance(60)
        assert cache.gc() == 1
        assert KEY not in cache
        assert observed in cache

    def test_gc_window_starts_when_last_observer_leaves(self, cache, clock, make_reservation):
        """GC waits from the last observer leaving"""
        cache.write(KEY, make_reservation())
        observation = cache.observe(KEY)
        clock.advance(60 * 60)
        observation.close()

        clock.advance(14 * 60)
        assert cache.gc() == 0
        clock.advance(60)
        assert cache.gc() == 1

    def test_gc_keeps_entries_with_pending_updates(self, cache, clock, make_reservation):
        """Entries with pending patches are kept"""
        cache.write(KEY, make_reservation())
        cache.apply_optimistic(KEY, set_status(ReservationStatus.CONFIRMED))
        clock.advance(60 * 60)
        assert cache.gc() == 0


class TestFetch:
    """Read-through queries"""

    @pytest.mark.asyncio
    async def test_fresh_data_served_from_cache(self, cache, make_reservation):
        """Fresh data does not call the loader"""
        cache.write(KEY, make_reservation())
        loader = AsyncMock()

        result = await cache.fetch(KEY, loader)
        assert result == make_reservation()
        loader.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_request(self, cache, make_reservation):
        """Parallel fetches share one load"""
        release = asyncio.Event()
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return make_reservation()

        first = asyncio.ensure_future(cache.fetch(KEY, loader))
        second = asyncio.ensure_future(cache.fetch(KEY, loader))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second)
        assert calls == 1
        assert results[0] == results[1]

    @pytest.mark.asyncio
    async def test_stale_data_returned_while_refreshing(self, cache, clock, make_reservation):
        """Stale data is served while refreshing"""
        cache.write(KEY, make_reservation(version=1))
        clock.advance(10 * 60)
        loader = AsyncMock(return_value=make_reservation(version=2))

        result = await cache.fetch(KEY, loader)
        assert result.version == 1

        for _ in range(3):
            await asyncio.sleep(0)
        loader.assert_awaited_once()
        assert cache.get(KEY).version == 2
        assert not cache.is_stale(KEY)

    @pytest.mark.asyncio
    async def test_stale_not_allowed_waits_for_refresh(self, cache, clock, make_reservation):
        """allow_stale=False waits for the load"""
        cache.write(KEY, make_reservation(version=1))
        clock.advance(10 * 60)
        loader = AsyncMock(return_value=make_reservation(version=2))

        result = await cache.fetch(KEY, loader, allow_stale=False)
        assert result.version == 2

    @pytest.mark.asyncio
    async def test_retryable_errors_are_retried(self, cache, make_reservation):
        """Retryable errors are retried"""
        loader = AsyncMock(side_effect=[
            NetworkError("timeout"),
            NetworkError("busy", status_code=503),
            make_reservation(),
        ])

        result = await cache.fetch(KEY, loader)
        assert result == make_reservation()
        assert loader.await_count == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, cache):
        """Retries stop after the configured attempts"""
        loader = AsyncMock(side_effect=NetworkError("down", status_code=502))

        with pytest.raises(NetworkError):
            await cache.fetch(KEY, loader)
        # first attempt + 2 retries
        assert loader.await_count == 3
        assert KEY not in cache

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, cache):
        """Non retryable errors fail at once"""
        loader = AsyncMock(side_effect=NetworkError("not found", status_code=404, retryable=False))

        with pytest.raises(NetworkError):
            await cache.fetch(KEY, loader)
        assert loader.await_count == 1

    @pytest.mark.asyncio
    async def test_response_superseded_by_commit_is_discarded(self, cache, make_reservation):
        """A response older than a commit is dropped"""
        cache.write(KEY, make_reservation(version=1))
        release = asyncio.Event()

        async def loader():
            await release.wait()
            return make_reservation(version=1)

        pending = asyncio.ensure_future(cache.fetch(KEY, loader, force=True))
        await asyncio.sleep(0)

        committed = make_reservation(status=ReservationStatus.CONFIRMED, version=2)
        cache.write(KEY, committed)
        release.set()

        assert await pending is committed
        assert cache.get(KEY) is committed

    @pytest.mark.asyncio
    async def test_invalidated_observed_query_refetches(self, cache, make_reservation):
        """Observed queries reload after invalidation"""
        loader = AsyncMock(side_effect=[make_reservation(version=1), make_reservation(version=2)])
        await cache.fetch(KEY, loader)
        cache.observe(KEY)

        cache.invalidate(ReservationKeys.all())
        for _ in range(3):
            await asyncio.sleep(0)

        assert loader.await_count == 2
        assert cache.get(KEY).version == 2

    @pytest.mark.asyncio
    async def test_refetch_never_lowers_entity_version(self, cache, make_reservation):
        """A reload without a version keeps the cached entity version"""
        cache.write(KEY, make_reservation(status=ReservationStatus.CONFIRMED, version=2))
        loader = AsyncMock(return_value=make_reservation(status=ReservationStatus.CONFIRMED, version=0))

        result = await cache.fetch(KEY, loader, force=True)

        assert result.version == 2
        assert result.status == ReservationStatus.CONFIRMED
        assert cache.get(KEY).version == 2

    @pytest.mark.asyncio
    async def test_refetch_of_plain_values_is_stored_as_is(self, cache):
        """Values without a version are replaced unchanged"""
        cache.write(PropertyKeys.blocked("prop-1"), ("old",))
        loader = AsyncMock(return_value=())

        assert await cache.fetch(PropertyKeys.blocked("prop-1"), loader, force=True) == ()
