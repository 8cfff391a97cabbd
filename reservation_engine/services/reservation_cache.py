"""
Client-side cache of reservations and property data.

Every entry keeps the last authoritative value (``base``) plus the stack of
optimistic patches that are still waiting for their network call. The
visible value is ``base`` with the pending patches applied in call order.

Mutation protocol:
    update = cache.apply_optimistic(key, patch_fn)
    ... await network ...
    update.commit(server_value)   # or update.rollback()

Exactly one of commit/rollback may run per update. A rollback is skipped
(only its patch is dropped) when an authoritative commit or write reached the
key after the update was applied, so a slow failing mutation never erases a
newer successful one.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel

from reservation_engine.core.config import settings
from reservation_engine.core.errors import NetworkError, StateError
from reservation_engine.services.query_keys import CacheKey, has_prefix, policy_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[CacheKey, Any], None]
Loader = Callable[[], Awaitable[Any]]

_MISSING = object()


def keep_version(cached: Any, fresh: Any) -> Any:
    """Carry the cached entity version over a refetch that reports an older one."""
    if not isinstance(cached, BaseModel) or not isinstance(fresh, BaseModel):
        return fresh
    cached_version = getattr(cached, "version", None)
    fresh_version = getattr(fresh, "version", None)
    if not isinstance(cached_version, int) or not isinstance(fresh_version, int):
        return fresh
    if fresh_version >= cached_version:
        return fresh
    return fresh.model_copy(update={"version": cached_version})


@dataclass
class _Layer:
    token: int
    patch_fn: Callable[[Any], Any]


@dataclass
class CacheEntry(Generic[T]):
    data: T
    fetched_at: Optional[float]
    stale_after: float
    gc_after: float
    version: int = 0
    unobserved_since: Optional[float] = None
    invalidated: bool = False
    base: Any = _MISSING
    layers: list[_Layer] = field(default_factory=list)
    loader: Optional[Loader] = None

    @property
    def has_data(self) -> bool:
        """True once an authoritative value was written (not only optimistic)."""
        return self.base is not _MISSING

    @property
    def is_optimistic(self) -> bool:
        return bool(self.layers)

    def is_stale(self, now: float) -> bool:
        if self.invalidated or self.fetched_at is None:
            return True
        return now - self.fetched_at > self.stale_after


class OptimisticUpdate:
    """Handle returned by ``apply_optimistic``; settles exactly once."""

    def __init__(self, cache: "ReservationCache", key: CacheKey, previous: Any,
                 base_version: int, layer: _Layer, layers_below: tuple[int, ...]):
        self._cache = cache
        self.key = key
        self.previous = previous
        self.base_version = base_version
        self.layer = layer
        self.layers_below = layers_below
        self.outcome: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    def _settle(self, outcome: str) -> None:
        if self.outcome is not None:
            raise StateError(
                f"Optimistic update on {self.key} was already {self.outcome}",
                current=self.outcome,
                target=outcome,
            )
        self.outcome = outcome

    def commit(self, final_value: Any, key: Optional[CacheKey] = None) -> CacheEntry:
        return self._cache.commit(key or self.key, final_value, update=self)

    def rollback(self) -> bool:
        return self._cache.rollback(self)


class Observation:
    def __init__(self, cache: "ReservationCache", key: CacheKey, listener: Optional[Listener]):
        self._cache = cache
        self.key = key
        self.listener = listener
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._cache._unobserve(self)

    def __enter__(self) -> "Observation":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ReservationCache:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
    ):
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._observers: dict[CacheKey, list[Observation]] = {}
        self._inflight: dict[CacheKey, asyncio.Future] = {}
        self._tokens = itertools.count(1)
        self.retry_attempts = (
            settings.query_retry_attempts if retry_attempts is None else retry_attempts
        )
        self.retry_base_delay = (
            settings.query_retry_base_delay_seconds
            if retry_base_delay is None
            else retry_base_delay
        )
        self.retry_max_delay = (
            settings.query_retry_max_delay_seconds
            if retry_max_delay is None
            else retry_max_delay
        )

    # -------------------------------------------------
    # Plain reads / writes
    # -------------------------------------------------

    def read(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def get(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return default if entry is None else entry.data

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.is_stale(self._clock())

    def keys(self, prefix: CacheKey = ()) -> list[CacheKey]:
        return [key for key in self._entries if has_prefix(key, prefix)]

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def write(
        self,
        key: CacheKey,
        data: Any,
        *,
        stale_after: Optional[float] = None,
        gc_after: Optional[float] = None,
    ) -> CacheEntry:
        """Store an authoritative value; the latest call wins."""
        entry = self._store(key, data)
        if stale_after is not None:
            entry.stale_after = stale_after
        if gc_after is not None:
            entry.gc_after = gc_after
        return entry

    def _new_entry(self, key: CacheKey, data: Any) -> CacheEntry:
        policy = policy_for(key)
        entry = CacheEntry(
            data=data,
            fetched_at=None,
            stale_after=policy.stale_after,
            gc_after=policy.gc_after,
            unobserved_since=None if self._observers.get(key) else self._clock(),
        )
        self._entries[key] = entry
        return entry

    def _store(self, key: CacheKey, value: Any) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._new_entry(key, value)
        entry.base = value
        entry.version += 1
        entry.fetched_at = self._clock()
        entry.invalidated = False
        self._recompute(key, entry)
        return entry

    def _recompute(self, key: CacheKey, entry: CacheEntry) -> None:
        if not entry.has_data and not entry.layers:
            del self._entries[key]
            self._notify(key, None)
            return
        value = entry.base if entry.has_data else None
        for layer in entry.layers:
            value = layer.patch_fn(value)
        entry.data = value
        self._notify(key, value)

    # -------------------------------------------------
    # Optimistic protocol
    # -------------------------------------------------

    def apply_optimistic(self, key: CacheKey, patch_fn: Callable[[Any], Any]) -> OptimisticUpdate:
        entry = self._entries.get(key)
        previous = entry.data if entry is not None else None
        value = patch_fn(previous)
        if entry is None:
            entry = self._new_entry(key, value)

        layers_below = tuple(layer.token for layer in entry.layers)
        layer = _Layer(token=next(self._tokens), patch_fn=patch_fn)
        entry.layers.append(layer)
        entry.data = value
        self._notify(key, value)

        return OptimisticUpdate(
            self,
            key,
            previous,
            base_version=entry.version,
            layer=layer,
            layers_below=layers_below,
        )

    def _drop_layer(self, key: CacheKey, layer: _Layer) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.layers = [item for item in entry.layers if item.token != layer.token]
        return entry

    def commit(
        self,
        key: CacheKey,
        final_value: Any,
        *,
        update: Optional[OptimisticUpdate] = None,
    ) -> CacheEntry:
        """
        Store the server-confirmed value under ``key``.

        With ``update`` the optimistic patch is settled as well; its key may
        differ from ``key`` (temporary id replaced by the real one).
        """
        if update is not None:
            update._settle("committed")
            old_entry = self._drop_layer(update.key, update.layer)
            if update.key != key and old_entry is not None:
                self._recompute(update.key, old_entry)
        return self._store(key, final_value)

    def rollback(self, update: OptimisticUpdate) -> bool:
        """
        Undo an optimistic patch.

        Returns True when the pre-mutation value was restored, False when a
        newer authoritative value superseded the snapshot and the rollback
        was skipped.
        """
        update._settle("rolled back")
        entry = self._drop_layer(update.key, update.layer)
        if entry is None:
            return False

        if entry.version != update.base_version:
            logger.info(
                f"Rollback on {update.key} skipped: version {update.base_version} "
                f"superseded by {entry.version}"
            )
            self._recompute(update.key, entry)
            return False

        remaining = tuple(layer.token for layer in entry.layers)
        if remaining == update.layers_below:
            if not entry.has_data and not entry.layers:
                del self._entries[update.key]
                self._notify(update.key, None)
            else:
                entry.data = update.previous
                self._notify(update.key, update.previous)
        else:
            self._recompute(update.key, entry)
        return True

    # -------------------------------------------------
    # Invalidation / observers / gc
    # -------------------------------------------------

    def invalidate(self, prefix: CacheKey) -> int:
        """Mark every entry under ``prefix`` stale; observed ones refetch."""
        count = 0
        for key, entry in list(self._entries.items()):
            if not has_prefix(key, prefix):
                continue
            entry.invalidated = True
            count += 1
            if self._observers.get(key) and entry.loader is not None:
                self._schedule_refresh(key, entry.loader)
        if count:
            logger.debug(f"Invalidated {count} cache entries under {prefix}")
        return count

    def observe(self, key: CacheKey, listener: Optional[Listener] = None) -> Observation:
        observation = Observation(self, key, listener)
        self._observers.setdefault(key, []).append(observation)
        entry = self._entries.get(key)
        if entry is not None:
            entry.unobserved_since = None
        return observation

    def observer_count(self, key: CacheKey) -> int:
        return len(self._observers.get(key, ()))

    def _unobserve(self, observation: Observation) -> None:
        observations = self._observers.get(observation.key, [])
        if observation in observations:
            observations.remove(observation)
        if not observations:
            self._observers.pop(observation.key, None)
            entry = self._entries.get(observation.key)
            if entry is not None:
                entry.unobserved_since = self._clock()

    def _notify(self, key: CacheKey, value: Any) -> None:
        for observation in list(self._observers.get(key, ())):
            if observation.listener is None:
                continue
            try:
                observation.listener(key, value)
            except Exception as e:
                logger.error(f"Cache listener for {key} failed: {e}", exc_info=True)

    def gc(self) -> int:
        """Evict entries unobserved for longer than their gc window."""
        now = self._clock()
        evicted = []
        for key, entry in self._entries.items():
            if self._observers.get(key) or entry.layers or key in self._inflight:
                continue
            if entry.unobserved_since is None:
                continue
            if now - entry.unobserved_since >= entry.gc_after:
                evicted.append(key)

        for key in evicted:
            del self._entries[key]

        if evicted:
            logger.debug(f"Cache gc evicted {len(evicted)} entries")
        return len(evicted)

    def clear(self) -> None:
        self._entries.clear()

    # -------------------------------------------------
    # Read-through queries
    # -------------------------------------------------

    async def fetch(
        self,
        key: CacheKey,
        loader: Loader,
        *,
        allow_stale: bool = True,
        force: bool = False,
    ) -> Any:
        """
        Return cached data for ``key``, loading it when needed.

        Fresh data is returned as is. Stale data is returned immediately while
        a background refresh runs, unless ``allow_stale`` is False. Concurrent
        loads of the same key share one request.
        """
        entry = self._entries.get(key)
        if entry is not None:
            entry.loader = loader
            if entry.has_data and not force:
                if not entry.is_stale(self._clock()):
                    return entry.data
                if allow_stale:
                    self._schedule_refresh(key, loader)
                    return entry.data

        task = self._schedule_refresh(key, loader)
        return await asyncio.shield(task)

    def _schedule_refresh(self, key: CacheKey, loader: Loader) -> asyncio.Future:
        task = self._inflight.get(key)
        if task is not None:
            return task

        entry = self._entries.get(key)
        started_version = entry.version if entry is not None else 0
        task = asyncio.ensure_future(self._load(key, loader, started_version))
        self._inflight[key] = task

        def _done(finished: asyncio.Future) -> None:
            if self._inflight.get(key) is finished:
                del self._inflight[key]
            if not finished.cancelled() and finished.exception() is not None:
                logger.warning(f"Refresh of {key} failed: {finished.exception()}")

        task.add_done_callback(_done)
        return task

    async def _load(self, key: CacheKey, loader: Loader, started_version: int) -> Any:
        attempt = 0
        while True:
            try:
                data = await loader()
                break
            except NetworkError as e:
                if not e.retryable or attempt >= self.retry_attempts:
                    raise
                delay = min(self.retry_base_delay * 2 ** attempt, self.retry_max_delay)
                attempt += 1
                logger.warning(
                    f"Query {key} failed: {e}. Retry {attempt}/{self.retry_attempts} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        entry = self._entries.get(key)
        current_version = entry.version if entry is not None else 0
        if entry is not None and current_version != started_version:
            # A commit landed while the request was in flight
            logger.debug(f"Discarding superseded response for {key}")
            return entry.data

        if entry is not None and entry.has_data:
            data = keep_version(entry.base, data)
        entry = self._store(key, data)
        entry.loader = loader
        return entry.data


reservation_cache = ReservationCache()
