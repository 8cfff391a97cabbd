"""
Composite cache keys and their staleness policies.

Keys are tuples ``(entity_type, kind, *identity)`` so that invalidating a
prefix such as ``ReservationKeys.lists()`` reaches every list query whatever
its parameters.
"""
from dataclasses import dataclass
from typing import Any, Hashable, Optional

from pydantic import BaseModel

from reservation_engine.core.config import settings

CacheKey = tuple


def freeze_params(params: Any) -> Hashable:
    """Turn query params into a stable hashable value (sorted by name)."""
    if params is None:
        return None
    if isinstance(params, BaseModel):
        params = params.model_dump(exclude_none=True)
    if isinstance(params, dict):
        return tuple(sorted((key, freeze_params(value)) for key, value in params.items()))
    if isinstance(params, (list, tuple, set, frozenset)):
        return tuple(freeze_params(value) for value in params)
    return params


def has_prefix(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


class ReservationKeys:
    ENTITY = "reservations"

    @classmethod
    def all(cls) -> CacheKey:
        return (cls.ENTITY,)

    @classmethod
    def lists(cls) -> CacheKey:
        return (cls.ENTITY, "list")

    @classmethod
    def list(cls, params=None) -> CacheKey:
        return (*cls.lists(), freeze_params(params))

    @classmethod
    def details(cls) -> CacheKey:
        return (cls.ENTITY, "detail")

    @classmethod
    def detail(cls, reservation_id: str) -> CacheKey:
        return (*cls.details(), reservation_id)

    @classmethod
    def guest(cls) -> CacheKey:
        return (cls.ENTITY, "guest")

    @classmethod
    def guest_list(cls, params=None) -> CacheKey:
        return (*cls.guest(), freeze_params(params))

    @classmethod
    def host(cls) -> CacheKey:
        return (cls.ENTITY, "host")

    @classmethod
    def host_list(cls, params=None) -> CacheKey:
        return (*cls.host(), freeze_params(params))

    @classmethod
    def stats(cls, timeframe: Optional[str] = None) -> CacheKey:
        if timeframe is None:
            return (cls.ENTITY, "stats")
        return (cls.ENTITY, "stats", timeframe)

    @classmethod
    def upcoming(cls, limit: Optional[int] = None) -> CacheKey:
        if limit is None:
            return (cls.ENTITY, "upcoming")
        return (cls.ENTITY, "upcoming", limit)

    @classmethod
    def conflicts(cls, property_id: Optional[str] = None, *identity) -> CacheKey:
        if property_id is None:
            return (cls.ENTITY, "conflicts")
        return (cls.ENTITY, "conflicts", property_id, *identity)

    @classmethod
    def quote(cls, property_id: str, *identity) -> CacheKey:
        return (cls.ENTITY, "quote", property_id, *identity)


class PropertyKeys:
    ENTITY = "properties"

    @classmethod
    def all(cls) -> CacheKey:
        return (cls.ENTITY,)

    @classmethod
    def blocked(cls, property_id: str) -> CacheKey:
        return (cls.ENTITY, "blocked", property_id)

    @classmethod
    def searches(cls) -> CacheKey:
        return (cls.ENTITY, "search")

    @classmethod
    def search(cls, filters=None) -> CacheKey:
        return (*cls.searches(), freeze_params(filters))


@dataclass(frozen=True)
class QueryPolicy:
    stale_after: float
    gc_after: float


# Most specific prefix wins
QUERY_POLICIES: dict[CacheKey, QueryPolicy] = {
    ReservationKeys.details(): QueryPolicy(stale_after=5 * 60, gc_after=15 * 60),
    ReservationKeys.lists(): QueryPolicy(stale_after=3 * 60, gc_after=10 * 60),
    ReservationKeys.guest(): QueryPolicy(stale_after=2 * 60, gc_after=10 * 60),
    ReservationKeys.host(): QueryPolicy(stale_after=2 * 60, gc_after=10 * 60),
    ReservationKeys.stats(): QueryPolicy(stale_after=5 * 60, gc_after=15 * 60),
    ReservationKeys.upcoming(): QueryPolicy(stale_after=2 * 60, gc_after=10 * 60),
    ReservationKeys.conflicts(): QueryPolicy(stale_after=30, gc_after=2 * 60),
    (ReservationKeys.ENTITY, "quote"): QueryPolicy(stale_after=2 * 60, gc_after=5 * 60),
    PropertyKeys.searches(): QueryPolicy(stale_after=5 * 60, gc_after=10 * 60),
    (PropertyKeys.ENTITY, "blocked"): QueryPolicy(stale_after=60, gc_after=5 * 60),
}


def policy_for(key: CacheKey) -> QueryPolicy:
    best: Optional[CacheKey] = None
    for prefix in QUERY_POLICIES:
        if has_prefix(key, prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return QueryPolicy(
            stale_after=settings.cache_stale_seconds,
            gc_after=settings.cache_gc_seconds,
        )
    return QUERY_POLICIES[best]
