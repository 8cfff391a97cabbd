"""
Read side of the booking flow: every query goes through the reservation cache
so that repeated reads are served locally and concurrent reads share a request.
"""
import datetime
from typing import Optional

from reservation_engine.domain.calendar import BlockedInterval
from reservation_engine.schemas.reservation import (
    ConflictCheck,
    Page,
    PriceBreakdown,
    ReservationEntity,
    ReservationListParams,
    ReservationStats,
    SessionContext,
)
from reservation_engine.schemas.search import PropertySummary, SearchFilters
from reservation_engine.services.booking_api import BookingApi, PropertyApi
from reservation_engine.services.query_keys import PropertyKeys, ReservationKeys
from reservation_engine.services.reservation_cache import ReservationCache, reservation_cache


class ReservationQueries:
    def __init__(
        self,
        booking_api: BookingApi,
        property_api: Optional[PropertyApi] = None,
        cache: Optional[ReservationCache] = None,
    ):
        self.booking_api = booking_api
        self.property_api = property_api
        self.cache = cache if cache is not None else reservation_cache

    async def get_reservation(
        self,
        reservation_id: str,
        *,
        session: Optional[SessionContext] = None,
        force: bool = False,
    ) -> ReservationEntity:
        return await self.cache.fetch(
            ReservationKeys.detail(reservation_id),
            lambda: self.booking_api.get_order(reservation_id, session=session),
            force=force,
        )

    def list_key(self, params: Optional[ReservationListParams] = None, scope: str = "all"):
        if scope == "user":
            return ReservationKeys.guest_list(params)
        if scope == "host":
            return ReservationKeys.host_list(params)
        return ReservationKeys.list(params)

    async def list_reservations(
        self,
        params: Optional[ReservationListParams] = None,
        *,
        scope: str = "all",
        session: Optional[SessionContext] = None,
    ) -> Page[ReservationEntity]:
        return await self.cache.fetch(
            self.list_key(params, scope),
            lambda: self.booking_api.list_orders(params, scope=scope, session=session),
        )

    async def upcoming(
        self, limit: int = 5, *, session: Optional[SessionContext] = None
    ) -> list[ReservationEntity]:
        return await self.cache.fetch(
            ReservationKeys.upcoming(limit),
            lambda: self.booking_api.get_upcoming(limit, session=session),
        )

    async def stats(
        self, timeframe: Optional[str] = None, *, session: Optional[SessionContext] = None
    ) -> ReservationStats:
        return await self.cache.fetch(
            ReservationKeys.stats(timeframe or "all"),
            lambda: self.booking_api.get_stats(timeframe, session=session),
        )

    async def check_conflicts(
        self,
        property_id: str,
        check_in: datetime.date,
        check_out: datetime.date,
        exclude_id: Optional[str] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> ConflictCheck:
        # Availability answers must not be served stale
        return await self.cache.fetch(
            ReservationKeys.conflicts(property_id, check_in, check_out, exclude_id),
            lambda: self.booking_api.check_conflicts(
                property_id, check_in, check_out, exclude_id, session=session
            ),
            allow_stale=False,
        )

    async def quote(
        self,
        property_id: str,
        check_in: datetime.date,
        check_out: datetime.date,
        guests: int = 1,
        *,
        session: Optional[SessionContext] = None,
    ) -> PriceBreakdown:
        return await self.cache.fetch(
            ReservationKeys.quote(property_id, check_in, check_out, guests),
            lambda: self.booking_api.calculate_total(
                property_id, check_in, check_out, guests, session=session
            ),
        )

    async def blocked_intervals(self, property_id: str) -> tuple[BlockedInterval, ...]:
        if self.property_api is None:
            raise RuntimeError("ReservationQueries was created without a property api")
        return await self.cache.fetch(
            PropertyKeys.blocked(property_id),
            lambda: self.property_api.get_blocked_intervals(property_id),
            allow_stale=False,
        )

    def cached_blocked_intervals(self, property_id: str) -> tuple[BlockedInterval, ...]:
        """Whatever is cached right now, without touching the network."""
        return tuple(self.cache.get(PropertyKeys.blocked(property_id), ()))

    async def search(self, filters: SearchFilters) -> Page[PropertySummary]:
        if self.property_api is None:
            raise RuntimeError("ReservationQueries was created without a property api")
        return await self.cache.fetch(
            PropertyKeys.search(filters),
            lambda: self.property_api.search_properties(filters),
        )
