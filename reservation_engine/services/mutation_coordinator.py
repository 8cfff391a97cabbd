"""
Reservation lifecycle mutations with optimistic cache updates.

Every mutation runs the same protocol:
    1. validate the transition against the cached reservation (no network on failure)
    2. apply the optimistic patch to the cache
    3. call the backend
    4. commit the server result and invalidate dependent views
    5. on any failure or cancellation roll back and re-raise
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from reservation_engine.core.errors import ConflictError, StateError, ValidationError
from reservation_engine.domain.availability import AvailabilityChecker
from reservation_engine.domain.calendar import DateRange
from reservation_engine.schemas.reservation import (
    TEMP_ID_PREFIX,
    CancellationReason,
    CheckoutSession,
    CreateReservationRequest,
    PaymentStatus,
    ReservationEntity,
    ReservationStatus,
    SessionContext,
)
from reservation_engine.services.booking_api import (
    BookingApi,
    BookingApiClient,
    PaymentApiClient,
    PaymentGateway,
)
from reservation_engine.services.query_keys import CacheKey, PropertyKeys, ReservationKeys
from reservation_engine.services.reservation_cache import ReservationCache, reservation_cache
from reservation_engine.services.reservation_queries import ReservationQueries

logger = logging.getLogger(__name__)


class MutationCoordinator:
    ALLOWED_TRANSITIONS = {
        ReservationStatus.PENDING: {
            ReservationStatus.CONFIRMED,
            ReservationStatus.CANCELLED,
        },
        ReservationStatus.CONFIRMED: {
            ReservationStatus.COMPLETED,
            ReservationStatus.CANCELLED,
        },
    }

    def __init__(
        self,
        booking_api: BookingApi,
        *,
        payment_gateway: Optional[PaymentGateway] = None,
        queries: Optional[ReservationQueries] = None,
        cache: Optional[ReservationCache] = None,
        checker: Optional[AvailabilityChecker] = None,
    ):
        self.booking_api = booking_api
        self.payment_gateway = payment_gateway
        self.cache = cache if cache is not None else reservation_cache
        self.queries = queries or ReservationQueries(booking_api, cache=self.cache)
        self._checker = checker
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}

    @classmethod
    def can_transition(cls, current: ReservationStatus, target: ReservationStatus) -> bool:
        return target in cls.ALLOWED_TRANSITIONS.get(current, set())

    @property
    def checker(self) -> AvailabilityChecker:
        return self._checker or AvailabilityChecker.for_booking_window()

    # -------------------------------------------------
    # Create
    # -------------------------------------------------

    async def create(
        self, session: SessionContext, request: CreateReservationRequest
    ) -> ReservationEntity:
        stay = DateRange(request.check_in, request.check_out)
        error = self.checker.validate(stay, guests=request.guests)
        if error:
            raise error

        blocked = self.queries.cached_blocked_intervals(request.property_id)
        conflict = self.checker.check_conflict(stay, blocked)
        if conflict.has_conflict:
            raise ConflictError("Selected dates are not available", conflict.conflicting)

        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"
        placeholder = ReservationEntity(
            id=temp_id,
            status=ReservationStatus.PENDING,
            created_at=datetime.now(timezone.utc),
            **request.model_dump(),
        )
        update = self.cache.apply_optimistic(
            ReservationKeys.detail(temp_id), lambda _: placeholder
        )

        try:
            created = await self.booking_api.create_order(request, session=session)
        except (Exception, asyncio.CancelledError) as e:
            update.rollback()
            logger.error(f"❌ Failed to create reservation for {request.property_id}: {e!r}")
            raise

        key = ReservationKeys.detail(created.id)
        created = self._next_version(key, created)
        self.cache.commit(key, created, update=update)
        self._invalidate_dependents(created.property_id)
        logger.info(
            f"✅ Reservation {created.id} created for {created.property_id} "
            f"({created.check_in} - {created.check_out}) by {session.user_id}"
        )
        return created

    # -------------------------------------------------
    # Status transitions
    # -------------------------------------------------

    async def confirm(self, session: SessionContext, reservation_id: str) -> ReservationEntity:
        return await self._transition(
            session,
            reservation_id,
            ReservationStatus.CONFIRMED,
            lambda: self.booking_api.confirm_order(reservation_id, session=session),
        )

    async def cancel(
        self,
        session: SessionContext,
        reservation_id: str,
        reason: Optional[CancellationReason | str] = None,
    ) -> ReservationEntity:
        reason_value = reason.value if isinstance(reason, CancellationReason) else reason
        return await self._transition(
            session,
            reservation_id,
            ReservationStatus.CANCELLED,
            lambda: self.booking_api.cancel_order(reservation_id, reason_value, session=session),
            changes={"cancellation_reason": reason_value},
        )

    async def complete(self, session: SessionContext, reservation_id: str) -> ReservationEntity:
        return await self._transition(
            session,
            reservation_id,
            ReservationStatus.COMPLETED,
            lambda: self.booking_api.complete_order(reservation_id, session=session),
        )

    async def _transition(
        self,
        session: SessionContext,
        reservation_id: str,
        target: ReservationStatus,
        call: Callable[[], Awaitable[ReservationEntity]],
        changes: Optional[dict] = None,
    ) -> ReservationEntity:
        def check(current: ReservationEntity) -> None:
            if not self.can_transition(current.status, target):
                raise StateError(
                    f"Reservation {reservation_id} cannot go from "
                    f"{current.status.value} to {target.value}",
                    current=current.status,
                    target=target,
                )

        committed, _ = await self._mutate(
            session,
            reservation_id,
            target.value,
            check=check,
            changes={"status": target, **(changes or {})},
            call=lambda current: call(),
            finalize=lambda current, server: server,
        )
        return committed

    # -------------------------------------------------
    # Payment status
    # -------------------------------------------------

    def _gateway(self) -> PaymentGateway:
        if self.payment_gateway is None:
            raise RuntimeError("MutationCoordinator was created without a payment gateway")
        return self.payment_gateway

    async def start_checkout(self, session: SessionContext, reservation_id: str) -> CheckoutSession:
        gateway = self._gateway()

        def check(current: ReservationEntity) -> None:
            if current.status != ReservationStatus.PENDING:
                raise StateError(
                    f"Checkout is only possible for pending reservations, "
                    f"{reservation_id} is {current.status.value}",
                    current=current.status,
                    target=PaymentStatus.AWAITING_PAYMENT,
                )
            if current.payment_status not in (PaymentStatus.UNPAID, PaymentStatus.AWAITING_PAYMENT):
                raise StateError(
                    f"Reservation {reservation_id} is already {current.payment_status.value}",
                    current=current.payment_status,
                    target=PaymentStatus.AWAITING_PAYMENT,
                )

        _, checkout = await self._mutate(
            session,
            reservation_id,
            "checkout",
            check=check,
            changes={"payment_status": PaymentStatus.AWAITING_PAYMENT},
            call=lambda current: gateway.create_checkout_session(current, session=session),
            finalize=lambda current, checkout: current.model_copy(
                update={
                    "payment_status": PaymentStatus.AWAITING_PAYMENT,
                    "checkout_session_id": checkout.id,
                }
            ),
        )
        return checkout

    async def confirm_payment(
        self,
        session: SessionContext,
        reservation_id: str,
        payment_intent_id: str,
        payment_method_id: Optional[str] = None,
    ) -> ReservationEntity:
        gateway = self._gateway()

        def check(current: ReservationEntity) -> None:
            if current.status == ReservationStatus.CANCELLED:
                raise StateError(
                    f"Reservation {reservation_id} is cancelled",
                    current=current.status,
                    target=PaymentStatus.PAID,
                )
            if current.payment_status != PaymentStatus.AWAITING_PAYMENT:
                raise StateError(
                    f"Reservation {reservation_id} is not awaiting payment "
                    f"({current.payment_status.value})",
                    current=current.payment_status,
                    target=PaymentStatus.PAID,
                )

        def finalize(current: ReservationEntity, result) -> ReservationEntity:
            if not result.succeeded:
                raise ValidationError(f"Payment was not completed: {result.status}", field="payment")
            return current.model_copy(
                update={
                    "payment_status": PaymentStatus.PAID,
                    "payment_intent_id": payment_intent_id,
                }
            )

        committed, _ = await self._mutate(
            session,
            reservation_id,
            "payment",
            check=check,
            changes={"payment_status": PaymentStatus.PAID},
            call=lambda current: gateway.confirm_payment_intent(
                payment_intent_id, payment_method_id, session=session
            ),
            finalize=finalize,
        )
        return committed

    async def refund(
        self,
        session: SessionContext,
        reservation_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> ReservationEntity:
        gateway = self._gateway()

        def check(current: ReservationEntity) -> None:
            if current.status != ReservationStatus.CANCELLED:
                raise StateError(
                    f"Only cancelled reservations can be refunded, "
                    f"{reservation_id} is {current.status.value}",
                    current=current.status,
                    target=PaymentStatus.REFUNDED,
                )
            if current.payment_status != PaymentStatus.PAID or not current.payment_intent_id:
                raise StateError(
                    f"Reservation {reservation_id} has no payment to refund",
                    current=current.payment_status,
                    target=PaymentStatus.REFUNDED,
                )

        def finalize(current: ReservationEntity, result) -> ReservationEntity:
            if not result.succeeded:
                raise ValidationError(f"Refund was not completed: {result.status}", field="payment")
            return current.model_copy(update={"payment_status": PaymentStatus.REFUNDED})

        committed, _ = await self._mutate(
            session,
            reservation_id,
            "refund",
            check=check,
            changes={"payment_status": PaymentStatus.REFUNDED},
            call=lambda current: gateway.refund(
                current.payment_intent_id, amount, reason, session=session
            ),
            finalize=finalize,
        )
        return committed

    # -------------------------------------------------
    # Shared protocol
    # -------------------------------------------------

    async def _load(self, session: SessionContext, reservation_id: str) -> ReservationEntity:
        cached = self.cache.get(ReservationKeys.detail(reservation_id))
        if cached is not None:
            return cached
        logger.debug(f"Reservation {reservation_id} not cached, loading")
        return await self.queries.get_reservation(reservation_id, session=session)

    def _committed(self, key: CacheKey, fallback: ReservationEntity) -> ReservationEntity:
        """Latest authoritative value under the optimistic layers."""
        entry = self.cache.read(key)
        if entry is not None and entry.has_data:
            return entry.base
        return fallback

    def _next_version(self, key: CacheKey, entity: ReservationEntity) -> ReservationEntity:
        previous = self.cache.get(key)
        floor = previous.version + 1 if previous is not None else entity.version
        if entity.version >= floor:
            return entity
        return entity.model_copy(update={"version": floor})

    async def _mutate(
        self,
        session: SessionContext,
        reservation_id: str,
        action: str,
        *,
        check: Callable[[ReservationEntity], None],
        changes: dict,
        call: Callable[[ReservationEntity], Awaitable[Any]],
        finalize: Callable[[ReservationEntity, Any], ReservationEntity],
    ) -> tuple[ReservationEntity, Any]:
        inflight_key = (reservation_id, action)
        existing = self._inflight.get(inflight_key)
        if existing is not None:
            logger.info(f"Joining in-flight {action} of reservation {reservation_id}")
            return await asyncio.shield(existing)

        async def run() -> tuple[ReservationEntity, Any]:
            current = await self._load(session, reservation_id)
            check(current)

            key = ReservationKeys.detail(reservation_id)
            update = self.cache.apply_optimistic(
                key,
                lambda value: (value if value is not None else current).model_copy(update=changes),
            )
            try:
                result = await call(current)
                final = finalize(self._committed(key, current), result)
            except (Exception, asyncio.CancelledError) as e:
                restored = update.rollback()
                suffix = "" if restored else ", newer state kept"
                logger.warning(f"❌ {action} of reservation {reservation_id} failed: {e!r}{suffix}")
                raise

            final = self._next_version(key, final)
            self.cache.commit(key, final, update=update)
            self._invalidate_dependents(final.property_id)
            logger.info(
                f"✅ Reservation {reservation_id}: {action} "
                f"(status={final.status.value}, payment={final.payment_status.value}, v{final.version})"
            )
            return final, result

        task = asyncio.ensure_future(run())
        self._inflight[inflight_key] = task
        try:
            return await task
        finally:
            if self._inflight.get(inflight_key) is task:
                del self._inflight[inflight_key]

    def _invalidate_dependents(self, property_id: str) -> None:
        for prefix in (
            ReservationKeys.lists(),
            ReservationKeys.guest(),
            ReservationKeys.host(),
            ReservationKeys.stats(),
            ReservationKeys.upcoming(),
            ReservationKeys.conflicts(property_id),
            PropertyKeys.blocked(property_id),
        ):
            self.cache.invalidate(prefix)


mutation_coordinator = MutationCoordinator(
    BookingApiClient(), payment_gateway=PaymentApiClient()
)
