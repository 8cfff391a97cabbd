"""
Booking backend and payment gateway clients.

The coordinator and the queries only depend on the protocols below; the
``requests`` based clients are the production implementations. Every backend
response is wrapped as ``{"success": bool, "data": ..., "error": str}``.
"""
import asyncio
import datetime
import logging
from decimal import Decimal
from typing import Any, Optional, Protocol

import requests

from reservation_engine.core.config import settings
from reservation_engine.core.errors import ConflictError, NetworkError
from reservation_engine.domain.calendar import BlockedInterval
from reservation_engine.schemas.reservation import (
    CheckoutSession,
    ConflictCheck,
    CreateReservationRequest,
    Page,
    PaymentResult,
    PriceBreakdown,
    ReservationEntity,
    ReservationListParams,
    ReservationStats,
    SessionContext,
)
from reservation_engine.schemas.search import PropertySummary, SearchFilters

logger = logging.getLogger(__name__)


class BookingApi(Protocol):
    async def create_order(
        self, request: CreateReservationRequest, *, session: Optional[SessionContext] = None
    ) -> ReservationEntity: ...

    async def confirm_order(
        self, reservation_id: str, *, session: Optional[SessionContext] = None
    ) -> ReservationEntity: ...

    async def cancel_order(
        self,
        reservation_id: str,
        reason: Optional[str] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> ReservationEntity: ...

    async def complete_order(
        self, reservation_id: str, *, session: Optional[SessionContext] = None
    ) -> ReservationEntity: ...

    async def get_order(
        self, reservation_id: str, *, session: Optional[SessionContext] = None
    ) -> ReservationEntity: ...

    async def list_orders(
        self,
        params: Optional[ReservationListParams] = None,
        *,
        scope: str = "all",
        session: Optional[SessionContext] = None,
    ) -> Page[ReservationEntity]: ...

    async def get_upcoming(
        self, limit: int = 5, *, session: Optional[SessionContext] = None
    ) -> list[ReservationEntity]: ...

    async def get_stats(
        self, timeframe: Optional[str] = None, *, session: Optional[SessionContext] = None
    ) -> ReservationStats: ...

    async def check_conflicts(
        self,
        property_id: str,
        check_in: datetime.date,
        check_out: datetime.date,
        exclude_id: Optional[str] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> ConflictCheck: ...

    async def calculate_total(
        self,
        property_id: str,
        check_in: datetime.date,
        check_out: datetime.date,
        guests: int,
        *,
        session: Optional[SessionContext] = None,
    ) -> PriceBreakdown: ...


class PropertyApi(Protocol):
    async def search_properties(self, filters: SearchFilters) -> Page[PropertySummary]: ...

    async def get_blocked_intervals(self, property_id: str) -> tuple[BlockedInterval, ...]: ...


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self, reservation: ReservationEntity, *, session: Optional[SessionContext] = None
    ) -> CheckoutSession: ...

    async def confirm_payment_intent(
        self,
        payment_intent_id: str,
        payment_method_id: Optional[str] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> PaymentResult: ...

    async def refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        *,
        session: Optional[SessionContext] = None,
    ) -> PaymentResult: ...


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class BaseApiClient:
    """Blocking ``requests`` calls run in a worker thread"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = settings.api_timeout_seconds if timeout is None else timeout
        self.http = http or requests.Session()

    def _request_sync(
        self,
        method: str,
        path: str,
        *,
        session: Optional[SessionContext] = None,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        headers = session.auth_headers if session else {}
        try:
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {path} failed: {e}")
            raise NetworkError(f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            message = self._error_message(response) or f"{method} {path} returned {response.status_code}"
            logger.warning(f"{method} {path} -> {response.status_code}: {message}")
            raise NetworkError(
                message,
                status_code=response.status_code,
                retryable=_is_retryable(response.status_code),
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise NetworkError(
                f"Invalid JSON from {path}",
                status_code=response.status_code,
                retryable=False,
            ) from e

        if not isinstance(payload, dict) or not payload.get("success", False):
            error = payload.get("error") if isinstance(payload, dict) else None
            raise NetworkError(
                error or f"{method} {path} was not successful",
                status_code=response.status_code,
                retryable=False,
            )
        return payload

    @staticmethod
    def _error_message(response: requests.Response) -> Optional[str]:
        try:
            payload = response.json()
        except ValueError:
            return response.text or None
        if isinstance(payload, dict):
            return payload.get("error") or payload.get("message")
        return None

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        return await asyncio.to_thread(self._request_sync, method, path, **kwargs)

    async def _data(self, method: str, path: str, **kwargs) -> Any:
        payload = await self._request(method, path, **kwargs)
        if payload.get("data") is None:
            raise NetworkError(f"{method} {path} returned no data", retryable=False)
        return payload["data"]


def _page(payload: dict, model) -> Page:
    pagination = payload.get("pagination") or {}
    items = [model.model_validate(item) for item in payload.get("data") or []]
    return Page(
        data=items,
        page=pagination.get("page", 1),
        limit=pagination.get("limit", len(items)),
        total=pagination.get("total", len(items)),
        total_pages=pagination.get("totalPages", 1),
    )


class BookingApiClient(BaseApiClient):
    BASE_PATH = "/orders"
    LIST_PATHS = {"all": "", "user": "/user", "host": "/host"}

    async def create_order(
        self, request: CreateReservationRequest, *, session: Optional[SessionContext] = None
    ) -> ReservationEntity:
        try:
            data = await self._data(
                "POST",
                self.BASE_PATH,
                json=request.model_dump(mode="json", by_alias=True, exclude_none=True),
                session=session,
            )
        except NetworkError as e:
            if e.status_code == 409:
                raise ConflictError(str(e)) from e
            raise
        return ReservationEntity.model_validate(data)

    async def _transition(
        self,
        reservation_id: str,
        action: str,
        session: Optional[SessionContext],
        body: Optional[dict] = None,
    ) -> ReservationEntity:
        data = await self._data(
            "PATCH", f"{self.BASE_PATH}/{reservation_id}/{action}", json=body, session=session
        )
        return ReservationEntity.model_validate(data)

    async def confirm_order(self, reservation_id, *, session=None):
        return await self._transition(reservation_id, "confirm", session)

    async def cancel_order(self, reservation_id, reason=None, *, session=None):
        return await self._transition(reservation_id, "cancel", session, body={"reason": reason})

    async def complete_order(self, reservation_id, *, session=None):
        return await self._transition(reservation_id, "complete", session)

    async def get_order(self, reservation_id, *, session=None):
        data = await self._data("GET", f"{self.BASE_PATH}/{reservation_id}", session=session)
        return ReservationEntity.model_validate(data)

    async def list_orders(self, params=None, *, scope="all", session=None):
        if scope not in self.LIST_PATHS:
            raise ValueError(f"Unknown order list scope: {scope}")
        query = params.model_dump(mode="json", by_alias=True, exclude_none=True) if params else None
        payload = await self._request(
            "GET", f"{self.BASE_PATH}{self.LIST_PATHS[scope]}", params=query, session=session
        )
        return _page(payload, ReservationEntity)

    async def get_upcoming(self, limit=5, *, session=None):
        data = await self._data(
            "GET", f"{self.BASE_PATH}/upcoming", params={"limit": limit}, session=session
        )
        return [ReservationEntity.model_validate(item) for item in data]

    async def get_stats(self, timeframe=None, *, session=None):
        params = {"timeframe": timeframe} if timeframe else None
        data = await self._data("GET", f"{self.BASE_PATH}/stats", params=params, session=session)
        return ReservationStats.model_validate(data)

    async def check_conflicts(
        self, property_id, check_in, check_out, exclude_id=None, *, session=None
    ):
        params = {
            "propertyId": property_id,
            "checkIn": check_in.isoformat(),
            "checkOut": check_out.isoformat(),
        }
        if exclude_id:
            params["excludeOrderId"] = exclude_id
        data = await self._data(
            "GET", f"{self.BASE_PATH}/check-conflicts", params=params, session=session
        )
        return ConflictCheck.model_validate(data)

    async def calculate_total(
        self, property_id, check_in, check_out, guests, *, session=None
    ):
        params = {
            "propertyId": property_id,
            "checkIn": check_in.isoformat(),
            "checkOut": check_out.isoformat(),
            "guests": guests,
        }
        data = await self._data(
            "GET", f"{self.BASE_PATH}/calculate-total", params=params, session=session
        )
        return PriceBreakdown.model_validate(data)


class PropertyApiClient(BaseApiClient):
    BASE_PATH = "/properties"

    async def search_properties(self, filters: SearchFilters) -> Page[PropertySummary]:
        payload = await self._request(
            "GET", f"{self.BASE_PATH}/search", params=filters.to_query_params()
        )
        return _page(payload, PropertySummary)

    async def get_blocked_intervals(self, property_id: str) -> tuple[BlockedInterval, ...]:
        data = await self._data("GET", f"{self.BASE_PATH}/{property_id}/blocked-dates")
        return tuple(
            BlockedInterval(
                datetime.date.fromisoformat(item["start"][:10]),
                datetime.date.fromisoformat(item["end"][:10]),
            )
            for item in data
        )


class PaymentApiClient(BaseApiClient):
    BASE_PATH = "/stripe"

    async def create_checkout_session(self, reservation, *, session=None):
        data = await self._data(
            "POST",
            f"{self.BASE_PATH}/create-session",
            json={
                "orderId": reservation.id,
                "propertyId": reservation.property_id,
                "amount": str(reservation.total_amount),
            },
            session=session,
        )
        return CheckoutSession.model_validate(data)

    async def confirm_payment_intent(self, payment_intent_id, payment_method_id=None, *, session=None):
        data = await self._data(
            "POST",
            f"{self.BASE_PATH}/confirm-payment",
            json={
                "payment_intent_id": payment_intent_id,
                "payment_method_id": payment_method_id,
            },
            session=session,
        )
        return PaymentResult.model_validate({"payment_intent_id": payment_intent_id, **data})

    async def refund(self, payment_intent_id, amount=None, reason=None, *, session=None):
        body = {"payment_intent_id": payment_intent_id, "reason": reason}
        if amount is not None:
            body["amount"] = str(amount)
        data = await self._data("POST", f"{self.BASE_PATH}/refund", json=body, session=session)
        return PaymentResult.model_validate({"payment_intent_id": payment_intent_id, **data})
