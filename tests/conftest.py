"""
Pytest configuration for reservation engine tests
"""
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure reservation_engine is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from reservation_engine.schemas.reservation import (  # noqa: E402
    CreateReservationRequest,
    ReservationEntity,
    ReservationStatus,
    SessionContext,
)
from reservation_engine.services.reservation_cache import ReservationCache  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ReservationCache(clock=clock, retry_attempts=2, retry_base_delay=0, retry_max_delay=0)


@pytest.fixture
def session():
    return SessionContext(user_id="user-1", access_token="token-1")


@pytest.fixture
def make_reservation():
    def _make(**overrides) -> ReservationEntity:
        data = {
            "id": "res-1",
            "property_id": "prop-1",
            "check_in": date(2024, 3, 10),
            "check_out": date(2024, 3, 15),
            "guests": 2,
            "total_amount": Decimal("550.00"),
            "status": ReservationStatus.PENDING,
            "version": 1,
        }
        data.update(overrides)
        return ReservationEntity(**data)

    return _make


@pytest.fixture
def sample_request():
    """Sample data for reservation creation"""
    return CreateReservationRequest(
        property_id="prop-1",
        check_in=date(2024, 3, 16),
        check_out=date(2024, 3, 20),
        guests=2,
        total_amount=Decimal("440.00"),
    )


@pytest.fixture
def sample_order_payload():
    """Order as the backend returns it"""
    return {
        "_id": "65f0c0ffee",
        "propertyId": "prop-1",
        "checkIn": "2024-03-16",
        "checkOut": "2024-03-20",
        "guests": 2,
        "totalAmount": 440,
        "status": "pending",
        "paymentStatus": "unpaid",
    }
