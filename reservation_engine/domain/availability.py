"""
Availability and pricing checks for a candidate stay.

The public checks never raise for bad input: problems come back as a
ValidationError inside the result object, the same way the form validators
report ``(is_valid, error)``.
"""
import datetime
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence, Tuple, Union

from reservation_engine.core.config import settings
from reservation_engine.core.errors import ValidationError
from reservation_engine.domain.calendar import BlockedInterval, DateRange, day_count, to_day
from reservation_engine.schemas.reservation import (
    PriceBreakdown,
    ReservationEntity,
    ReservationStatus,
)

MONEY_PLACES = Decimal("0.01")

DateInput = Union[datetime.date, str, None]


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSchedule:
    service_fee_rate: Decimal = Decimal("0.10")
    cleaning_fee: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    extra_guest_fee: Decimal = Decimal("0")  # per extra guest per night
    included_guests: int = 1

    @classmethod
    def from_settings(cls) -> "FeeSchedule":
        return cls(service_fee_rate=settings.service_fee_rate, tax_rate=settings.tax_rate)


@dataclass(frozen=True)
class ConflictResult:
    has_conflict: bool = False
    conflicting: list[BlockedInterval] = field(default_factory=list)
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.has_conflict


@dataclass(frozen=True)
class QuoteResult:
    breakdown: Optional[PriceBreakdown] = None
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def ranges_conflict(candidate: DateRange, blocked: BlockedInterval) -> bool:
    """
    Inclusive day overlap, except that check-out day is re-bookable:
    a stay may start on the day another one ends and end on the day
    another one starts.
    """
    end = candidate.end if candidate.end is not None else candidate.start
    overlaps = candidate.start <= blocked.end and end >= blocked.start
    if not overlaps:
        return False
    if candidate.start == blocked.end or end == blocked.start:
        return False
    return True


def count_nights(check_in: datetime.date, check_out: datetime.date) -> int:
    return day_count(check_out) - day_count(check_in)


def _parse_date(value: DateInput, field_name: str) -> Tuple[Optional[datetime.date], Optional[ValidationError]]:
    if value is None or value == "":
        return None, ValidationError(f"{field_name} is required", field=field_name)
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value), None
        except ValueError:
            return None, ValidationError("Invalid date format", field=field_name)
    if isinstance(value, datetime.date):
        return to_day(value), None
    return None, ValidationError("Invalid date format", field=field_name)


def blocked_intervals_from(
    reservations: Iterable[ReservationEntity], property_id: str
) -> tuple[BlockedInterval, ...]:
    """Occupied spans of every non-cancelled reservation of the property."""
    return tuple(
        BlockedInterval(r.check_in, r.check_out)
        for r in reservations
        if r.property_id == property_id and r.status != ReservationStatus.CANCELLED
    )


def quote_nights(
    nightly_rate: Decimal,
    nights: int,
    fee_schedule: FeeSchedule = FeeSchedule(),
    guests: int = 1,
) -> QuoteResult:
    if nights <= 0:
        return QuoteResult(
            error=ValidationError("Stay must be at least one night", field="nights")
        )
    if nightly_rate < 0:
        return QuoteResult(
            error=ValidationError("Nightly rate cannot be negative", field="nightly_rate")
        )

    base_price = _money(Decimal(nightly_rate) * nights)
    extra_guests = max(guests - fee_schedule.included_guests, 0)
    fees = _money(
        base_price * fee_schedule.service_fee_rate
        + fee_schedule.cleaning_fee
        + fee_schedule.extra_guest_fee * extra_guests * nights
    )
    taxes = _money((base_price + fees) * fee_schedule.tax_rate)

    return QuoteResult(
        breakdown=PriceBreakdown(
            base_price=base_price,
            taxes=taxes,
            fees=fees,
            total=base_price + fees + taxes,
            nights=nights,
        )
    )


class AvailabilityChecker:
    """Validates a candidate stay against booking rules and blocked intervals."""

    def __init__(
        self,
        *,
        min_nights: Optional[int] = None,
        max_nights: Optional[int] = None,
        min_date: Optional[datetime.date] = None,
        max_date: Optional[datetime.date] = None,
        max_guests: Optional[int] = None,
    ):
        self.min_nights = settings.min_nights if min_nights is None else min_nights
        self.max_nights = settings.max_nights if max_nights is None else max_nights
        self.min_date = min_date
        self.max_date = max_date
        self.max_guests = settings.max_guests if max_guests is None else max_guests

    @classmethod
    def for_booking_window(cls, today: Optional[datetime.date] = None, **kwargs) -> "AvailabilityChecker":
        """No stays in the past or beyond the configured booking window."""
        today = today or datetime.date.today()
        return cls(
            min_date=today,
            max_date=today + datetime.timedelta(days=settings.booking_window_days),
            **kwargs,
        )

    def validate_dates(
        self, check_in: DateInput, check_out: DateInput
    ) -> Tuple[Optional[DateRange], Optional[ValidationError]]:
        start, error = _parse_date(check_in, "check_in")
        if error:
            return None, error
        end, error = _parse_date(check_out, "check_out")
        if error:
            return None, error
        if end < start:
            return None, ValidationError(
                "Check-out date must be after check-in date", field="check_out"
            )
        stay = DateRange(start, end)
        error = self.validate(stay)
        if error:
            return None, error
        return stay, None

    def validate(self, stay: DateRange, guests: Optional[int] = None) -> Optional[ValidationError]:
        if stay.end is None:
            return ValidationError("Check-out date is required", field="check_out")
        nights = count_nights(stay.start, stay.end)
        if nights <= 0:
            return ValidationError(
                "Check-out date must be after check-in date", field="check_out"
            )
        if self.min_date and stay.start < self.min_date:
            return ValidationError("Check-in date cannot be in the past", field="check_in")
        if self.max_date and stay.end > self.max_date:
            return ValidationError(
                "Dates are outside of the booking window", field="check_out"
            )
        if self.min_nights and nights < self.min_nights:
            return ValidationError(
                f"Minimum stay is {self.min_nights} nights", field="check_out"
            )
        if self.max_nights and nights > self.max_nights:
            return ValidationError(
                f"Maximum stay is {self.max_nights} nights", field="check_out"
            )
        if guests is not None and not 1 <= guests <= self.max_guests:
            return ValidationError(
                f"Guests must be between 1 and {self.max_guests}", field="guests"
            )
        return None

    def check_conflict(
        self, candidate: Optional[DateRange], blocked: Iterable[BlockedInterval]
    ) -> ConflictResult:
        if candidate is None or candidate.end is None:
            return ConflictResult(
                error=ValidationError("Both check-in and check-out are required", field="check_out")
            )
        conflicting = [interval for interval in blocked if ranges_conflict(candidate, interval)]
        return ConflictResult(has_conflict=bool(conflicting), conflicting=conflicting)

    def calculate_total(
        self,
        nightly_rate: Decimal,
        check_in: DateInput,
        check_out: DateInput,
        fee_schedule: Optional[FeeSchedule] = None,
        guests: int = 1,
    ) -> QuoteResult:
        start, error = _parse_date(check_in, "check_in")
        if error:
            return QuoteResult(error=error)
        end, error = _parse_date(check_out, "check_out")
        if error:
            return QuoteResult(error=error)
        return quote_nights(
            nightly_rate,
            count_nights(start, end),
            fee_schedule or FeeSchedule.from_settings(),
            guests,
        )


def check_conflict(
    candidate: Optional[DateRange], blocked: Sequence[BlockedInterval]
) -> ConflictResult:
    return AvailabilityChecker(min_nights=0).check_conflict(candidate, blocked)
