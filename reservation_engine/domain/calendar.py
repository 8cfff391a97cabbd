"""
Date-range selection logic of the booking calendar.

Pure state, no rendering: the month grid, the disabled-date policy and the
two-phase range selection (start click, optional hover preview, end click).
"""
import calendar
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Collection, Iterable, Iterator, Optional

from reservation_engine.core.errors import ValidationError

WEEK_DAYS = ["Su", "Mo", "Tu", "We", "Th", "Fr", "Sa"]


def to_day(value: datetime.date) -> datetime.date:
    """Truncate to calendar-day granularity (datetime is a date subclass)."""
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


def day_count(value: datetime.date) -> int:
    return to_day(value).toordinal()


@dataclass(frozen=True, order=True)
class YearMonth:
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def of(cls, value: datetime.date) -> "YearMonth":
        return cls(value.year, value.month)

    def first_day(self) -> datetime.date:
        return datetime.date(self.year, self.month, 1)

    def previous(self) -> "YearMonth":
        if self.month == 1:
            return YearMonth(self.year - 1, 12)
        return YearMonth(self.year, self.month - 1)

    def next(self) -> "YearMonth":
        if self.month == 12:
            return YearMonth(self.year + 1, 1)
        return YearMonth(self.year, self.month + 1)

    def __str__(self) -> str:
        return f"{self.year}-{self.month:02d}"


@dataclass(frozen=True)
class DateRange:
    start: datetime.date
    end: Optional[datetime.date] = None

    def __post_init__(self):
        object.__setattr__(self, "start", to_day(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", to_day(self.end))
            if self.start > self.end:
                raise ValidationError(
                    "Check-out date must not be before check-in date", field="end"
                )

    @property
    def is_complete(self) -> bool:
        return self.end is not None

    @property
    def nights(self) -> Optional[int]:
        if self.end is None:
            return None
        return day_count(self.end) - day_count(self.start)

    def contains(self, day: datetime.date) -> bool:
        day = to_day(day)
        end = self.end if self.end is not None else self.start
        return self.start <= day <= end


@dataclass(frozen=True)
class BlockedInterval:
    """Occupied span of an existing reservation (both bounds inclusive)"""

    start: datetime.date
    end: datetime.date

    def __post_init__(self):
        object.__setattr__(self, "start", to_day(self.start))
        object.__setattr__(self, "end", to_day(self.end))
        if self.start > self.end:
            raise ValidationError("Blocked interval ends before it starts", field="end")

    def contains(self, day: datetime.date) -> bool:
        return self.start <= to_day(day) <= self.end


class MonthGrid:
    """
    7-column grid of one month, Sunday first.

    Leading None cells pad the first week up to the month's starting weekday.
    Cells are produced lazily and the grid can be iterated any number of times.
    """

    def __init__(self, year_month: YearMonth):
        self.year_month = year_month
        # calendar.monthrange() counts weekdays from Monday=0
        first_weekday, self.days_count = calendar.monthrange(
            year_month.year, year_month.month
        )
        self.leading = (first_weekday + 1) % 7

    def __iter__(self) -> Iterator[Optional[datetime.date]]:
        for _ in range(self.leading):
            yield None
        for day in range(1, self.days_count + 1):
            yield datetime.date(self.year_month.year, self.year_month.month, day)

    def __len__(self) -> int:
        return self.leading + self.days_count

    def weeks(self) -> list[list[Optional[datetime.date]]]:
        rows: list[list[Optional[datetime.date]]] = []
        row: list[Optional[datetime.date]] = []
        for cell in self:
            row.append(cell)
            if len(row) == 7:
                rows.append(row)
                row = []
        if row:
            # Pad the incomplete last week
            row.extend([None] * (7 - len(row)))
            rows.append(row)
        return rows


def days_in_month(year_month: YearMonth) -> MonthGrid:
    return MonthGrid(year_month)


def is_disabled(
    day: datetime.date,
    min_date: Optional[datetime.date] = None,
    max_date: Optional[datetime.date] = None,
    blocked_dates: Collection[datetime.date] = (),
    blocked_intervals: Iterable[BlockedInterval] = (),
) -> bool:
    day = to_day(day)
    if min_date and day < to_day(min_date):
        return True
    if max_date and day > to_day(max_date):
        return True
    if day in blocked_dates:
        return True
    return any(interval.contains(day) for interval in blocked_intervals)


class SelectionMode(str, Enum):
    SINGLE = "single"
    RANGE = "range"


class SelectionPhase(str, Enum):
    EMPTY = "empty"
    START_SELECTED = "start_selected"
    RANGE_COMPLETE = "range_complete"


@dataclass
class CalendarViewState:
    visible_month: YearMonth
    range_start: Optional[datetime.date] = None
    range_end: Optional[datetime.date] = None
    hover_date: Optional[datetime.date] = None


def _format_day(day: datetime.date) -> str:
    return f"{day:%b} {day.day}, {day.year}"


class CalendarEngine:
    """
    Selection state machine behind the date picker.

    Range mode:
        EMPTY --click--> START_SELECTED --click--> RANGE_COMPLETE
    Clicking an earlier date than the start swaps the bounds. A click after
    RANGE_COMPLETE starts a new cycle. Clicks on disabled dates never change
    the state. In single mode a click finalizes immediately.
    """

    def __init__(
        self,
        mode: SelectionMode = SelectionMode.RANGE,
        *,
        min_date: Optional[datetime.date] = None,
        max_date: Optional[datetime.date] = None,
        blocked_dates: Collection[datetime.date] = (),
        blocked_intervals: Iterable[BlockedInterval] = (),
        visible_month: Optional[YearMonth] = None,
        today: Optional[datetime.date] = None,
        on_select: Optional[Callable[[DateRange], None]] = None,
    ):
        self.mode = SelectionMode(mode)
        self.today = to_day(today) if today else datetime.date.today()
        self.min_date = to_day(min_date) if min_date else None
        self.max_date = to_day(max_date) if max_date else None
        self.blocked_dates = frozenset(to_day(d) for d in blocked_dates)
        self.blocked_intervals = tuple(blocked_intervals)
        self.on_select = on_select
        self._initial_month = visible_month or YearMonth.of(self.today)
        self.state = CalendarViewState(visible_month=self._initial_month)

    @property
    def phase(self) -> SelectionPhase:
        if self.state.range_start is None:
            return SelectionPhase.EMPTY
        if self.mode == SelectionMode.SINGLE or self.state.range_end is not None:
            return SelectionPhase.RANGE_COMPLETE
        return SelectionPhase.START_SELECTED

    def grid(self) -> MonthGrid:
        return days_in_month(self.state.visible_month)

    def set_blocked(
        self,
        blocked_dates: Collection[datetime.date] = (),
        blocked_intervals: Iterable[BlockedInterval] = (),
    ) -> None:
        """Replace the blocking constraints wholesale (a new fetch arrived)."""
        self.blocked_dates = frozenset(to_day(d) for d in blocked_dates)
        self.blocked_intervals = tuple(blocked_intervals)

    def is_disabled(self, day: datetime.date) -> bool:
        return is_disabled(
            day,
            self.min_date,
            self.max_date,
            self.blocked_dates,
            self.blocked_intervals,
        )

    def select_date(self, day: datetime.date) -> Optional[DateRange]:
        """
        Handle a click on a day cell.

        Returns the finalized selection (``DateRange`` with ``end=None`` in
        single mode) or None while the range is still incomplete or the click
        was ignored.
        """
        day = to_day(day)
        if self.is_disabled(day):
            return None

        if self.mode == SelectionMode.SINGLE:
            self.state.range_start = day
            self.state.range_end = None
            return self._emit(DateRange(day))

        if self.phase != SelectionPhase.START_SELECTED:
            self.state.range_start = day
            self.state.range_end = None
            return None

        start = self.state.range_start
        if day < start:
            self.state.range_end = start
            self.state.range_start = day
        else:
            self.state.range_end = day
        self.state.hover_date = None
        return self._emit(DateRange(self.state.range_start, self.state.range_end))

    def _emit(self, selection: DateRange) -> DateRange:
        if self.on_select is not None:
            self.on_select(selection)
        return selection

    def hover(self, day: Optional[datetime.date]) -> None:
        self.state.hover_date = to_day(day) if day is not None else None

    def clear_hover(self) -> None:
        self.state.hover_date = None

    def selected_range(self) -> Optional[DateRange]:
        if self.state.range_start is None:
            return None
        return DateRange(self.state.range_start, self.state.range_end)

    def preview_range(self) -> Optional[DateRange]:
        """Hover preview, only while the start is picked and the end is not."""
        if self.mode != SelectionMode.RANGE or self.phase != SelectionPhase.START_SELECTED:
            return None
        start, hover = self.state.range_start, self.state.hover_date
        if hover is None:
            return None
        return DateRange(min(start, hover), max(start, hover))

    def is_in_range(self, day: datetime.date) -> bool:
        if self.mode != SelectionMode.RANGE:
            return False
        if self.phase == SelectionPhase.RANGE_COMPLETE:
            return self.selected_range().contains(day)
        preview = self.preview_range()
        return preview is not None and preview.contains(day)

    def previous_month(self) -> YearMonth:
        self.state.visible_month = self.state.visible_month.previous()
        return self.state.visible_month

    def next_month(self) -> YearMonth:
        self.state.visible_month = self.state.visible_month.next()
        return self.state.visible_month

    def go_to(self, year_month: YearMonth) -> YearMonth:
        self.state.visible_month = year_month
        return year_month

    def reset(self) -> None:
        """Widget closed: the view state is never kept between openings."""
        self.state = CalendarViewState(visible_month=self._initial_month)

    def display_value(self, fmt: Callable[[datetime.date], str] = _format_day) -> str:
        start, end = self.state.range_start, self.state.range_end
        if start is None:
            return ""
        if self.mode == SelectionMode.SINGLE:
            return fmt(start)
        if end is None:
            return f"{fmt(start)} - Select end date"
        return f"{fmt(start)} - {fmt(end)}"
