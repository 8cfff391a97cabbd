import datetime
from dataclasses import dataclass
from typing import Optional

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from reservation_engine.domain.calendar import (
    WEEK_DAYS,
    CalendarEngine,
    DateRange,
    SelectionPhase,
    YearMonth,
)

MONTHS = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]

IGNORE = "ignore"


def month_title(year_month: YearMonth) -> str:
    return f"{MONTHS[year_month.month - 1]} {year_month.year}"


def _blank() -> InlineKeyboardButton:
    return InlineKeyboardButton(text=" ", callback_data=IGNORE)


def day_label(engine: CalendarEngine, day: datetime.date) -> str:
    selected = engine.selected_range()
    if selected is not None and day in (selected.start, selected.end):
        return f"[{day.day}]"
    if engine.is_in_range(day):
        return f"·{day.day}·"
    if day == engine.today:
        return f"🔹 {day.day}"
    return str(day.day)


def build_month_keyboard(
    engine: CalendarEngine,
    prefix: str,
    back_callback: Optional[str] = None,
) -> InlineKeyboardMarkup:
    year_month = engine.state.visible_month
    keyboard: list[list[InlineKeyboardButton]] = []

    # Clickable title opens the month picker
    keyboard.append(
        [
            InlineKeyboardButton(
                text=month_title(year_month),
                callback_data=f"{prefix}_pick_month:{year_month.year}",
            )
        ]
    )
    keyboard.append(
        [InlineKeyboardButton(text=day, callback_data=IGNORE) for day in WEEK_DAYS]
    )

    for week in engine.grid().weeks():
        row = []
        for day in week:
            if day is None:
                row.append(_blank())
            elif engine.is_disabled(day):
                past = engine.min_date is not None and day < engine.min_date
                row.append(
                    InlineKeyboardButton(text=" " if past else "✖", callback_data=IGNORE)
                )
            else:
                row.append(
                    InlineKeyboardButton(
                        text=day_label(engine, day),
                        callback_data=f"{prefix}:{day.isoformat()}",
                    )
                )
        keyboard.append(row)

    prev_month, next_month = year_month.previous(), year_month.next()
    keyboard.append(
        [
            InlineKeyboardButton(
                text="⬅️",
                callback_data=f"{prefix}_month:{prev_month.year}-{prev_month.month}",
            ),
            InlineKeyboardButton(
                text="➡️",
                callback_data=f"{prefix}_month:{next_month.year}-{next_month.month}",
            ),
        ]
    )

    if engine.phase != SelectionPhase.EMPTY:
        keyboard.append(
            [
                InlineKeyboardButton(text=engine.display_value(), callback_data=IGNORE),
                InlineKeyboardButton(text="✖ Clear", callback_data=f"{prefix}_reset"),
            ]
        )

    if back_callback:
        keyboard.append(
            [InlineKeyboardButton(text="🔙 Back", callback_data=back_callback)]
        )

    return InlineKeyboardMarkup(inline_keyboard=keyboard)


def build_year_keyboard(year: int, prefix: str) -> InlineKeyboardMarkup:
    """Month picker"""
    keyboard = [
        [
            InlineKeyboardButton(text="⬅️", callback_data=f"{prefix}_pick_year:{year - 1}"),
            InlineKeyboardButton(text=f"{year}", callback_data=IGNORE),
            InlineKeyboardButton(text="➡️", callback_data=f"{prefix}_pick_year:{year + 1}"),
        ]
    ]

    row = []
    for i, name in enumerate(MONTHS):
        row.append(
            InlineKeyboardButton(text=name[:3], callback_data=f"{prefix}_month:{year}-{i + 1}")
        )
        if len(row) == 3:
            keyboard.append(row)
            row = []

    return InlineKeyboardMarkup(inline_keyboard=keyboard)


@dataclass
class CalendarUpdate:
    keyboard: InlineKeyboardMarkup
    selection: Optional[DateRange] = None


def handle_calendar_callback(
    engine: CalendarEngine,
    data: str,
    prefix: str,
    back_callback: Optional[str] = None,
) -> Optional[CalendarUpdate]:
    """
    Apply a callback query produced by ``build_month_keyboard``.

    Returns the keyboard to show next and the finalized selection if the
    click completed one, or None for callbacks that change nothing.
    """
    if data == IGNORE:
        return None

    action, _, value = data.partition(":")

    if action == prefix:
        selection = engine.select_date(datetime.date.fromisoformat(value))
    elif action == f"{prefix}_month":
        year, month = value.split("-")
        engine.go_to(YearMonth(int(year), int(month)))
        selection = None
    elif action == f"{prefix}_pick_month" or action == f"{prefix}_pick_year":
        return CalendarUpdate(keyboard=build_year_keyboard(int(value), prefix))
    elif action == f"{prefix}_reset":
        engine.reset()
        selection = None
    else:
        return None

    return CalendarUpdate(
        keyboard=build_month_keyboard(engine, prefix, back_callback),
        selection=selection,
    )
