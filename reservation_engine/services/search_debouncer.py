"""
Debounced property search.

The location text box and the structured filters have separate quiet-period
timers: every edit restarts the timer of its own field only. When a timer
fires the merged params are searched, unless they equal the params of the
last issued request. Responses are tagged with a generation number and only
the newest generation is kept.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from reservation_engine.core.config import settings
from reservation_engine.domain.availability import AvailabilityChecker
from reservation_engine.domain.calendar import DateRange
from reservation_engine.schemas.search import SearchFilters

logger = logging.getLogger(__name__)

LOCATION = "location"
FILTERS = "filters"


class SearchDebouncer:
    def __init__(
        self,
        search: Callable[[SearchFilters], Awaitable[Any]],
        *,
        delay: Optional[float] = None,
        checker: Optional[AvailabilityChecker] = None,
        on_results: Optional[Callable[[Any], None]] = None,
        initial: Optional[SearchFilters] = None,
    ):
        self.delay = settings.search_debounce_seconds if delay is None else delay
        self.checker = checker or AvailabilityChecker()
        self.on_results = on_results
        self._search = search

        initial = initial or SearchFilters()
        self._live = {LOCATION: initial.location or "", FILTERS: initial}
        self._debounced = dict(self._live)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._generation = 0
        self._last_params: Optional[SearchFilters] = None
        self._closed = False

        self.results: Any = None
        self.error: Optional[Exception] = None

    @property
    def is_searching(self) -> bool:
        return self._live != self._debounced

    @property
    def location(self) -> str:
        return self._live[LOCATION]

    @property
    def filters(self) -> SearchFilters:
        return self._live[FILTERS]

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def search_params(self) -> SearchFilters:
        """Debounced filters with the debounced text taking precedence for location"""
        filters: SearchFilters = self._debounced[FILTERS]
        location = self._debounced[LOCATION] or filters.location
        return filters.model_copy(update={"location": location or None})

    # -------------------------------------------------
    # Input
    # -------------------------------------------------

    def set_location(self, text: str) -> None:
        self._set(LOCATION, text or "")

    def update_filters(self, **changes) -> None:
        merged = {**self._live[FILTERS].model_dump(), **changes}
        self._set(FILTERS, SearchFilters.model_validate(merged))

    def set_filters(self, filters: SearchFilters) -> None:
        self._set(FILTERS, filters)

    def set_dates(self, stay: Optional[DateRange]) -> bool:
        """
        Take a range from the calendar. Returns False (and keeps the error)
        when the range does not pass the availability rules.
        """
        if stay is None:
            self.error = None
            self.update_filters(check_in=None, check_out=None)
            return True

        validated, error = self.checker.validate_dates(stay.start, stay.end)
        if error:
            logger.info(f"Search dates rejected: {error}")
            self.error = error
            return False

        self.error = None
        self.update_filters(check_in=validated.start, check_out=validated.end)
        return True

    def _set(self, field: str, value: Any) -> None:
        if self._closed:
            raise RuntimeError("SearchDebouncer is closed")
        if value == self._live[field]:
            return

        self._live[field] = value
        timer = self._timers.pop(field, None)
        if timer is not None:
            timer.cancel()

        if value == self._debounced[field]:
            # Edited back to the settled value
            return

        loop = asyncio.get_running_loop()
        self._timers[field] = loop.call_later(self.delay, self._settle, field)

    def _settle(self, field: str) -> None:
        self._timers.pop(field, None)
        self._debounced[field] = self._live[field]
        self._issue()

    # -------------------------------------------------
    # Requests
    # -------------------------------------------------

    def _issue(self) -> None:
        params = self.search_params
        if params == self._last_params:
            logger.debug("Search params unchanged, skipping request")
            return

        self._last_params = params
        self._generation += 1
        task = asyncio.get_running_loop().create_task(self._run(self._generation, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, generation: int, params: SearchFilters) -> None:
        logger.debug(f"Search #{generation}: {params.to_query_params()}")
        try:
            results = await self._search(params)
        except Exception as e:
            if generation != self._generation:
                return
            logger.warning(f"Search #{generation} failed: {e}")
            self.error = e
            return

        if generation != self._generation:
            logger.debug(f"Discarding results of superseded search #{generation}")
            return

        self.results = results
        self.error = None
        if self.on_results:
            self.on_results(results)

    def reset(self) -> None:
        """Clear inputs and results without searching."""
        self._cancel_timers()
        empty = {LOCATION: "", FILTERS: SearchFilters()}
        self._live = dict(empty)
        self._debounced = dict(empty)
        self._generation += 1
        self._last_params = None
        self.results = None
        self.error = None

    def close(self) -> None:
        self._cancel_timers()
        # Outstanding responses become stale
        self._generation += 1
        self._closed = True

    def _cancel_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
