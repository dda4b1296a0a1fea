"""
Occurrence expansion.

``expand(event, window_start, window_end)`` turns a schedule event (anything
exposing ``event_id``, ``start_at``, ``end_at``, ``is_all_day`` and ``rrule``,
normally a ``ScheduleEvent`` row) into the concrete occurrences that fall in
a half-open window. Occurrences are recomputed on every call and never
stored.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from .errors import ValidationError
from .recurrence import Frequency, Weekday, parse_optional

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class Occurrence:
    source_event_id: object
    start: datetime
    end: datetime

    def overlaps(self, other):
        return self.start < other.end and other.start < self.end


def shift(value, delta):
    """``value + delta`` clamped to the datetime range."""
    if delta >= timedelta(0):
        return value + delta if datetime.max - value > delta else datetime.max
    return value + delta if value - datetime.min > -delta else datetime.min


def normalized_span(event):
    """Return the ``(start, end)`` of the anchor occurrence.

    All-day events snap to midnight and cover whole days: at least one, and
    enough to include the stored end.
    """
    start, end = event.start_at, event.end_at
    if start is None or end is None:
        raise ValidationError("Start and end are required.", field="start")
    if end <= start:
        raise ValidationError("End must be after start.", field="end")
    if not getattr(event, "is_all_day", False):
        return start, end
    first_day = start.date()
    last_day = end.date()
    if end.time() != time.min and last_day < date.max:
        last_day += ONE_DAY
    days = max(1, (last_day - first_day).days)
    anchor = datetime.combine(first_day, time.min)
    return anchor, shift(anchor, timedelta(days=days))


def _add_months(year, month, months):
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _nth_weekday(year, month, weekday, position):
    """Day of month of the ``position``-th ``weekday`` (-1 = last)."""
    if position > 0:
        first = date(year, month, 1).weekday()
        return 1 + (weekday - first) % 7 + (position - 1) * 7
    last_day = calendar.monthrange(year, month)[1]
    last = date(year, month, last_day).weekday()
    return last_day - (last - weekday) % 7


# ==========================================
# CANDIDATE GENERATORS (one per frequency)
# ==========================================
# Each yields candidate start datetimes in ascending order, beginning at
# period ``k`` (0 = the anchor's day/week), and stops on its own before
# running past the supported date range.

def _daily(anchor, rule, k=0):
    step = timedelta(days=rule.interval)
    while True:
        try:
            yield anchor + step * k
        except OverflowError:
            return
        k += 1


def _week_days(anchor, rule):
    return sorted(rule.by_weekday) or [Weekday(anchor.weekday())]


def _weekly(anchor, rule, k=0):
    days = _week_days(anchor, rule)
    week_start = anchor.date() - timedelta(days=anchor.weekday())
    step = timedelta(weeks=rule.interval)
    while True:
        try:
            current = week_start + step * k
        except OverflowError:
            return
        for wd in days:
            try:
                candidate = datetime.combine(current + timedelta(days=int(wd)), anchor.time())
            except OverflowError:
                return
            if candidate >= anchor:
                yield candidate
        k += 1


def _monthly(anchor, rule, k=0):
    position = rule.by_month_position
    weekday = int(next(iter(rule.by_weekday))) if position is not None else None
    while True:
        year, month = _add_months(anchor.year, anchor.month, rule.interval * k)
        if year > date.max.year:
            return
        if position is None:
            day = anchor.day
            if day > calendar.monthrange(year, month)[1]:
                # No clamping: months without this day are skipped
                k += 1
                continue
        else:
            day = _nth_weekday(year, month, weekday, position)
        candidate = datetime.combine(date(year, month, day), anchor.time())
        if candidate >= anchor:
            yield candidate
        k += 1


def _yearly(anchor, rule, k=0):
    while True:
        year = anchor.year + rule.interval * k
        if year > date.max.year:
            return
        k += 1
        if anchor.month == 2 and anchor.day == 29 and not calendar.isleap(year):
            continue
        yield datetime.combine(date(year, anchor.month, anchor.day), anchor.time())


_GENERATORS = {
    Frequency.DAILY: _daily,
    Frequency.WEEKLY: _weekly,
    Frequency.MONTHLY: _monthly,
    Frequency.YEARLY: _yearly,
}


def _fast_forward(anchor, rule, skip_to):
    """``(k, skipped)``: a period at or before ``skip_to`` and how many
    occurrences the periods before it produce.

    Only DAILY and WEEKLY have a fixed number of occurrences per period;
    other frequencies always start from the anchor.
    """
    if skip_to is None or skip_to <= anchor:
        return 0, 0
    if rule.frequency is Frequency.DAILY:
        k = max(0, (skip_to - anchor).days // rule.interval - 1)
        return k, k
    if rule.frequency is Frequency.WEEKLY:
        days = _week_days(anchor, rule)
        week_start = anchor.date() - timedelta(days=anchor.weekday())
        k = max(0, (skip_to.date() - week_start).days // 7 // rule.interval - 1)
        if k == 0:
            return 0, 0
        first_week = sum(1 for wd in days if wd >= anchor.weekday())
        return k, first_week + (k - 1) * len(days)
    return 0, 0


class Expansion:
    """Restartable, finite sequence of occurrences for one event and window."""

    def __init__(self, event, window_start=None, window_end=None):
        # Parse up front so a malformed rule fails before anything is emitted
        self.rule = parse_optional(getattr(event, "rrule", None))
        self.anchor_start, self.anchor_end = normalized_span(event)
        self.duration = self.anchor_end - self.anchor_start
        self.event_id = getattr(event, "event_id", None)
        self.window_start = window_start
        self.window_end = window_end
        if window_start is not None and window_end is not None and window_end < window_start:
            raise ValueError("window_end must not be before window_start")
        if window_end is None and self.rule is not None and not self.rule.is_bounded:
            raise ValueError("A never-ending rule needs a window end to expand.")

    def __iter__(self):
        if self.rule is None:
            yield from self._single()
        else:
            yield from self._recurring()

    def _occurrence(self, start):
        return Occurrence(self.event_id, start, shift(start, self.duration))

    def _single(self):
        start, end = self.anchor_start, self.anchor_end
        if self.window_end is not None and start >= self.window_end:
            return
        if self.window_start is not None and end <= self.window_start:
            return
        yield self._occurrence(start)

    def _recurring(self):
        rule = self.rule
        count, until = rule.count, rule.until
        # Periods skipped ahead of the window still use up COUNT
        k, generated = _fast_forward(self.anchor_start, rule, self.window_start)
        for candidate in _GENERATORS[rule.frequency](self.anchor_start, rule, k):
            if count is not None and generated >= count:
                return
            if until is not None and candidate.date() > until:
                return
            if self.window_end is not None and candidate >= self.window_end:
                return
            generated += 1
            if self.window_start is not None and candidate < self.window_start:
                continue
            yield self._occurrence(candidate)

    def __repr__(self):
        return f"<Expansion event={self.event_id!r} [{self.window_start} .. {self.window_end})>"


def expand(event, window_start, window_end):
    """Occurrences of ``event`` starting in ``[window_start, window_end)``.

    A non-repeating event is returned when its span intersects the window.
    Raises ``MalformedRuleError`` immediately for an unparseable rule.
    """
    return Expansion(event, window_start, window_end)


def series_bounds(event, limit=None):
    """``(first_start, last_end)`` of the series.

    Only occurrences starting before ``limit`` are visited. ``last_end`` is
    None when the series never ends, or is still running at ``limit``.
    """
    rule = parse_optional(getattr(event, "rrule", None))
    anchor_start, _ = normalized_span(event)
    if rule is not None and not rule.is_bounded and limit is None:
        return anchor_start, None

    first = last = None
    seen = 0
    for occ in Expansion(event, None, limit):
        if first is None:
            first = occ
        last = occ
        seen += 1

    if rule is None:
        ended = first is not None
    elif rule.count is not None:
        ended = seen >= rule.count
    elif rule.until is not None:
        ended = limit is None or shift(datetime.combine(rule.until, time.min), ONE_DAY) <= limit
    else:
        ended = False

    if not ended:
        return (first.start if first else anchor_start), None
    if first is None:
        # Bounded rule that never matches (e.g. UNTIL before the first match)
        return anchor_start, anchor_start
    logger.debug("Series %s spans %s .. %s", getattr(event, "event_id", None), first.start, last.end)
    return first.start, last.end
