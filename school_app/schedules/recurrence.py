"""
Recurrence rules for schedule events.

A rule is stored on ``ScheduleEvent.rrule`` as a single line of
``;``-separated ``KEY=VALUE`` components, the same shape calendar widgets
consume::

    FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE;UNTIL=20241220
    FREQ=MONTHLY;INTERVAL=1;BYDAY=-1MO;COUNT=6

``parse`` accepts a few extra spellings produced by calendar front-ends
(``RRULE:`` prefix, a ``DTSTART`` line, ``BYMONTHPOS``/``BYSETPOS``, ISO
``UNTIL`` dates) while ``serialize`` always writes the canonical form above.
"""
import enum
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import FrozenSet, Optional, Union

from .errors import MalformedRuleError


class Frequency(enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(enum.IntEnum):
    # Fixed numbering, independent of any locale's first day of week
    MO = 0
    TU = 1
    WE = 2
    TH = 3
    FR = 4
    SA = 5
    SU = 6

    @property
    def label(self):
        return WEEKDAY_LABELS[self.value]


WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
MONTH_POSITIONS = (1, 2, 3, 4, -1)
POSITION_WORDS = {1: "first", 2: "second", 3: "third", 4: "fourth", -1: "last"}
UNIT_WORDS = {
    Frequency.DAILY: "day",
    Frequency.WEEKLY: "week",
    Frequency.MONTHLY: "month",
    Frequency.YEARLY: "year",
}


# ==========================================
# END CONDITIONS
# ==========================================

@dataclass(frozen=True)
class Never:
    pass


@dataclass(frozen=True)
class Until:
    """Inclusive last date on which an occurrence may start."""
    date: date


@dataclass(frozen=True)
class Count:
    """Total number of occurrences, the first one included."""
    n: int

    def __post_init__(self):
        if isinstance(self.n, bool) or not isinstance(self.n, int) or self.n < 1:
            raise MalformedRuleError("COUNT must be a positive integer.")


NEVER = Never()
EndCondition = Union[Never, Until, Count]


# ==========================================
# RULE
# ==========================================

@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    by_weekday: FrozenSet[Weekday] = frozenset()
    by_month_position: Optional[int] = None
    end: EndCondition = NEVER

    def __post_init__(self):
        if not isinstance(self.frequency, Frequency):
            raise MalformedRuleError(f"Unknown frequency: {self.frequency!r}")
        if isinstance(self.interval, bool) or not isinstance(self.interval, int) or self.interval < 1:
            raise MalformedRuleError("INTERVAL must be a positive integer.")
        try:
            weekdays = frozenset(Weekday(d) for d in (self.by_weekday or ()))
        except (TypeError, ValueError):
            raise MalformedRuleError("BYDAY contains an unknown weekday.")
        object.__setattr__(self, "by_weekday", weekdays)

        if self.by_month_position is not None:
            if self.frequency is not Frequency.MONTHLY:
                raise MalformedRuleError("A month position is only valid for MONTHLY rules.")
            if self.by_month_position not in MONTH_POSITIONS:
                raise MalformedRuleError(f"Month position must be one of {MONTH_POSITIONS}.")
            if len(weekdays) != 1:
                raise MalformedRuleError("A month position needs exactly one weekday.")
        elif weekdays and self.frequency is not Frequency.WEEKLY:
            raise MalformedRuleError(
                "BYDAY is only supported for WEEKLY rules or MONTHLY rules with a month position."
            )
        if not isinstance(self.end, (Never, Until, Count)):
            raise MalformedRuleError("End condition must be NEVER, UNTIL or COUNT.")

    @property
    def until(self):
        return self.end.date if isinstance(self.end, Until) else None

    @property
    def count(self):
        return self.end.n if isinstance(self.end, Count) else None

    @property
    def is_bounded(self):
        return not isinstance(self.end, Never)


# ==========================================
# PARSING
# ==========================================

KNOWN_KEYS = {"FREQ", "INTERVAL", "BYDAY", "BYMONTHPOS", "BYSETPOS", "UNTIL", "COUNT", "WKST"}
_BYDAY_TOKEN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
_INT = re.compile(r"^[+-]?\d+$")


def _rule_line(text):
    lines = [ln.strip() for ln in str(text).strip().splitlines() if ln.strip()]
    rules = []
    for line in lines:
        head = line.split(":", 1)[0].split(";", 1)[0].upper()
        if head == "DTSTART":
            continue
        if head == "RRULE" and ":" in line:
            rules.append(line.split(":", 1)[1])
        elif "=" in line and ":" not in line.split("=", 1)[0]:
            rules.append(line)
        else:
            raise MalformedRuleError(f"Unsupported recurrence line: {line}", text)
    if len(rules) != 1:
        raise MalformedRuleError("Expected exactly one recurrence rule.", text)
    return rules[0]


def _parse_int(key, value, text):
    if not _INT.match(value):
        raise MalformedRuleError(f"{key} must be an integer, got {value!r}.", text)
    return int(value)


def _parse_until(value, text):
    raw = value.strip()
    try:
        if re.match(r"^\d{4}-\d{2}-\d{2}$", raw):
            return date.fromisoformat(raw)
        if re.match(r"^\d{8}$", raw):
            return datetime.strptime(raw, "%Y%m%d").date()
        if re.match(r"^\d{8}T\d{6}Z?$", raw):
            return datetime.strptime(raw[:15], "%Y%m%dT%H%M%S").date()
        if re.match(r"^\d{4}-\d{2}-\d{2}T", raw):
            return datetime.fromisoformat(raw.rstrip("Z")).date()
    except ValueError:
        pass
    raise MalformedRuleError(f"UNTIL is not a valid date: {value!r}.", text)


def _parse_byday(value, text):
    weekdays = set()
    ordinals = []
    for token in value.split(","):
        token = token.strip().upper()
        m = _BYDAY_TOKEN.match(token)
        if not m:
            raise MalformedRuleError(f"Unknown weekday token {token!r} in BYDAY.", text)
        day = Weekday[m.group(2)]
        if day in weekdays:
            raise MalformedRuleError(f"Weekday {day.name} repeated in BYDAY.", text)
        weekdays.add(day)
        if m.group(1) is not None:
            ordinals.append(int(m.group(1)))
    return weekdays, ordinals


def parse(text):
    """Parse rule text into a ``RecurrenceRule``.

    Raises ``MalformedRuleError`` for anything that is not a complete,
    structurally valid rule. Nothing is defaulted silently except
    ``INTERVAL`` (1) and the end condition (NEVER).
    """
    if text is None or not str(text).strip():
        raise MalformedRuleError("Recurrence rule is empty.", text)

    parts = {}
    for component in _rule_line(text).split(";"):
        component = component.strip()
        if not component:
            continue
        key, sep, value = component.partition("=")
        key = key.strip().upper()
        value = value.strip()
        if not sep or not key or not value:
            raise MalformedRuleError(f"Malformed rule component {component!r}.", text)
        if key in parts:
            raise MalformedRuleError(f"{key} appears more than once.", text)
        parts[key] = value

    unknown = sorted(set(parts) - KNOWN_KEYS)
    if unknown:
        raise MalformedRuleError(f"Unsupported rule parts: {', '.join(unknown)}.", text)

    if "FREQ" not in parts:
        raise MalformedRuleError("FREQ is required.", text)
    try:
        frequency = Frequency(parts["FREQ"].upper())
    except ValueError:
        raise MalformedRuleError(f"Unknown frequency {parts['FREQ']!r}.", text)

    if "UNTIL" in parts and "COUNT" in parts:
        raise MalformedRuleError("UNTIL and COUNT are mutually exclusive.", text)

    interval = _parse_int("INTERVAL", parts["INTERVAL"], text) if "INTERVAL" in parts else 1

    weekdays, ordinals = set(), []
    if "BYDAY" in parts:
        weekdays, ordinals = _parse_byday(parts["BYDAY"], text)

    if "BYMONTHPOS" in parts and "BYSETPOS" in parts:
        raise MalformedRuleError("BYMONTHPOS and BYSETPOS are aliases; give only one.", text)
    position = None
    pos_text = parts.get("BYMONTHPOS") or parts.get("BYSETPOS")
    if pos_text is not None:
        position = _parse_int("BYMONTHPOS", pos_text, text)
    if ordinals:
        if len(ordinals) != 1 or len(weekdays) != 1:
            raise MalformedRuleError("A month position needs exactly one weekday.", text)
        if position is not None and position != ordinals[0]:
            raise MalformedRuleError("BYDAY ordinal disagrees with BYMONTHPOS.", text)
        position = ordinals[0]
    if position is not None and (frequency is not Frequency.MONTHLY or len(weekdays) != 1):
        raise MalformedRuleError("A month position requires FREQ=MONTHLY and exactly one weekday.", text)

    end = NEVER
    if "UNTIL" in parts:
        end = Until(_parse_until(parts["UNTIL"], text))
    elif "COUNT" in parts:
        end = Count(_parse_int("COUNT", parts["COUNT"], text))

    try:
        return RecurrenceRule(
            frequency=frequency,
            interval=interval,
            by_weekday=frozenset(weekdays),
            by_month_position=position,
            end=end,
        )
    except MalformedRuleError as e:
        e.text = text
        raise


def parse_optional(text):
    """``parse`` for nullable columns: blank text means "does not repeat"."""
    if text is None or not str(text).strip():
        return None
    return parse(text)


# ==========================================
# SERIALIZATION
# ==========================================

def _format_basic_date(d):
    return f"{d.year:04d}{d.month:02d}{d.day:02d}"


def serialize(rule):
    parts = [f"FREQ={rule.frequency.value}", f"INTERVAL={rule.interval}"]
    if rule.by_month_position is not None:
        (day,) = rule.by_weekday
        sign = "+" if rule.by_month_position > 0 else ""
        parts.append(f"BYDAY={sign}{rule.by_month_position}{day.name}")
    elif rule.by_weekday:
        parts.append("BYDAY=" + ",".join(d.name for d in sorted(rule.by_weekday)))
    if isinstance(rule.end, Until):
        parts.append(f"UNTIL={_format_basic_date(rule.end.date)}")
    elif isinstance(rule.end, Count):
        parts.append(f"COUNT={rule.end.n}")
    return ";".join(parts)


def _format_long_date(d):
    return f"{MONTH_LABELS[d.month - 1]} {d.day}, {d.year}"


def describe(rule, anchor=None):
    """Human readable summary, e.g. "every 2 weeks on Mon, Wed until Dec 31, 2025".

    Advisory only; ``anchor`` (the first occurrence) fills in the day of
    month/year where the rule itself does not name it.
    """
    unit = UNIT_WORDS[rule.frequency]
    text = f"every {unit}" if rule.interval == 1 else f"every {rule.interval} {unit}s"

    if rule.frequency is Frequency.WEEKLY:
        days = sorted(rule.by_weekday)
        if not days and anchor is not None:
            days = [Weekday(anchor.weekday())]
        if days:
            text += " on " + ", ".join(d.label for d in days)
    elif rule.frequency is Frequency.MONTHLY:
        if rule.by_month_position is not None:
            (day,) = rule.by_weekday
            text += f" on the {POSITION_WORDS[rule.by_month_position]} {day.label}"
        elif anchor is not None:
            text += f" on day {anchor.day}"
    elif rule.frequency is Frequency.YEARLY and anchor is not None:
        text += f" on {MONTH_LABELS[anchor.month - 1]} {anchor.day}"

    if isinstance(rule.end, Until):
        text += f" until {_format_long_date(rule.end.date)}"
    elif isinstance(rule.end, Count):
        text += " for 1 occurrence" if rule.end.n == 1 else f" for {rule.end.n} occurrences"
    return text
