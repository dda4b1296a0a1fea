"""
Double-booking detection for schedule events.

Two events conflict when they share a class or a teacher and at least one
occurrence of each overlaps in time (half-open intervals).
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional

from .errors import ConflictError, MalformedRuleError, StoredRuleError
from .expander import Expansion, normalized_span, shift
from .recurrence import parse_optional

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = timedelta(days=365)


class ConflictField(enum.Enum):
    CLASS = "class"
    TEACHER = "teacher"


@dataclass(frozen=True)
class ConflictResult:
    with_event_id: object = None
    conflicting_field: Optional[ConflictField] = None

    @property
    def is_conflict(self):
        return self.conflicting_field is not None

    def __bool__(self):
        return self.is_conflict

    def to_dict(self):
        return {
            "conflict": self.is_conflict,
            "with_event_id": self.with_event_id,
            "field": self.conflicting_field.value if self.conflicting_field else None,
        }


NO_CONFLICT = ConflictResult()

# Attribute compared for each field, in reporting order (CLASS before TEACHER)
_FIELDS = (
    (ConflictField.CLASS, "class_id_fk"),
    (ConflictField.TEACHER, "teacher_id_fk"),
)


def _end_bound(event):
    """Latest end any occurrence can have, known without expanding.

    None for COUNT and never-ending rules.
    """
    rule = parse_optional(getattr(event, "rrule", None))
    first, last = normalized_span(event)
    if rule is None:
        return last
    if rule.until is not None:
        past_until = shift(datetime.combine(rule.until, time.min), timedelta(days=1))
        return shift(past_until, last - first)
    return None


def comparison_horizon(a, b, lookahead=DEFAULT_LOOKAHEAD):
    """Window in which occurrences of ``a`` and ``b`` are compared.

    Starts at the later anchor and never runs more than ``lookahead`` past
    it, even when both series end. Symmetric in a/b.
    """
    start = max(normalized_span(a)[0], normalized_span(b)[0])
    ends = [shift(start, lookahead)]
    ends.extend(end for end in (_end_bound(a), _end_bound(b)) if end is not None)
    return start, min(ends)


def _occurrences_within(event, start, end):
    first, last = normalized_span(event)
    for occ in Expansion(event, shift(start, first - last), end):
        if occ.end > start:
            yield occ


def _any_overlap(left, right):
    # Both streams ascend by start and, with a fixed duration, by end
    x, y = next(left, None), next(right, None)
    while x is not None and y is not None:
        if x.overlaps(y):
            return True
        if x.end <= y.end:
            x = next(left, None)
        else:
            y = next(right, None)
    return False


def events_overlap(a, b, lookahead=DEFAULT_LOOKAHEAD):
    """True when some occurrence of ``a`` overlaps some occurrence of ``b``."""
    start, end = comparison_horizon(a, b, lookahead)
    if end <= start:
        return False
    return _any_overlap(_occurrences_within(a, start, end), _occurrences_within(b, start, end))


def _shares(candidate, other, attr):
    value = getattr(candidate, attr, None)
    return value is not None and value == getattr(other, attr, None)


def _overlap_with_stored(candidate, other, lookahead):
    try:
        parse_optional(getattr(other, "rrule", None))
    except MalformedRuleError as e:
        logger.warning("Stored schedule %s has an unreadable rule: %r", other.event_id, other.rrule)
        raise StoredRuleError(other.event_id, e) from e
    return events_overlap(candidate, other, lookahead)


def check(candidate, existing, lookahead=DEFAULT_LOOKAHEAD):
    """Decide whether ``candidate`` may be saved next to ``existing``.

    ``existing`` should be every event of the candidate's school; the
    candidate's own row (same ``event_id``) is ignored so edits do not
    collide with themselves. Returns ``NO_CONFLICT`` or the first conflict,
    reporting a class clash ahead of a teacher clash.

    A stored event whose rule no longer parses raises ``StoredRuleError``
    naming that event; a bad rule on the candidate itself stays a
    ``MalformedRuleError``.
    """
    parse_optional(getattr(candidate, "rrule", None))
    candidate_id = getattr(candidate, "event_id", None)
    school_id = getattr(candidate, "school_id_fk", None)
    others = []
    for other in existing:
        if candidate_id is not None and other.event_id == candidate_id:
            continue
        if school_id is not None and getattr(other, "school_id_fk", school_id) != school_id:
            continue
        others.append(other)

    overlap_memo = {}
    for field, attr in _FIELDS:
        for other in others:
            if not _shares(candidate, other, attr):
                continue
            key = id(other)
            if key not in overlap_memo:
                overlap_memo[key] = _overlap_with_stored(candidate, other, lookahead)
            if overlap_memo[key]:
                logger.debug("Event %s clashes with %s on %s", candidate_id, other.event_id, field.value)
                return ConflictResult(other.event_id, field)
    return NO_CONFLICT


def ensure_no_conflict(candidate, existing, lookahead=DEFAULT_LOOKAHEAD):
    result = check(candidate, existing, lookahead)
    if result:
        raise ConflictError(result)
    return result
