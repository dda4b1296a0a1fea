"""
Calendar projection: expanded occurrences shaped for the day/week views and
the series feed handed to client-side calendar widgets.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from .errors import MalformedRuleError
from .expander import expand, normalized_span
from .recurrence import parse_optional, serialize

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "N/A"


class FilterDimension(enum.Enum):
    CLASS = "class"
    TEACHER = "teacher"

    @classmethod
    def from_value(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown filter dimension: {value!r}")


@dataclass
class ScheduleLabels:
    """Display names keyed by id, for one school."""
    classes: dict = field(default_factory=dict)
    teachers: dict = field(default_factory=dict)
    subjects: dict = field(default_factory=dict)

    def class_name(self, class_id):
        return self.classes.get(class_id, UNKNOWN_LABEL)

    def teacher_name(self, teacher_id):
        return self.teachers.get(teacher_id, UNKNOWN_LABEL)

    def subject_name(self, subject_id):
        return self.subjects.get(subject_id, UNKNOWN_LABEL)


@dataclass(frozen=True)
class ViewEvent:
    event_id: object
    title: str
    start: datetime
    end: datetime
    all_day: bool
    class_id: object
    subject_id: object
    teacher_id: object
    subject_name: str
    counterpart_name: str
    rrule: str = None

    def to_dict(self):
        # event_id + this occurrence's start/end is what the edit flow needs;
        # edits always apply to the base event, never to one occurrence.
        return {
            "event_id": self.event_id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "all_day": self.all_day,
            "class_id": self.class_id,
            "subject_id": self.subject_id,
            "teacher_id": self.teacher_id,
            "subject_name": self.subject_name,
            "counterpart_name": self.counterpart_name,
            "rrule": self.rrule,
        }


@dataclass(frozen=True)
class UnrenderableEvent:
    event_id: object
    message: str

    def to_dict(self):
        return {"event_id": self.event_id, "message": self.message}


def _matches(event, dimension, value):
    if dimension is None or value is None:
        return True
    if dimension is FilterDimension.CLASS:
        return event.class_id_fk == value
    return event.teacher_id_fk == value


def _counterpart(event, dimension, labels):
    if dimension is FilterDimension.TEACHER:
        return labels.class_name(event.class_id_fk)
    return labels.teacher_name(event.teacher_id_fk)


def project(events, window_start, window_end, dimension=None, value=None, labels=None, errors=None):
    """Occurrences of the selected class's or teacher's events inside the window.

    ``dimension``/``value`` select by class or teacher; leave either unset to
    show everything. Output is ordered by start, then event id. An event
    whose rule cannot be parsed is reported in ``errors`` (when a list is
    given) and left out; otherwise the ``MalformedRuleError`` propagates.
    """
    dimension = FilterDimension.from_value(dimension)
    labels = labels or ScheduleLabels()
    view_events = []
    for event in events:
        if not _matches(event, dimension, value):
            continue
        try:
            occurrences = list(expand(event, window_start, window_end))
        except MalformedRuleError as e:
            if errors is None:
                raise
            logger.warning("Schedule %s could not be displayed: %s", event.event_id, e)
            errors.append(UnrenderableEvent(event.event_id, "This event's schedule could not be displayed."))
            continue
        subject_name = labels.subject_name(event.subject_id_fk)
        counterpart = _counterpart(event, dimension, labels)
        for occ in occurrences:
            view_events.append(ViewEvent(
                event_id=event.event_id,
                title=event.title or subject_name,
                start=occ.start,
                end=occ.end,
                all_day=bool(event.is_all_day),
                class_id=event.class_id_fk,
                subject_id=event.subject_id_fk,
                teacher_id=event.teacher_id_fk,
                subject_name=subject_name,
                counterpart_name=counterpart,
                rrule=event.rrule,
            ))
    view_events.sort(key=lambda v: (v.start, _id_sort_key(v.event_id)))
    return view_events


def _id_sort_key(event_id):
    # None sorts first; mixed id types still order deterministically
    return (event_id is not None, str(type(event_id).__name__), event_id if event_id is not None else 0)


def calendar_window(view, day, week_length=5):
    """``(start, end)`` datetimes for a day view or a Monday-based week view."""
    if isinstance(day, datetime):
        day = day.date()
    if view == "day":
        start = day
        length = 1
    elif view == "week":
        start = day - timedelta(days=day.weekday())
        length = week_length
    else:
        raise ValueError(f"Unknown calendar view: {view!r}")
    start_dt = datetime.combine(start, time.min)
    return start_dt, start_dt + timedelta(days=length)


def visible_days(view, day, week_length=5):
    start, end = calendar_window(view, day, week_length)
    return [start.date() + timedelta(days=i) for i in range((end - start).days)]


def feed(events, labels=None, errors=None):
    """Series records for a calendar widget: one record per event, not per occurrence.

    ``rrule`` is rewritten in canonical form so the widget and this engine
    read the same rule.
    """
    labels = labels or ScheduleLabels()
    records = []
    for event in events:
        try:
            rule = parse_optional(event.rrule)
            start, end = normalized_span(event)
        except MalformedRuleError as e:
            if errors is None:
                raise
            logger.warning("Schedule %s left out of feed: %s", event.event_id, e)
            errors.append(UnrenderableEvent(event.event_id, "This event's schedule could not be displayed."))
            continue
        records.append({
            "id": event.event_id,
            "title": event.title or labels.subject_name(event.subject_id_fk),
            "start": start.isoformat(),
            "end": end.isoformat(),
            "allDay": bool(event.is_all_day),
            "rrule": serialize(rule) if rule is not None else None,
        })
    return records
