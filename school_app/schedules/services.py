from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .. import db, cache
from ..models import School, SchoolClass, Subject, User, ScheduleEvent
from .conflicts import check, ensure_no_conflict
from .errors import ScheduleError, ValidationError, NotFoundError, ForbiddenError
from .projection import ScheduleLabels
from .recurrence import parse_optional, serialize

# Payload keys accepted by create/update/check
EVENT_FIELDS = ("class_id", "subject_id", "teacher_id", "start", "end", "is_all_day", "rrule", "title")


def conflict_lookahead():
    return timedelta(days=int(current_app.config.get("SCHEDULE_CONFLICT_LOOKAHEAD_DAYS", 365)))


def parse_datetime(value, field):
    """ISO-8601 text (or a datetime) to a naive datetime; aware values become naive UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            raise ValidationError(f"{field} is required.", field)
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 date and time.", field)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _parse_id(value, field):
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{field} is required.", field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an id.", field)


def _parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _event_values(event):
    return {
        "class_id": event.class_id_fk,
        "subject_id": event.subject_id_fk,
        "teacher_id": event.teacher_id_fk,
        "start": event.start_at,
        "end": event.end_at,
        "is_all_day": event.is_all_day,
        "rrule": event.rrule,
        "title": event.title,
    }


def clean_event_data(school_id, data, base=None):
    """
    Validate a create payload, or a patch merged over ``base``.
    Returns column values for ScheduleEvent.
    Raises ValidationError (MalformedRuleError for the rule) before any
    conflict check is attempted.
    """
    merged = _event_values(base) if base is not None else {}
    merged.update({k: v for k, v in (data or {}).items() if k in EVENT_FIELDS})

    class_id = _parse_id(merged.get("class_id"), "class_id")
    subject_id = _parse_id(merged.get("subject_id"), "subject_id")
    teacher_id = _parse_id(merged.get("teacher_id"), "teacher_id")
    start = parse_datetime(merged.get("start"), "start")
    end = parse_datetime(merged.get("end"), "end")
    if end <= start:
        raise ValidationError("End must be after start.", "end")

    # Class, subject and teacher must all belong to the event's school
    school_class = db.session.get(SchoolClass, class_id)
    if not school_class or school_class.school_id_fk != school_id:
        raise ValidationError("Invalid class for this school.", "class_id")
    subject = db.session.get(Subject, subject_id)
    if not subject or subject.school_id_fk != school_id:
        raise ValidationError("Invalid subject for this school.", "subject_id")
    teacher = db.session.get(User, teacher_id)
    if not teacher or teacher.school_id_fk != school_id or (teacher.role or "").lower() != "teacher":
        raise ValidationError("Invalid teacher for this school.", "teacher_id")

    rule = parse_optional(merged.get("rrule"))
    title = (merged.get("title") or "").strip() or None

    return {
        "class_id_fk": class_id,
        "subject_id_fk": subject_id,
        "teacher_id_fk": teacher_id,
        "start_at": start,
        "end_at": end,
        "is_all_day": _parse_bool(merged.get("is_all_day")),
        "rrule": serialize(rule) if rule is not None else None,
        "title": title,
    }


def list_events_for_school(school_id):
    return db.session.execute(
        select(ScheduleEvent)
        .filter_by(school_id_fk=school_id)
        .order_by(ScheduleEvent.start_at, ScheduleEvent.event_id)
    ).scalars().all()


def get_event(school_id, event_id):
    event = db.session.get(ScheduleEvent, event_id)
    if not event:
        raise NotFoundError("Schedule not found.")
    if event.school_id_fk != school_id:
        raise ForbiddenError("You do not have permission to change this schedule.")
    return event


def _lock_school(school_id):
    # Row lock serialises check-then-write per school on databases that support it
    school = db.session.execute(
        select(School).filter_by(school_id=school_id).with_for_update()
    ).scalars().first()
    if not school:
        raise NotFoundError("School not found.")
    return school


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to save schedule changes")
        raise


def create_event(school_id, data):
    """Validate, conflict-check and insert a schedule event in one transaction."""
    try:
        _lock_school(school_id)
        values = clean_event_data(school_id, data)
        event = ScheduleEvent(school_id_fk=school_id, **values)
        ensure_no_conflict(event, list_events_for_school(school_id), conflict_lookahead())
    except ScheduleError:
        db.session.rollback()
        raise
    db.session.add(event)
    _commit()
    current_app.logger.info("Schedule %s created for school %s", event.event_id, school_id)
    return event


def update_event(school_id, event_id, patch):
    """Apply ``patch`` to the base event; the whole series changes, never one occurrence."""
    try:
        _lock_school(school_id)
        event = get_event(school_id, event_id)
        values = clean_event_data(school_id, patch, base=event)
        candidate = ScheduleEvent(event_id=event.event_id, school_id_fk=school_id, **values)
        ensure_no_conflict(candidate, list_events_for_school(school_id), conflict_lookahead())
    except ScheduleError:
        db.session.rollback()
        raise
    for key, value in values.items():
        setattr(event, key, value)
    _commit()
    current_app.logger.info("Schedule %s updated for school %s", event.event_id, school_id)
    return event


def delete_event(school_id, event_id):
    event = get_event(school_id, event_id)
    db.session.delete(event)
    _commit()
    current_app.logger.info("Schedule %s deleted for school %s", event_id, school_id)
    return True


def check_candidate(school_id, data, event_id=None):
    """Dry run of the write path: validation plus conflict check, nothing saved."""
    base = None
    if event_id is not None:
        base = get_event(school_id, _parse_id(event_id, "id"))
    values = clean_event_data(school_id, data, base=base)
    candidate = ScheduleEvent(
        event_id=base.event_id if base is not None else None,
        school_id_fk=school_id,
        **values
    )
    return check(candidate, list_events_for_school(school_id), conflict_lookahead())


# ==========================================
# LABELS
# ==========================================

@cache.memoize(timeout=120)
def _label_maps(school_id):
    classes = db.session.execute(select(SchoolClass).filter_by(school_id_fk=school_id)).scalars().all()
    subjects = db.session.execute(select(Subject).filter_by(school_id_fk=school_id)).scalars().all()
    teachers = db.session.execute(
        select(User).filter_by(school_id_fk=school_id, role="teacher")
    ).scalars().all()
    return {
        "classes": {c.class_id: c.class_name for c in classes},
        "subjects": {s.subject_id: s.subject_name for s in subjects},
        "teachers": {t.user_id: t.full_name for t in teachers},
    }


def load_labels(school_id):
    maps = _label_maps(school_id)
    return ScheduleLabels(classes=maps["classes"], teachers=maps["teachers"], subjects=maps["subjects"])


def invalidate_labels(school_id):
    cache.delete_memoized(_label_maps, school_id)
