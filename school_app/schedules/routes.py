from datetime import date, datetime, timedelta
from flask import render_template, request, current_app
from flask_login import login_required, current_user

from . import schedules_bp, services
from .. import limiter, csrf_required
from ..api_utils import api_success, api_error
from ..decorators import role_required, school_required
from .errors import (
    ValidationError, MalformedRuleError, ConflictError, NotFoundError, ForbiddenError, StoredRuleError,
)
from .projection import project, feed, calendar_window, visible_days, FilterDimension
from .expander import series_bounds, shift
from .recurrence import Weekday, describe, parse_optional

READ_ROLES = ("school_admin", "teacher")
WRITE_LIMIT = "60 per minute"


def _schedule_error(e):
    if isinstance(e, MalformedRuleError):
        return api_error("malformed_rule", e.message, 400, {"field": e.field})
    if isinstance(e, ValidationError):
        return api_error("validation_error", e.message, 400, {"field": e.field})
    if isinstance(e, ConflictError):
        current_app.logger.warning(
            "Schedule conflict for school %s with event %s (%s)",
            current_user.school_id_fk, e.with_event_id, e.conflicting_field.value,
        )
        return api_error("schedule_conflict", str(e), 409, {
            "with_event_id": e.with_event_id,
            "field": e.conflicting_field.value,
        })
    if isinstance(e, StoredRuleError):
        return api_error("stored_rule_invalid", str(e), 409, {"event_id": e.event_id})
    if isinstance(e, NotFoundError):
        return api_error("not_found", str(e), 404)
    if isinstance(e, ForbiddenError):
        return api_error("forbidden", str(e), 403)
    raise e


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object.")
    return data


def _parse_when(value, field):
    """Date (midnight) or datetime from a query string."""
    raw = (value or "").strip()
    if not raw:
        raise ValidationError(f"{field} is required.", field)
    try:
        if len(raw) == 10:
            return datetime.combine(date.fromisoformat(raw), datetime.min.time())
        return services.parse_datetime(raw, field)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date.", field)


def _filter_from_args():
    try:
        dimension = FilterDimension.from_value(request.args.get("by"))
    except ValueError as e:
        raise ValidationError(str(e), "by")
    return dimension, request.args.get("id", type=int)


# ==========================================
# CALENDAR PAGE
# ==========================================

def _sorted_options(names):
    return sorted(names.items(), key=lambda kv: kv[1])


@schedules_bp.route("/")
@login_required
@role_required(*READ_ROLES)
@school_required
def calendar_page():
    school_id = current_user.school_id_fk
    view = request.args.get("view", "week")
    if view not in ("day", "week"):
        view = "week"
    try:
        day = date.fromisoformat(request.args.get("date") or "")
    except ValueError:
        day = date.today()
    by = (request.args.get("by") or "class").strip().lower()
    if by not in ("class", "teacher"):
        by = "class"
    selected_id = request.args.get("id", type=int)
    week_length = current_app.config.get("SCHEDULE_WEEK_LENGTH", 5)

    start, end = calendar_window(view, day, week_length)
    labels = services.load_labels(school_id)
    unrenderable = []
    occurrences = project(
        services.list_events_for_school(school_id), start, end,
        by, selected_id, labels, unrenderable,
    )

    # Occurrences touching each visible day (multi-day all-day events show on every day)
    days = []
    for d in visible_days(view, day, week_length):
        day_start = datetime.combine(d, datetime.min.time())
        day_end = day_start + timedelta(days=1)
        days.append({
            "date": d,
            "events": [v for v in occurrences if v.start < day_end and v.end > day_start],
        })

    step = timedelta(days=1 if view == "day" else 7)
    options = labels.classes if by == "class" else labels.teachers
    return render_template(
        "schedules/calendar.html",
        view=view,
        day=day,
        days=days,
        by=by,
        selected_id=selected_id,
        options=_sorted_options(options),
        prev_date=(day - step).isoformat(),
        next_date=(day + step).isoformat(),
        unrenderable=unrenderable,
        can_edit=(current_user.role == "school_admin"),
        form_classes=_sorted_options(labels.classes),
        form_subjects=_sorted_options(labels.subjects),
        form_teachers=_sorted_options(labels.teachers),
        weekdays=[(wd.name, wd.label) for wd in Weekday],
    )


# ==========================================
# JSON API
# ==========================================

@schedules_bp.route("/api/events", methods=["GET"])
@login_required
@role_required(*READ_ROLES)
@school_required
def list_events():
    school_id = current_user.school_id_fk
    unrenderable = []
    records = feed(services.list_events_for_school(school_id), services.load_labels(school_id), unrenderable)
    return api_success(records, meta={"unrenderable": [u.to_dict() for u in unrenderable]})


@schedules_bp.route("/api/events/<int:event_id>", methods=["GET"])
@login_required
@role_required(*READ_ROLES)
@school_required
def event_detail(event_id):
    school_id = current_user.school_id_fk
    try:
        event = services.get_event(school_id, event_id)
    except (NotFoundError, ForbiddenError) as e:
        return _schedule_error(e)
    labels = services.load_labels(school_id)
    data = event.to_dict()
    data["class_name"] = labels.class_name(event.class_id_fk)
    data["subject_name"] = labels.subject_name(event.subject_id_fk)
    data["teacher_name"] = labels.teacher_name(event.teacher_id_fk)
    try:
        rule = parse_optional(event.rrule)
        data["recurrence"] = describe(rule, event.start_at) if rule else "does not repeat"
        # End of the last occurrence, when the series finishes within the look-ahead
        _, last_end = series_bounds(event, shift(event.start_at, services.conflict_lookahead()))
        data["series_end"] = last_end.isoformat() if last_end else None
    except MalformedRuleError:
        current_app.logger.warning("Schedule %s has an unreadable rule: %r", event_id, event.rrule)
        data["recurrence"] = None
        data["series_end"] = None
        data["recurrence_error"] = "This event's schedule could not be displayed."
    return api_success(data)


@schedules_bp.route("/api/events", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def create_event():
    try:
        event = services.create_event(current_user.school_id_fk, _json_body())
    except (ValidationError, ConflictError, StoredRuleError, NotFoundError, ForbiddenError) as e:
        return _schedule_error(e)
    return api_success(event.to_dict(), status=201)


@schedules_bp.route("/api/events/<int:event_id>", methods=["PUT"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def update_event(event_id):
    try:
        event = services.update_event(current_user.school_id_fk, event_id, _json_body())
    except (ValidationError, ConflictError, StoredRuleError, NotFoundError, ForbiddenError) as e:
        return _schedule_error(e)
    return api_success(event.to_dict())


@schedules_bp.route("/api/events/<int:event_id>", methods=["DELETE"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def delete_event(event_id):
    try:
        services.delete_event(current_user.school_id_fk, event_id)
    except (NotFoundError, ForbiddenError) as e:
        return _schedule_error(e)
    return api_success({"message": "Schedule deleted successfully"})


@schedules_bp.route("/api/check", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def check_event():
    try:
        data = _json_body()
        result = services.check_candidate(current_user.school_id_fk, data, data.get("id"))
    except (ValidationError, StoredRuleError, NotFoundError, ForbiddenError) as e:
        return _schedule_error(e)
    return api_success(result.to_dict())


@schedules_bp.route("/api/calendar", methods=["GET"])
@login_required
@role_required(*READ_ROLES)
@school_required
def calendar_events():
    school_id = current_user.school_id_fk
    try:
        start = _parse_when(request.args.get("start"), "start")
        end = _parse_when(request.args.get("end"), "end")
        if end <= start:
            raise ValidationError("end must be after start.", "end")
        max_days = current_app.config.get("SCHEDULE_MAX_WINDOW_DAYS", 62)
        if end - start > timedelta(days=max_days):
            raise ValidationError(f"Calendar window is limited to {max_days} days.", "end")
        dimension, value = _filter_from_args()
    except ValidationError as e:
        return _schedule_error(e)

    unrenderable = []
    occurrences = project(
        services.list_events_for_school(school_id), start, end,
        dimension, value, services.load_labels(school_id), unrenderable,
    )
    return api_success(
        [v.to_dict() for v in occurrences],
        meta={
            "start": start.isoformat(),
            "end": end.isoformat(),
            "unrenderable": [u.to_dict() for u in unrenderable],
        },
    )
