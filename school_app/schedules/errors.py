"""Errors raised by the schedule engine and its persistence layer."""


class ScheduleError(Exception):
    """Base class for scheduling failures."""


class ValidationError(ScheduleError):
    def __init__(self, message, field=None):
        super().__init__(message)
        self.message = message
        self.field = field


class MalformedRuleError(ValidationError):
    """Recurrence text that cannot be parsed or breaks a structural rule."""

    def __init__(self, message, text=None):
        super().__init__(message, field="rrule")
        self.text = text


class ConflictError(ScheduleError):
    def __init__(self, result):
        self.result = result
        self.with_event_id = result.with_event_id
        self.conflicting_field = result.conflicting_field
        label = result.conflicting_field.value if result.conflicting_field else "event"
        super().__init__(f"A schedule conflict exists for this {label} at the specified time.")


class NotFoundError(ScheduleError):
    pass


class ForbiddenError(ScheduleError):
    pass


class StoredRuleError(ScheduleError):
    """A saved event's rule no longer parses, so nothing can be compared with it."""

    def __init__(self, event_id, cause=None):
        self.event_id = event_id
        self.cause = cause
        super().__init__(f"Schedule {event_id} has an unreadable recurrence rule and must be fixed first.")
