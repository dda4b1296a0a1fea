from functools import wraps
from flask import flash, redirect, url_for, current_app, request
from flask_login import current_user

from . import db
from .api_utils import api_error
from .models import School


def _is_api_request():
    return "/api/" in (request.path or "")


def role_required(*roles):
    """
    Decorator to ensure the current user has one of the allowed roles.
    Must be placed *after* @login_required.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()

            user_role = (getattr(current_user, "role", "") or "").strip().lower()
            allowed = {r.strip().lower() for r in roles}

            if user_role not in allowed:
                if _is_api_request():
                    return api_error("forbidden", "You do not have permission to access this resource.", 403)
                flash("You do not have permission to access this resource.", "danger")
                return redirect(url_for("main.dashboard"))

            return func(*args, **kwargs)
        return wrapper
    return decorator


def school_required(func):
    """Reject users that are not attached to an active school (tenant)."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        school_id = getattr(current_user, "school_id_fk", None)
        if not school_id:
            if _is_api_request():
                return api_error("forbidden", "No school is associated with this account.", 403)
            flash("No school is associated with this account.", "warning")
            return redirect(url_for("main.dashboard"))
        school = db.session.get(School, school_id)
        if school is None or not school.is_active:
            if _is_api_request():
                return api_error("school_suspended", "This school has been suspended.", 403)
            flash("This school has been suspended.", "warning")
            return redirect(url_for("main.dashboard"))
        return func(*args, **kwargs)
    return wrapper
