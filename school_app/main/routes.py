import re
from urllib.parse import urlsplit

from flask import Blueprint, render_template, request, redirect, url_for, flash, session, current_app
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import select, func
from werkzeug.security import check_password_hash

from .. import db, limiter, cache, csrf_required
from ..models import User, School, SchoolClass, Subject, ScheduleEvent, SchoolEnrollment

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index():
    if current_user.is_authenticated:
        return redirect(url_for("main.dashboard"))
    return redirect(url_for("main.login"))


def _safe_next(target):
    """Only same-site relative paths are honoured after login."""
    if not target:
        return None
    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return None
    if not target.startswith("/") or target.startswith("//") or "\\" in target:
        return None
    return target


@main_bp.route("/login", methods=["GET", "POST"])
@limiter.limit("5 per minute", methods=["POST"])
def login():
    if request.method == "POST":
        username = (request.form.get("username") or "").strip()
        password = request.form.get("password") or ""
        if not username or not password:
            flash("Username and password are required.", "danger")
            return render_template("login.html"), 400
        user = db.session.execute(select(User).filter_by(username=username)).scalars().first()
        if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
            flash("Invalid credentials.", "danger")
            return render_template("login.html"), 401
        if not user.is_active:
            flash("This account has been deactivated.", "danger")
            return render_template("login.html"), 403
        login_user(user)
        flash("Logged in successfully.", "success")
        return redirect(_safe_next(request.args.get("next")) or url_for("main.dashboard"))
    return render_template("login.html")


@main_bp.route("/logout")
def logout():
    if current_user.is_authenticated:
        logout_user()
        flash("Logged out.", "info")
    return redirect(url_for("main.login"))


def _count(model, school_id):
    return db.session.execute(
        select(func.count()).select_from(model).where(model.school_id_fk == school_id)
    ).scalar_one()


@main_bp.route("/dashboard")
@login_required
@cache.cached(timeout=60, key_prefix=lambda: f"dashboard_{getattr(current_user, 'user_id', 'anon')}", unless=lambda: session.get("_flashes"))
def dashboard():
    school = None
    stats = {}
    school_id = current_user.school_id_fk
    if school_id:
        school = db.session.get(School, school_id)
        stats = {
            "classes": _count(SchoolClass, school_id),
            "subjects": _count(Subject, school_id),
            "teachers": db.session.execute(
                select(func.count()).select_from(User).where(User.school_id_fk == school_id, User.role == "teacher")
            ).scalar_one(),
            "schedules": _count(ScheduleEvent, school_id),
        }
    return render_template("dashboard.html", school=school, stats=stats)


# ==========================================
# SCHOOL ENROLLMENT (PUBLIC)
# ==========================================

# (field, label, minimum length); contact_phone is optional
ENROLLMENT_FIELDS = (
    ("school_name", "School name", 2),
    ("contact_name", "Contact name", 2),
    ("contact_email", "Contact email", 3),
    ("address", "Address", 5),
    ("city", "City", 2),
    ("state", "State", 2),
    ("zip_code", "Zip code", 5),
    ("country", "Country", 2),
)
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clean_enrollment(form):
    """Validated enrollment values and a dict of per-field errors."""
    values, errors = {}, {}
    for name, label, min_len in ENROLLMENT_FIELDS:
        value = (form.get(name) or "").strip()
        if len(value) < min_len:
            errors[name] = f"{label} is required."
        values[name] = value
    if "contact_email" not in errors and not EMAIL_RE.match(values["contact_email"]):
        errors["contact_email"] = "Invalid email address."
    values["contact_phone"] = (form.get("contact_phone") or "").strip() or None
    try:
        values["estimated_students"] = int(form.get("estimated_students") or "")
        if values["estimated_students"] <= 0:
            raise ValueError
    except ValueError:
        errors["estimated_students"] = "Must be a positive number."
    return values, errors


@main_bp.route("/enroll", methods=["GET", "POST"])
@limiter.limit("5 per minute", methods=["POST"])
@csrf_required
def enroll():
    if request.method == "POST":
        values, errors = clean_enrollment(request.form)
        if errors:
            flash("Please correct the highlighted fields.", "danger")
            return render_template("enroll.html", values=request.form, errors=errors), 400
        enrollment = SchoolEnrollment(**values)
        db.session.add(enrollment)
        db.session.commit()
        current_app.logger.info("Enrollment application %s received", enrollment.enrollment_id)
        flash("Application submitted! We will review it and get back to you soon.", "success")
        return redirect(url_for("main.enroll"))
    return render_template("enroll.html", values={}, errors={})
