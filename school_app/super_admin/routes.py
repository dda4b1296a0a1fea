from flask import request, current_app
from flask_login import login_required, current_user
from sqlalchemy import select, func

from . import super_admin_bp
from .. import db, limiter, cache, csrf_required
from ..api_utils import api_success, api_error
from ..decorators import role_required
from ..models import (
    ENROLLMENT_STATUSES, School, SchoolEnrollment, SchoolClass, Subject, Student, User, ScheduleEvent, utc_now,
)

WRITE_LIMIT = "30 per minute"


def _payload():
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


# ==========================================
# SCHOOLS (TENANTS)
# ==========================================

@super_admin_bp.route("/api/schools", methods=["GET"])
@login_required
@role_required("super_admin")
def list_schools():
    schools = db.session.execute(
        select(School).order_by(School.created_at.desc(), School.school_id.desc())
    ).scalars().all()
    return api_success([s.to_dict() for s in schools])


@super_admin_bp.route("/api/schools", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("super_admin")
@csrf_required
def create_school():
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        return api_error("validation_error", "School name is required", 400, {"field": "name"})
    code = (data.get("code") or "").strip() or None
    if code and db.session.execute(select(School.school_id).filter_by(school_code=code)).first():
        return api_error("duplicate", "A school with this code already exists.", 409)
    school = School(school_name=name, school_code=code, contact_email=(data.get("contact_email") or None))
    db.session.add(school)
    db.session.commit()
    current_app.logger.info("School %s created by %s", school.school_id, current_user.user_id)
    return api_success(school.to_dict(), status=201)


@super_admin_bp.route("/api/schools/<int:school_id>", methods=["PUT"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("super_admin")
@csrf_required
def update_school(school_id):
    school = db.session.get(School, school_id)
    if not school:
        return api_error("not_found", "School not found", 404)
    data = _payload()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return api_error("validation_error", "School name is required", 400, {"field": "name"})
        school.school_name = name
    if "is_active" in data:
        # Kill switch for the whole tenant
        school.is_active = bool(data.get("is_active"))
    db.session.commit()
    cache.clear()
    current_app.logger.info("School %s updated by %s", school_id, current_user.user_id)
    return api_success(school.to_dict())


def _in_use(school_id):
    for model in (User, SchoolClass, Subject, Student, ScheduleEvent):
        found = db.session.execute(
            select(func.count()).select_from(model).where(model.school_id_fk == school_id)
        ).scalar_one()
        if found:
            return True
    return False


@super_admin_bp.route("/api/schools/<int:school_id>", methods=["DELETE"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("super_admin")
@csrf_required
def delete_school(school_id):
    school = db.session.get(School, school_id)
    if not school:
        return api_error("not_found", "School not found", 404)
    if _in_use(school_id):
        return api_error("in_use", "School still has users or data; deactivate it instead.", 409)
    db.session.delete(school)
    db.session.commit()
    current_app.logger.info("School %s deleted by %s", school_id, current_user.user_id)
    return api_success({"message": "School deleted"})


@super_admin_bp.route("/api/schools/assign-admin", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("super_admin")
@csrf_required
def assign_admin():
    data = _payload()
    admin_email = (data.get("admin_email") or "").strip()
    try:
        school_id = int(data.get("school_id"))
    except (TypeError, ValueError):
        return api_error("validation_error", "school_id is required", 400, {"field": "school_id"})
    if not admin_email:
        return api_error("validation_error", "admin_email is required", 400, {"field": "admin_email"})

    school = db.session.get(School, school_id)
    if not school:
        return api_error("not_found", "School not found", 404)
    user = db.session.execute(
        select(User).where(func.lower(User.email) == admin_email.lower())
    ).scalars().first()
    if not user:
        return api_error("not_found", "User with this email not found", 404)
    if user.role == "super_admin":
        return api_error("validation_error", "A super admin cannot be assigned to a school.", 400,
                         {"field": "admin_email"})

    user.school_id_fk = school.school_id
    user.role = "school_admin"
    db.session.commit()
    current_app.logger.info("User %s assigned as admin of school %s", user.user_id, school.school_id)
    return api_success({"message": "School admin assigned successfully", "user_id": user.user_id})


# ==========================================
# ENROLLMENT APPLICATIONS
# ==========================================

@super_admin_bp.route("/api/enrollments", methods=["GET"])
@login_required
@role_required("super_admin")
def list_enrollments():
    stmt = select(SchoolEnrollment)
    status = (request.args.get("status") or "").strip().lower()
    if status:
        if status not in ENROLLMENT_STATUSES:
            return api_error("validation_error", "Invalid status", 400, {"field": "status"})
        stmt = stmt.filter_by(status=status)
    enrollments = db.session.execute(
        stmt.order_by(SchoolEnrollment.created_at.desc(), SchoolEnrollment.enrollment_id.desc())
    ).scalars().all()
    return api_success([e.to_dict() for e in enrollments])


@super_admin_bp.route("/api/enrollments/<int:enrollment_id>", methods=["PUT"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("super_admin")
@csrf_required
def review_enrollment(enrollment_id):
    """Record the review decision. Approval does not create the school or its admin account."""
    status = (_payload().get("status") or "").strip().lower()
    if status not in ENROLLMENT_STATUSES:
        return api_error("validation_error", "Invalid status", 400, {"field": "status"})
    enrollment = db.session.get(SchoolEnrollment, enrollment_id)
    if not enrollment:
        return api_error("not_found", "Enrollment not found", 404)
    enrollment.status = status
    enrollment.approved_by_fk = current_user.user_id
    enrollment.approved_at = utc_now()
    db.session.commit()
    current_app.logger.info("Enrollment %s marked %s by %s", enrollment_id, status, current_user.user_id)
    return api_success(enrollment.to_dict())
