from flask import request, current_app
from flask_login import login_required, current_user
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from . import academics_bp
from .. import db, limiter, csrf_required
from ..api_utils import api_success, api_error
from ..decorators import role_required, school_required
from ..models import SchoolClass, Subject, User, ScheduleEvent, Student
from ..schedules.services import invalidate_labels

WRITE_LIMIT = "60 per minute"


def _payload():
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _in_school(model, object_id):
    obj = db.session.get(model, object_id)
    if not obj or obj.school_id_fk != current_user.school_id_fk:
        return None
    return obj


def _is_scheduled(column, object_id):
    return db.session.execute(
        select(ScheduleEvent.event_id).where(column == object_id).limit(1)
    ).first() is not None


# ==========================================
# CLASSES
# ==========================================

@academics_bp.route("/api/classes", methods=["GET"])
@login_required
@role_required("school_admin", "teacher")
@school_required
def list_classes():
    classes = db.session.execute(
        select(SchoolClass)
        .filter_by(school_id_fk=current_user.school_id_fk)
        .order_by(SchoolClass.class_name)
    ).scalars().all()
    return api_success([c.to_dict() for c in classes])


@academics_bp.route("/api/classes", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def create_class():
    name = (_payload().get("name") or "").strip()
    if not name:
        return api_error("validation_error", "Class name is required", 400, {"field": "name"})
    new_class = SchoolClass(class_name=name, school_id_fk=current_user.school_id_fk)
    db.session.add(new_class)
    db.session.commit()
    invalidate_labels(current_user.school_id_fk)
    current_app.logger.info("Class %s created for school %s", new_class.class_id, current_user.school_id_fk)
    return api_success(new_class.to_dict(), status=201)


@academics_bp.route("/api/classes/<int:class_id>", methods=["PUT"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def update_class(class_id):
    school_class = _in_school(SchoolClass, class_id)
    if not school_class:
        return api_error("not_found", "Class not found", 404)
    data = _payload()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return api_error("validation_error", "Class name is required", 400, {"field": "name"})
        school_class.class_name = name
    if "is_active" in data:
        school_class.is_active = bool(data.get("is_active"))
    db.session.commit()
    invalidate_labels(current_user.school_id_fk)
    return api_success(school_class.to_dict())


@academics_bp.route("/api/classes/<int:class_id>", methods=["DELETE"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def delete_class(class_id):
    school_class = _in_school(SchoolClass, class_id)
    if not school_class:
        return api_error("not_found", "Class not found", 404)
    if _is_scheduled(ScheduleEvent.class_id_fk, class_id):
        return api_error("in_use", "Class has scheduled events; remove them first.", 409)
    if db.session.execute(select(Student.student_id).filter_by(class_id_fk=class_id).limit(1)).first():
        return api_error("in_use", "Class has enrolled students; move them first.", 409)
    db.session.delete(school_class)
    db.session.commit()
    invalidate_labels(current_user.school_id_fk)
    return api_success({"message": "Class deleted"})


# ==========================================
# SUBJECTS
# ==========================================

@academics_bp.route("/api/subjects", methods=["GET"])
@login_required
@role_required("school_admin", "teacher")
@school_required
def list_subjects():
    subjects = db.session.execute(
        select(Subject)
        .filter_by(school_id_fk=current_user.school_id_fk)
        .order_by(Subject.subject_name)
    ).scalars().all()
    return api_success([s.to_dict() for s in subjects])


def _subject_exists(name, exclude_id=None):
    stmt = select(Subject.subject_id).filter_by(school_id_fk=current_user.school_id_fk, subject_name=name)
    if exclude_id is not None:
        stmt = stmt.where(Subject.subject_id != exclude_id)
    return db.session.execute(stmt).first() is not None


@academics_bp.route("/api/subjects", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def create_subject():
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        return api_error("validation_error", "Subject name is required", 400, {"field": "name"})
    if _subject_exists(name):
        return api_error("duplicate", "A subject with this name already exists in your school.", 409)
    subject = Subject(
        subject_name=name,
        subject_code=(data.get("code") or "").strip() or None,
        school_id_fk=current_user.school_id_fk,
    )
    db.session.add(subject)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return api_error("duplicate", "A subject with this name already exists in your school.", 409)
    invalidate_labels(current_user.school_id_fk)
    return api_success(subject.to_dict(), status=201)


@academics_bp.route("/api/subjects/<int:subject_id>", methods=["PUT"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def update_subject(subject_id):
    subject = _in_school(Subject, subject_id)
    if not subject:
        return api_error("not_found", "Subject not found", 404)
    data = _payload()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return api_error("validation_error", "Subject name is required", 400, {"field": "name"})
        if _subject_exists(name, exclude_id=subject_id):
            return api_error("duplicate", "A subject with this name already exists in your school.", 409)
        subject.subject_name = name
    if "code" in data:
        subject.subject_code = (data.get("code") or "").strip() or None
    db.session.commit()
    invalidate_labels(current_user.school_id_fk)
    return api_success(subject.to_dict())


@academics_bp.route("/api/subjects/<int:subject_id>", methods=["DELETE"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def delete_subject(subject_id):
    subject = _in_school(Subject, subject_id)
    if not subject:
        return api_error("not_found", "Subject not found", 404)
    if _is_scheduled(ScheduleEvent.subject_id_fk, subject_id):
        return api_error("in_use", "Subject has scheduled events; remove them first.", 409)
    db.session.delete(subject)
    db.session.commit()
    invalidate_labels(current_user.school_id_fk)
    return api_success({"message": "Subject deleted"})


# ==========================================
# TEACHERS
# ==========================================

@academics_bp.route("/api/teachers", methods=["GET"])
@login_required
@role_required("school_admin", "teacher")
@school_required
def list_teachers():
    teachers = db.session.execute(
        select(User)
        .filter_by(school_id_fk=current_user.school_id_fk, role="teacher")
        .order_by(User.last_name, User.first_name)
    ).scalars().all()
    return api_success([{"id": t.user_id, "name": t.full_name, "email": t.email} for t in teachers])
