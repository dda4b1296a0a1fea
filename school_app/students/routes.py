from flask import request, current_app
from flask_login import login_required, current_user
from sqlalchemy import select, func

from . import students_bp
from .. import db, limiter, csrf_required
from ..api_utils import api_success, api_error
from ..decorators import role_required, school_required
from ..models import Student, SchoolClass, User

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


def _class_id(value):
    """Class id from the payload when it names a class of the current school."""
    try:
        class_id = int(value)
    except (TypeError, ValueError):
        return None
    return class_id if _in_school(SchoolClass, class_id) else None


def _find_parent(email):
    return db.session.execute(
        select(User).where(func.lower(User.email) == email.lower())
    ).scalars().first()


# ==========================================
# STUDENTS
# ==========================================

@students_bp.route("/api/students", methods=["GET"])
@login_required
@role_required("school_admin")
@school_required
def list_students():
    stmt = select(Student).filter_by(school_id_fk=current_user.school_id_fk)
    class_id = request.args.get("class_id", type=int)
    if class_id:
        stmt = stmt.filter_by(class_id_fk=class_id)
    students = db.session.execute(stmt.order_by(Student.last_name, Student.first_name)).scalars().all()
    return api_success([s.to_dict() for s in students], meta={"count": len(students)})


@students_bp.route("/api/students", methods=["POST"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def create_student():
    data = _payload()
    first_name = (data.get("first_name") or "").strip()
    last_name = (data.get("last_name") or "").strip()
    parent_email = (data.get("parent_email") or "").strip()
    for field, value in (("first_name", first_name), ("last_name", last_name),
                         ("class_id", data.get("class_id")), ("parent_email", parent_email)):
        if not value:
            return api_error("validation_error", "Missing required fields", 400, {"field": field})

    class_id = _class_id(data.get("class_id"))
    if class_id is None:
        return api_error("validation_error", "Class not found in your school", 400, {"field": "class_id"})

    parent = _find_parent(parent_email)
    if not parent:
        return api_error("not_found", "Parent user not found. Please ask them to sign up first.", 404)
    if parent.role != "parent":
        return api_error("validation_error", "User is not a parent.", 400, {"field": "parent_email"})

    student = Student(
        school_id_fk=current_user.school_id_fk,
        class_id_fk=class_id,
        parent_id_fk=parent.user_id,
        first_name=first_name,
        last_name=last_name,
    )
    db.session.add(student)
    db.session.commit()
    current_app.logger.info("Student %s created for school %s", student.student_id, current_user.school_id_fk)
    return api_success(student.to_dict(), status=201)


@students_bp.route("/api/students/<int:student_id>", methods=["GET"])
@login_required
@role_required("school_admin")
@school_required
def get_student(student_id):
    student = _in_school(Student, student_id)
    if not student:
        return api_error("not_found", "Student not found", 404)
    return api_success(student.to_dict())


@students_bp.route("/api/students/<int:student_id>", methods=["PUT"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def update_student(student_id):
    student = _in_school(Student, student_id)
    if not student:
        return api_error("not_found", "Student not found", 404)
    data = _payload()
    for field in ("first_name", "last_name"):
        if field in data:
            value = (data.get(field) or "").strip()
            if not value:
                return api_error("validation_error", f"{field} is required", 400, {"field": field})
            setattr(student, field, value)
    if "class_id" in data:
        class_id = _class_id(data.get("class_id"))
        if class_id is None:
            return api_error("validation_error", "Class not found in your school", 400, {"field": "class_id"})
        student.class_id_fk = class_id
    if "is_active" in data:
        student.is_active = bool(data.get("is_active"))
    db.session.commit()
    return api_success(student.to_dict())


@students_bp.route("/api/students/<int:student_id>", methods=["DELETE"])
@limiter.limit(WRITE_LIMIT)
@login_required
@role_required("school_admin")
@school_required
@csrf_required
def delete_student(student_id):
    student = _in_school(Student, student_id)
    if not student:
        return api_error("not_found", "Student not found", 404)
    db.session.delete(student)
    db.session.commit()
    current_app.logger.info("Student %s deleted for school %s", student_id, current_user.school_id_fk)
    return api_success({"message": "Student deleted"})
