from datetime import datetime, timezone
from . import db

def utc_now():
    return datetime.now(timezone.utc)

from flask_login import UserMixin

# ==========================================
# TENANT
# ==========================================

class School(db.Model):
    __tablename__ = "schools"
    school_id = db.Column(db.Integer, primary_key=True)
    school_name = db.Column(db.String(128), nullable=False)
    school_code = db.Column(db.String(32), unique=True)
    address = db.Column(db.Text)
    contact_email = db.Column(db.String(128))
    contact_phone = db.Column(db.String(32))
    created_at = db.Column(db.DateTime, default=utc_now)

    # Status for "Kill Switch" per tenant
    is_active = db.Column(db.Boolean, default=True)

    classes = db.relationship("SchoolClass", backref="school", lazy=True)
    subjects = db.relationship("Subject", backref="school", lazy=True)

    def to_dict(self):
        return {
            "id": self.school_id,
            "name": self.school_name,
            "code": self.school_code,
            "contact_email": self.contact_email,
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


ENROLLMENT_STATUSES = ("pending", "approved", "rejected")


class SchoolEnrollment(db.Model):
    """Application from a school that wants to join; reviewed by a super admin."""
    __tablename__ = "school_enrollments"
    enrollment_id = db.Column(db.Integer, primary_key=True)
    school_name = db.Column(db.String(128), nullable=False)
    contact_name = db.Column(db.String(128), nullable=False)
    contact_email = db.Column(db.String(128), nullable=False)
    contact_phone = db.Column(db.String(32))
    address = db.Column(db.String(255), nullable=False)
    city = db.Column(db.String(64), nullable=False)
    state = db.Column(db.String(64), nullable=False)
    zip_code = db.Column(db.String(16), nullable=False)
    country = db.Column(db.String(64), nullable=False)
    estimated_students = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), default="pending", nullable=False)
    approved_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    approved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self):
        return {
            "id": self.enrollment_id,
            "school_name": self.school_name,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "country": self.country,
            "estimated_students": self.estimated_students,
            "status": self.status,
            "approved_by": self.approved_by_fk,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    school_id_fk = db.Column(db.Integer, db.ForeignKey("schools.school_id"))
    username = db.Column(db.String(128), unique=True, nullable=False)
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(32), default="parent")  # super_admin, school_admin, teacher, parent
    first_name = db.Column(db.String(64))
    last_name = db.Column(db.String(64))
    is_active = db.Column(db.Boolean, default=True)

    def get_id(self):
        return str(self.user_id)

    @property
    def full_name(self):
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.username


# ==========================================
# ACADEMICS
# ==========================================

class SchoolClass(db.Model):
    __tablename__ = "classes"
    class_id = db.Column(db.Integer, primary_key=True)
    school_id_fk = db.Column(db.Integer, db.ForeignKey("schools.school_id"), nullable=False)
    class_name = db.Column(db.String(64), nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {"id": self.class_id, "name": self.class_name, "is_active": bool(self.is_active)}


class Subject(db.Model):
    __tablename__ = "subjects"
    subject_id = db.Column(db.Integer, primary_key=True)
    school_id_fk = db.Column(db.Integer, db.ForeignKey("schools.school_id"), nullable=False)
    subject_name = db.Column(db.String(128), nullable=False)
    subject_code = db.Column(db.String(20))

    __table_args__ = (
        db.UniqueConstraint("school_id_fk", "subject_name", name="uq_subject_school_name"),
    )

    def to_dict(self):
        return {"id": self.subject_id, "name": self.subject_name, "code": self.subject_code}


class Student(db.Model):
    __tablename__ = "students"
    student_id = db.Column(db.Integer, primary_key=True)
    school_id_fk = db.Column(db.Integer, db.ForeignKey("schools.school_id"), nullable=False, index=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    # Parent account (role "parent") that signs in on the student's behalf
    parent_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    first_name = db.Column(db.String(64), nullable=False)
    last_name = db.Column(db.String(64), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    school_class = db.relationship("SchoolClass", lazy=True)
    parent = db.relationship("User", lazy=True)

    def to_dict(self):
        return {
            "id": self.student_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "class_id": self.class_id_fk,
            "class_name": self.school_class.class_name if self.school_class else None,
            "parent_email": self.parent.email if self.parent else None,
            "is_active": bool(self.is_active),
        }


# ==========================================
# SCHEDULE
# ==========================================

class ScheduleEvent(db.Model):
    __tablename__ = "schedule_events"
    event_id = db.Column(db.Integer, primary_key=True)
    school_id_fk = db.Column(db.Integer, db.ForeignKey("schools.school_id"), nullable=False, index=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    subject_id_fk = db.Column(db.Integer, db.ForeignKey("subjects.subject_id"), nullable=False)
    teacher_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    title = db.Column(db.String(128))
    # Anchor: the first occurrence. Naive datetimes (school-local wall clock).
    start_at = db.Column(db.DateTime, nullable=False)
    end_at = db.Column(db.DateTime, nullable=False)
    is_all_day = db.Column(db.Boolean, default=False, nullable=False)
    # Canonical recurrence text (FREQ=...;INTERVAL=...); NULL for a one-off event
    rrule = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    school_class = db.relationship("SchoolClass", lazy=True)
    subject = db.relationship("Subject", lazy=True)
    teacher = db.relationship("User", lazy=True)

    __table_args__ = (
        db.CheckConstraint("end_at > start_at", name="ck_schedule_event_positive_duration"),
    )

    def to_dict(self):
        return {
            "id": self.event_id,
            "school_id": self.school_id_fk,
            "class_id": self.class_id_fk,
            "subject_id": self.subject_id_fk,
            "teacher_id": self.teacher_id_fk,
            "title": self.title,
            "start": self.start_at.isoformat() if self.start_at else None,
            "end": self.end_at.isoformat() if self.end_at else None,
            "is_all_day": bool(self.is_all_day),
            "rrule": self.rrule,
        }
