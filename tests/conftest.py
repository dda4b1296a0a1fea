import itertools
import time
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from school_app import create_app, db
from school_app.models import School, User, SchoolClass, Subject, ScheduleEvent

PASSWORD = "secret"
CSRF_TOKEN = "test-csrf-token"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    monkeypatch.setenv("RATELIMIT_ENABLED", "false")
    app = create_app()
    app.config["TESTING"] = True
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def _user(school, username, role, first_name, last_name):
    return User(
        school_id_fk=school.school_id,
        username=username,
        email=f"{username}@example.com",
        password_hash=generate_password_hash(PASSWORD),
        role=role,
        first_name=first_name,
        last_name=last_name,
    )


@pytest.fixture()
def school(app):
    """A school with an admin, two teachers, two classes and two subjects (ids only)."""
    with app.app_context():
        s = School(school_name="Greenfield High", school_code="GFH")
        db.session.add(s)
        db.session.flush()
        admin = _user(s, "admin", "school_admin", "Asha", "Rao")
        t1 = _user(s, "t.mehta", "teacher", "Ravi", "Mehta")
        t2 = _user(s, "t.iyer", "teacher", "Lata", "Iyer")
        c1 = SchoolClass(school_id_fk=s.school_id, class_name="Grade 7A")
        c2 = SchoolClass(school_id_fk=s.school_id, class_name="Grade 7B")
        math = Subject(school_id_fk=s.school_id, subject_name="Mathematics", subject_code="MATH")
        sci = Subject(school_id_fk=s.school_id, subject_name="Science", subject_code="SCI")
        db.session.add_all([admin, t1, t2, c1, c2, math, sci])
        db.session.commit()
        return SimpleNamespace(
            id=s.school_id,
            admin=admin.user_id,
            teacher1=t1.user_id,
            teacher2=t2.user_id,
            class1=c1.class_id,
            class2=c2.class_id,
            math=math.subject_id,
            science=sci.subject_id,
        )


@pytest.fixture()
def other_school(app):
    with app.app_context():
        s = School(school_name="Riverside School", school_code="RVS")
        db.session.add(s)
        db.session.flush()
        admin = _user(s, "rv.admin", "school_admin", "Neel", "Shah")
        teacher = _user(s, "rv.teacher", "teacher", "Mira", "Das")
        c = SchoolClass(school_id_fk=s.school_id, class_name="Grade 5")
        subj = Subject(school_id_fk=s.school_id, subject_name="History")
        db.session.add_all([admin, teacher, c, subj])
        db.session.commit()
        return SimpleNamespace(
            id=s.school_id,
            admin=admin.user_id,
            teacher=teacher.user_id,
            class1=c.class_id,
            subject=subj.subject_id,
        )


def login(client, username, password=PASSWORD):
    response = client.post("/login", data={"username": username, "password": password})
    assert response.status_code == 302, response.data
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF_TOKEN
        sess["csrf_token_issued_at"] = int(time.time())
    return client


@pytest.fixture()
def csrf():
    return {"X-CSRF-Token": CSRF_TOKEN}


@pytest.fixture()
def login_as(client):
    return lambda username: login(client, username)


@pytest.fixture()
def admin_client(client, school):
    return login(client, "admin")


@pytest.fixture()
def teacher_client(client, school):
    return login(client, "t.mehta")


@pytest.fixture()
def add_event(app, school):
    """Insert a schedule row directly, bypassing validation."""
    def _add(start, end, rrule=None, **kw):
        with app.app_context():
            event = ScheduleEvent(
                school_id_fk=kw.pop("school_id", school.id),
                class_id_fk=kw.pop("class_id", school.class1),
                subject_id_fk=kw.pop("subject_id", school.math),
                teacher_id_fk=kw.pop("teacher_id", school.teacher1),
                start_at=start,
                end_at=end,
                rrule=rrule,
                is_all_day=kw.pop("is_all_day", False),
                **kw
            )
            db.session.add(event)
            db.session.commit()
            return event.event_id
    return _add


@pytest.fixture()
def make_event():
    """Unsaved ScheduleEvent objects for exercising the engine without a database."""
    ids = itertools.count(1)

    def _make(start, end, rrule=None, class_id=1, teacher_id=1, subject_id=1,
              school_id=1, event_id=None, is_all_day=False, title=None):
        return ScheduleEvent(
            event_id=event_id if event_id is not None else next(ids),
            school_id_fk=school_id,
            class_id_fk=class_id,
            subject_id_fk=subject_id,
            teacher_id_fk=teacher_id,
            start_at=start,
            end_at=end,
            is_all_day=is_all_day,
            rrule=rrule,
            title=title,
        )
    return _make


@pytest.fixture()
def parent(app):
    """A parent account not yet linked to any student."""
    with app.app_context():
        user = User(
            username="p.kapoor",
            email="Parent.Kapoor@example.com",
            password_hash=generate_password_hash(PASSWORD),
            role="parent",
            first_name="Vikram",
            last_name="Kapoor",
        )
        db.session.add(user)
        db.session.commit()
        return user.user_id


@pytest.fixture()
def super_admin_client(app, client):
    with app.app_context():
        db.session.add(User(
            username="root",
            email="root@example.com",
            password_hash=generate_password_hash(PASSWORD),
            role="super_admin",
        ))
        db.session.commit()
    return login(client, "root")
