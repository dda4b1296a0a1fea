from datetime import datetime

import pytest

from school_app import db
from school_app.models import ScheduleEvent

EVENTS_URL = "/schedules/api/events"


@pytest.fixture()
def payload(school):
    def _payload(**overrides):
        data = {
            "class_id": school.class1,
            "subject_id": school.math,
            "teacher_id": school.teacher1,
            "start": "2024-01-01T09:00:00",
            "end": "2024-01-01T10:00:00",
            "rrule": "FREQ=WEEKLY;BYDAY=MO,WE",
        }
        data.update(overrides)
        return data
    return _payload


def create(client, csrf, data):
    return client.post(EVENTS_URL, json=data, headers=csrf)


def test_create_event(app, admin_client, csrf, payload, school):
    resp = create(admin_client, csrf, payload(title="Algebra"))
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["success"] is True
    event = body["data"]
    assert event["rrule"] == "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE"
    assert event["school_id"] == school.id
    assert event["title"] == "Algebra"
    with app.app_context():
        stored = db.session.get(ScheduleEvent, event["id"])
        assert stored.start_at == datetime(2024, 1, 1, 9)
        assert stored.teacher_id_fk == school.teacher1


def test_create_stores_utc_times_without_offset(app, admin_client, csrf, payload):
    resp = create(admin_client, csrf, payload(start="2024-01-01T09:00:00Z", end="2024-01-01T11:00:00+01:00", rrule=None))
    assert resp.status_code == 201
    assert resp.get_json()["data"]["end"] == "2024-01-01T10:00:00"


def test_teacher_double_booking_rejected(admin_client, csrf, payload, school):
    first = create(admin_client, csrf, payload(rrule="FREQ=WEEKLY;BYDAY=MO")).get_json()["data"]
    resp = create(admin_client, csrf, payload(
        class_id=school.class2,
        start="2024-01-01T09:30:00",
        end="2024-01-01T10:30:00",
        rrule="FREQ=WEEKLY;BYDAY=MO",
    ))
    assert resp.status_code == 409
    error = resp.get_json()["error"]
    assert error["code"] == "schedule_conflict"
    assert error["details"] == {"with_event_id": first["id"], "field": "teacher"}
    assert "teacher" in error["message"]


def test_class_double_booking_rejected(admin_client, csrf, payload, school):
    create(admin_client, csrf, payload(rrule=None))
    resp = create(admin_client, csrf, payload(teacher_id=school.teacher2, rrule=None))
    assert resp.status_code == 409
    assert resp.get_json()["error"]["details"]["field"] == "class"


@pytest.mark.parametrize("overrides,field", [
    ({"end": "2024-01-01T08:00:00"}, "end"),
    ({"start": "yesterday"}, "start"),
    ({"class_id": None}, "class_id"),
    ({"subject_id": "abc"}, "subject_id"),
    ({"class_id": 9999}, "class_id"),
])
def test_invalid_payload(admin_client, csrf, payload, overrides, field):
    resp = create(admin_client, csrf, payload(**overrides))
    assert resp.status_code == 400
    error = resp.get_json()["error"]
    assert error["code"] == "validation_error"
    assert error["details"]["field"] == field


def test_references_must_belong_to_school(admin_client, csrf, payload, school, other_school):
    resp = create(admin_client, csrf, payload(class_id=other_school.class1))
    assert resp.get_json()["error"]["details"]["field"] == "class_id"
    resp = create(admin_client, csrf, payload(teacher_id=other_school.teacher))
    assert resp.get_json()["error"]["details"]["field"] == "teacher_id"
    # Admins are not teachers
    resp = create(admin_client, csrf, payload(teacher_id=school.admin))
    assert resp.status_code == 400
    assert resp.get_json()["error"]["details"]["field"] == "teacher_id"


@pytest.mark.parametrize("rrule", ["FREQ=WEEKLY;INTERVAL=1;UNTIL=2024-01-10;COUNT=5", "FREQ=FORTNIGHTLY"])
def test_malformed_rule_rejected(app, admin_client, csrf, payload, rrule):
    resp = create(admin_client, csrf, payload(rrule=rrule))
    assert resp.status_code == 400
    error = resp.get_json()["error"]
    assert error["code"] == "malformed_rule"
    assert error["details"]["field"] == "rrule"
    with app.app_context():
        assert db.session.query(ScheduleEvent).count() == 0


def test_body_must_be_json_object(admin_client, csrf):
    resp = admin_client.post(EVENTS_URL, json=["not", "an", "object"], headers=csrf)
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "validation_error"


def test_write_requires_csrf_token(admin_client, payload):
    resp = admin_client.post(EVENTS_URL, json=payload())
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "csrf_failed"
    resp = admin_client.post(EVENTS_URL, json=payload(), headers={"X-CSRF-Token": "forged"})
    assert resp.get_json()["error"]["code"] == "csrf_failed"


def test_teacher_cannot_write(teacher_client, csrf, payload):
    resp = create(teacher_client, csrf, payload())
    assert resp.status_code == 403
    assert resp.get_json()["error"]["code"] == "forbidden"


def test_anonymous_is_sent_to_login(client):
    resp = client.get(EVENTS_URL)
    assert resp.status_code == 302
    assert "/login" in resp.headers["Location"]


def test_update_moves_whole_series(admin_client, csrf, payload):
    event_id = create(admin_client, csrf, payload()).get_json()["data"]["id"]
    # Overlaps its own previous slot: must not count as a conflict
    resp = admin_client.put(f"{EVENTS_URL}/{event_id}", json={
        "start": "2024-01-01T09:30:00", "end": "2024-01-01T10:30:00",
    }, headers=csrf)
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["start"] == "2024-01-01T09:30:00"
    assert data["rrule"] == "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE"


def test_update_into_conflict_leaves_event_unchanged(admin_client, csrf, payload, school):
    first = create(admin_client, csrf, payload()).get_json()["data"]["id"]
    second = create(admin_client, csrf, payload(
        class_id=school.class2, teacher_id=school.teacher2,
        start="2024-01-02T09:00:00", end="2024-01-02T10:00:00", rrule="FREQ=WEEKLY;BYDAY=TU",
    )).get_json()["data"]["id"]

    resp = admin_client.put(f"{EVENTS_URL}/{second}", json={"rrule": "FREQ=WEEKLY;BYDAY=TU,WE", "teacher_id": school.teacher1},
                            headers=csrf)
    assert resp.status_code == 409
    assert resp.get_json()["error"]["details"] == {"with_event_id": first, "field": "teacher"}

    detail = admin_client.get(f"{EVENTS_URL}/{second}").get_json()["data"]
    assert detail["rrule"] == "FREQ=WEEKLY;INTERVAL=1;BYDAY=TU"
    assert detail["teacher_id"] == school.teacher2


def test_update_missing_or_foreign_event(admin_client, csrf, add_event, other_school):
    resp = admin_client.put(f"{EVENTS_URL}/4242", json={"title": "x"}, headers=csrf)
    assert resp.status_code == 404
    foreign = add_event(
        datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10),
        school_id=other_school.id, class_id=other_school.class1,
        subject_id=other_school.subject, teacher_id=other_school.teacher,
    )
    resp = admin_client.put(f"{EVENTS_URL}/{foreign}", json={"title": "x"}, headers=csrf)
    assert resp.status_code == 403
    assert admin_client.delete(f"{EVENTS_URL}/{foreign}", headers=csrf).status_code == 403


def test_delete_event(admin_client, csrf, payload):
    event_id = create(admin_client, csrf, payload()).get_json()["data"]["id"]
    resp = admin_client.delete(f"{EVENTS_URL}/{event_id}", headers=csrf)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["message"] == "Schedule deleted successfully"
    assert admin_client.get(f"{EVENTS_URL}/{event_id}").status_code == 404


def test_check_is_a_dry_run(app, admin_client, csrf, payload, school):
    event_id = create(admin_client, csrf, payload()).get_json()["data"]["id"]
    clash = payload(class_id=school.class2, start="2024-01-03T09:15:00", end="2024-01-03T09:45:00", rrule=None)
    resp = admin_client.post("/schedules/api/check", json=clash, headers=csrf)
    assert resp.status_code == 200
    assert resp.get_json()["data"] == {"conflict": True, "with_event_id": event_id, "field": "teacher"}

    resp = admin_client.post("/schedules/api/check", json={"id": event_id, "end": "2024-01-01T11:00:00"}, headers=csrf)
    assert resp.get_json()["data"]["conflict"] is False
    with app.app_context():
        assert db.session.query(ScheduleEvent).count() == 1


def test_event_detail(admin_client, csrf, payload, add_event):
    event_id = create(admin_client, csrf, payload(rrule="FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20240630")).get_json()["data"]["id"]
    data = admin_client.get(f"{EVENTS_URL}/{event_id}").get_json()["data"]
    assert data["class_name"] == "Grade 7A"
    assert data["subject_name"] == "Mathematics"
    assert data["teacher_name"] == "Ravi Mehta"
    assert data["recurrence"] == "every week on Mon, Wed until Jun 30, 2024"
    assert data["series_end"] == "2024-06-26T10:00:00"

    broken = add_event(datetime(2024, 2, 1, 9), datetime(2024, 2, 1, 10), "FREQ=WEEKLY;BYDAY=XX")
    data = admin_client.get(f"{EVENTS_URL}/{broken}").get_json()["data"]
    assert data["recurrence"] is None
    assert data["recurrence_error"] == "This event's schedule could not be displayed."
    assert data["series_end"] is None


def test_feed_reports_unrenderable_events(admin_client, csrf, payload, add_event):
    good = create(admin_client, csrf, payload()).get_json()["data"]["id"]
    broken = add_event(datetime(2024, 2, 1, 9), datetime(2024, 2, 1, 10), "FREQ=WEEKLY;BYDAY=XX")
    body = admin_client.get(EVENTS_URL).get_json()
    assert [r["id"] for r in body["data"]] == [good]
    assert body["meta"]["unrenderable"] == [
        {"event_id": broken, "message": "This event's schedule could not be displayed."}
    ]


def test_calendar_occurrences(teacher_client, add_event, school):
    add_event(datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE")
    add_event(datetime(2024, 1, 9, 9), datetime(2024, 1, 9, 10),
              class_id=school.class2, teacher_id=school.teacher2, subject_id=school.science)
    broken = add_event(datetime(2024, 1, 9, 12), datetime(2024, 1, 9, 13), "FREQ=MONTHLY;BYDAY=MO,TU;BYMONTHPOS=1",
                       class_id=school.class2)

    resp = teacher_client.get(f"/schedules/api/calendar?start=2024-01-08&end=2024-01-13&by=class&id={school.class1}")
    assert resp.status_code == 200
    body = resp.get_json()
    assert [o["start"] for o in body["data"]] == ["2024-01-08T09:00:00", "2024-01-10T09:00:00"]
    assert body["data"][0]["counterpart_name"] == "Ravi Mehta"
    assert body["meta"]["unrenderable"] == []

    body = teacher_client.get("/schedules/api/calendar?start=2024-01-08&end=2024-01-13").get_json()
    assert len(body["data"]) == 3
    assert [u["event_id"] for u in body["meta"]["unrenderable"]] == [broken]


@pytest.mark.parametrize("query,field", [
    ("start=2024-01-08", "end"),
    ("start=2024-01-08&end=2024-01-01", "end"),
    ("start=2024-01-01&end=2024-12-31", "end"),
    ("start=soon&end=2024-01-13", "start"),
    ("start=2024-01-08&end=2024-01-13&by=room", "by"),
])
def test_calendar_rejects_bad_windows(teacher_client, query, field):
    resp = teacher_client.get(f"/schedules/api/calendar?{query}")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["details"]["field"] == field


def test_calendar_page(admin_client, add_event, school):
    add_event(datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), "FREQ=WEEKLY;BYDAY=MO")
    add_event(datetime(2024, 1, 1, 11), datetime(2024, 1, 1, 12), "FREQ=WEEKLY;BYDAY=ZZ")
    resp = admin_client.get(f"/schedules/?view=week&date=2024-01-10&by=class&id={school.class1}")
    assert resp.status_code == 200
    html = resp.data.decode("utf-8")
    assert 'data-start="2024-01-08T09:00:00"' in html
    assert "Mathematics" in html
    assert "Ravi Mehta" in html
    assert "could not be displayed" in html
    assert "Delete series" in html


def test_calendar_page_read_only_for_teachers(teacher_client, add_event):
    add_event(datetime(2024, 1, 8, 9), datetime(2024, 1, 8, 10))
    resp = teacher_client.get("/schedules/?view=day&date=2024-01-08")
    assert resp.status_code == 200
    html = resp.data.decode("utf-8")
    assert "Mathematics" in html
    assert "Delete series" not in html


def test_unreadable_stored_rule_reported_with_its_event(app, admin_client, csrf, payload, add_event):
    broken_id = add_event(datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), "FREQ=WEEKLY;COUNT=0")
    resp = create(admin_client, csrf, payload(start="2024-01-02T09:00:00", end="2024-01-02T10:00:00"))
    assert resp.status_code == 409
    error = resp.get_json()["error"]
    assert error["code"] == "stored_rule_invalid"
    assert error["details"] == {"event_id": broken_id}
    with app.app_context():
        assert db.session.query(ScheduleEvent).count() == 1

    resp = admin_client.post("/schedules/api/check", json=payload(), headers=csrf)
    assert resp.get_json()["error"]["code"] == "stored_rule_invalid"


def test_calendar_page_has_schedule_form_for_admins(admin_client, school):
    html = admin_client.get("/schedules/?view=week&date=2024-01-10").data.decode("utf-8")
    assert 'id="schedule-form"' in html
    assert f'<option value="{school.science}">Science</option>' in html
    assert f'<option value="{school.teacher2}">Lata Iyer</option>' in html
    assert f'<option value="{school.class2}">Grade 7B</option>' in html
    assert 'name="frequency"' in html
    assert 'name="byday" value="MO"' in html
    assert 'name="month_position"' in html
    assert 'name="end_type"' in html
    assert "js/timetable.js" in html


def test_calendar_page_has_no_form_for_teachers(teacher_client, add_event):
    add_event(datetime(2024, 1, 8, 9), datetime(2024, 1, 8, 10))
    html = teacher_client.get("/schedules/?view=day&date=2024-01-08").data.decode("utf-8")
    assert 'id="schedule-form"' not in html
    assert 'class="edit-event"' not in html
    assert "js/timetable.js" not in html
