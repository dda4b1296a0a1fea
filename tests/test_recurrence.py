from datetime import date, datetime

import pytest

from school_app.schedules.errors import MalformedRuleError
from school_app.schedules.recurrence import (
    Count, Frequency, NEVER, RecurrenceRule, Until, Weekday,
    describe, parse, parse_optional, serialize,
)


def test_parse_weekly_rule():
    rule = parse("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;UNTIL=20251231")
    assert rule.frequency is Frequency.WEEKLY
    assert rule.interval == 2
    assert rule.by_weekday == {Weekday.MO, Weekday.WE}
    assert rule.by_month_position is None
    assert rule.end == Until(date(2025, 12, 31))
    assert rule.until == date(2025, 12, 31)
    assert rule.count is None


def test_interval_and_end_default():
    rule = parse("FREQ=DAILY")
    assert rule.interval == 1
    assert rule.end is NEVER
    assert not rule.is_bounded


def test_parse_accepts_rrule_prefix_and_dtstart_line():
    text = "DTSTART:20240101T090000Z\nRRULE:FREQ=WEEKLY;BYDAY=TU;COUNT=4"
    rule = parse(text)
    assert rule.by_weekday == {Weekday.TU}
    assert rule.end == Count(4)


@pytest.mark.parametrize("text", [
    "FREQ=MONTHLY;BYDAY=MO;BYMONTHPOS=-1",
    "FREQ=MONTHLY;BYDAY=MO;BYSETPOS=-1",
    "FREQ=MONTHLY;BYDAY=-1MO",
    "freq=monthly;byday=-1mo",
])
def test_month_position_spellings(text):
    rule = parse(text)
    assert rule.frequency is Frequency.MONTHLY
    assert rule.by_month_position == -1
    assert rule.by_weekday == {Weekday.MO}


@pytest.mark.parametrize("raw", ["2024-01-10", "20240110", "20240110T235959Z", "2024-01-10T23:59:59Z"])
def test_until_formats(raw):
    assert parse(f"FREQ=DAILY;UNTIL={raw}").until == date(2024, 1, 10)


def test_until_and_count_together_rejected():
    with pytest.raises(MalformedRuleError) as exc:
        parse("FREQ=WEEKLY;INTERVAL=1;UNTIL=2024-01-10;COUNT=5")
    assert "mutually exclusive" in str(exc.value)
    assert exc.value.field == "rrule"


@pytest.mark.parametrize("text", [
    "INTERVAL=1;BYDAY=MO",                      # no FREQ
    "FREQ=HOURLY",
    "FREQ=WEEKLY;INTERVAL=0",
    "FREQ=WEEKLY;INTERVAL=two",
    "FREQ=DAILY;COUNT=0",
    "FREQ=DAILY;UNTIL=next-week",
    "FREQ=DAILY;UNTIL=2024-02-30",
    "FREQ=WEEKLY;BYDAY=XX",
    "FREQ=WEEKLY;BYDAY=MO,MO",
    "FREQ=DAILY;BYDAY=MO",
    "FREQ=WEEKLY;BYDAY=MO;BYMONTHPOS=1",
    "FREQ=MONTHLY;BYDAY=MO,TU;BYMONTHPOS=1",
    "FREQ=MONTHLY;BYDAY=MO;BYMONTHPOS=5",
    "FREQ=MONTHLY;BYDAY=+2MO;BYMONTHPOS=1",
    "FREQ=WEEKLY;FREQ=DAILY",
    "FREQ=WEEKLY;BYHOUR=9",
    "FREQ=WEEKLY;INTERVAL",
    "RRULE:FREQ=DAILY\nRRULE:FREQ=WEEKLY",
    "not a rule",
])
def test_malformed_rules(text):
    with pytest.raises(MalformedRuleError):
        parse(text)


@pytest.mark.parametrize("text", [None, "", "   "])
def test_blank_rule(text):
    with pytest.raises(MalformedRuleError):
        parse(text)
    assert parse_optional(text) is None


def test_wkst_is_accepted_and_dropped():
    assert serialize(parse("FREQ=WEEKLY;WKST=SU;BYDAY=FR")) == "FREQ=WEEKLY;INTERVAL=1;BYDAY=FR"


def test_serialize_canonical_form():
    rule = RecurrenceRule(
        Frequency.WEEKLY, 2, frozenset({Weekday.WE, Weekday.MO}), end=Until(date(2025, 12, 31))
    )
    assert serialize(rule) == "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;UNTIL=20251231"
    assert serialize(RecurrenceRule(Frequency.MONTHLY, 1, {Weekday.MO}, -1)) == "FREQ=MONTHLY;INTERVAL=1;BYDAY=-1MO"
    assert serialize(RecurrenceRule(Frequency.MONTHLY, 1, {Weekday.TU}, 2, Count(6))) == (
        "FREQ=MONTHLY;INTERVAL=1;BYDAY=+2TU;COUNT=6"
    )
    assert serialize(RecurrenceRule(Frequency.YEARLY)) == "FREQ=YEARLY;INTERVAL=1"


@pytest.mark.parametrize("rule", [
    RecurrenceRule(Frequency.DAILY),
    RecurrenceRule(Frequency.DAILY, 3, end=Count(10)),
    RecurrenceRule(Frequency.WEEKLY, 1, {Weekday.MO, Weekday.WE, Weekday.FR}),
    RecurrenceRule(Frequency.WEEKLY, 2, {Weekday.SU}, end=Until(date(2024, 6, 30))),
    RecurrenceRule(Frequency.MONTHLY, 1, end=Count(12)),
    RecurrenceRule(Frequency.MONTHLY, 2, {Weekday.TH}, 3),
    RecurrenceRule(Frequency.MONTHLY, 1, {Weekday.FR}, -1, Until(date(2025, 3, 1))),
    RecurrenceRule(Frequency.YEARLY, 4),
])
def test_round_trip(rule):
    assert parse(serialize(rule)) == rule


def test_rule_validated_on_construction():
    with pytest.raises(MalformedRuleError):
        RecurrenceRule(Frequency.WEEKLY, interval=0)
    with pytest.raises(MalformedRuleError):
        RecurrenceRule(Frequency.DAILY, by_weekday={Weekday.MO})
    with pytest.raises(MalformedRuleError):
        RecurrenceRule(Frequency.WEEKLY, by_weekday={Weekday.MO}, by_month_position=1)
    with pytest.raises(MalformedRuleError):
        RecurrenceRule(Frequency.MONTHLY, by_month_position=-1)
    with pytest.raises(MalformedRuleError):
        Count(0)


def test_describe():
    assert describe(parse("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;UNTIL=20251231")) == (
        "every 2 weeks on Mon, Wed until Dec 31, 2025"
    )
    assert describe(parse("FREQ=MONTHLY;BYDAY=-1MO;COUNT=3")) == "every month on the last Mon for 3 occurrences"
    assert describe(parse("FREQ=DAILY")) == "every day"
    assert describe(parse("FREQ=WEEKLY"), datetime(2024, 1, 4, 9)) == "every week on Thu"
    assert describe(parse("FREQ=MONTHLY;COUNT=1"), datetime(2024, 1, 31)) == "every month on day 31 for 1 occurrence"
    assert describe(parse("FREQ=YEARLY"), datetime(2024, 9, 5)) == "every year on Sep 5"
