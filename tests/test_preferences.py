from datetime import datetime, timezone

import pytest

from preferences import (
    NotificationPreferences,
    QuietHours,
    evaluate_push_delivery,
    evaluate_report_delivery,
    get_notification_preferences,
    is_in_quiet_hours,
)


def at(hour, minute=0):
    return datetime(2026, 1, 15, hour, minute, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "now,expected",
    [
        (at(23), True),
        (at(22), True),
        (at(2), True),
        (at(6, 59), True),
        (at(7), False),
        (at(12), False),
        (at(21, 59), False),
    ],
)
def test_quiet_hours_wrap_midnight(now, expected):
    assert is_in_quiet_hours(now, "UTC", "22:00", "07:00") is expected


def test_quiet_hours_same_day_window():
    assert is_in_quiet_hours(at(10), "UTC", "09:00", "17:00")
    assert not is_in_quiet_hours(at(18), "UTC", "09:00", "17:00")


def test_equal_bounds_are_never_quiet():
    assert not is_in_quiet_hours(at(23), "UTC", "22:00", "22:00")


def test_quiet_hours_use_user_timezone():
    # 03:00 UTC son las 22:00 en Nueva York en enero
    assert is_in_quiet_hours(at(3), "America/New_York", "22:00", "07:00")
    # 12:00 UTC son las 07:00 en Nueva York
    assert not is_in_quiet_hours(at(12), "America/New_York", "22:00", "07:00")


def test_invalid_timezone_falls_back_to_utc():
    assert is_in_quiet_hours(at(23), "Mars/Olympus", "22:00", "07:00")


def test_push_allowed_outside_quiet_hours():
    decision = evaluate_push_delivery(NotificationPreferences(), "warning", at(12))
    assert decision.allowed
    assert not decision.deferred


def test_push_deferred_in_quiet_hours():
    decision = evaluate_push_delivery(NotificationPreferences(), "critical", at(23))
    assert not decision.allowed
    assert decision.deferred


def test_push_quiet_hours_can_be_disabled():
    prefs = NotificationPreferences(push_quiet_hours=QuietHours(enabled=False))
    assert evaluate_push_delivery(prefs, "warning", at(23)).allowed


def test_push_disabled():
    prefs = NotificationPreferences(push_notifications=False)
    decision = evaluate_push_delivery(prefs, "critical", at(12))
    assert not decision.allowed
    assert not decision.deferred


def test_push_below_min_severity():
    prefs = NotificationPreferences(min_push_severity="high")
    assert not evaluate_push_delivery(prefs, "warning", at(12)).allowed
    assert evaluate_push_delivery(prefs, "critical", at(12)).allowed


def test_report_gating_uses_report_settings():
    prefs = NotificationPreferences(
        email_notifications=True,
        min_report_severity="critical",
        report_quiet_hours=QuietHours(start="08:00", end="09:00"),
    )
    assert not evaluate_report_delivery(prefs, "warning", at(12)).allowed
    assert evaluate_report_delivery(prefs, "critical", at(12)).allowed
    assert evaluate_report_delivery(prefs, "critical", at(8, 30)).deferred


def test_preferences_from_stored_settings(db):
    db.update_user_settings("user-1", "system", {"timezone": "Europe/Madrid"})
    db.update_user_settings(
        "user-1", "notifications", {"push_notifications": False, "min_report_severity": "HIGH"}
    )

    prefs = get_notification_preferences(db, "user-1")
    assert prefs.timezone == "Europe/Madrid"
    assert prefs.push_notifications is False
    assert prefs.email_notifications is True
    assert prefs.min_report_severity == "high"
    assert prefs.push_quiet_hours == QuietHours(True, "22:00", "07:00")
