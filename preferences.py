"""Preferencias de entrega de notificaciones: severidad mínima y horas de silencio."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models import HOUR_MINUTE_RE
from severity import meets_severity_threshold

logger = logging.getLogger("agronex_api.preferences")


@dataclass
class QuietHours:
    enabled: bool = True
    start: str = "22:00"
    end: str = "07:00"


@dataclass
class NotificationPreferences:
    timezone: str = "UTC"
    email_notifications: bool = True
    push_notifications: bool = True
    min_push_severity: str = "low"
    min_report_severity: str = "low"
    push_quiet_hours: QuietHours = field(default_factory=QuietHours)
    report_quiet_hours: QuietHours = field(default_factory=QuietHours)


@dataclass
class DeliveryDecision:
    allowed: bool
    deferred: bool = False
    reason: Optional[str] = None


def parse_hour_minute(value, fallback_minutes):
    match = HOUR_MINUTE_RE.match(str(value or "").strip())
    if not match:
        return fallback_minutes
    return int(match.group(1)) * 60 + int(match.group(2))


def local_minute_of_day(now: datetime, tz_name):
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        local = now.astimezone(ZoneInfo(tz_name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Zona horaria inválida '{tz_name}', usando UTC")
        local = now.astimezone(timezone.utc)
    return local.hour * 60 + local.minute


def is_in_quiet_hours(now=None, tz_name="UTC", quiet_start="22:00", quiet_end="07:00"):
    """Indica si `now` cae dentro de las horas de silencio del usuario.

    El intervalo es [inicio, fin) en hora local y puede cruzar la medianoche.
    Si inicio y fin coinciden no hay horas de silencio.
    """
    now = now or datetime.now(timezone.utc)
    minute = local_minute_of_day(now, tz_name)
    start = parse_hour_minute(quiet_start, 22 * 60)
    end = parse_hour_minute(quiet_end, 7 * 60)

    if start == end:
        return False
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


def preferences_from_settings(user_settings: Optional[Dict]) -> NotificationPreferences:
    notifications = (user_settings or {}).get("notifications") or {}
    system = (user_settings or {}).get("system") or {}

    return NotificationPreferences(
        timezone=system.get("timezone") or "UTC",
        email_notifications=notifications.get("email_notifications") is not False,
        push_notifications=notifications.get("push_notifications") is not False,
        min_push_severity=str(notifications.get("min_push_severity") or "low").lower(),
        min_report_severity=str(notifications.get("min_report_severity") or "low").lower(),
        push_quiet_hours=QuietHours(
            enabled=notifications.get("push_quiet_hours_enabled") is not False,
            start=notifications.get("push_quiet_hours_start") or "22:00",
            end=notifications.get("push_quiet_hours_end") or "07:00",
        ),
        report_quiet_hours=QuietHours(
            enabled=notifications.get("report_quiet_hours_enabled") is not False,
            start=notifications.get("report_quiet_hours_start") or "22:00",
            end=notifications.get("report_quiet_hours_end") or "07:00",
        ),
    )


def get_notification_preferences(db, user_id) -> NotificationPreferences:
    return preferences_from_settings(db.get_user_settings(user_id))


def _evaluate(enabled, disabled_reason, severity, min_severity, quiet: QuietHours, tz_name, now, channel):
    if not enabled:
        return DeliveryDecision(allowed=False, reason=disabled_reason)
    if not meets_severity_threshold(severity, min_severity):
        return DeliveryDecision(
            allowed=False, reason=f"El umbral de severidad de {channel} es '{min_severity}'"
        )
    if quiet.enabled and is_in_quiet_hours(now, tz_name, quiet.start, quiet.end):
        return DeliveryDecision(
            allowed=False, deferred=True, reason=f"Hora actual dentro de las horas de silencio de {channel}"
        )
    return DeliveryDecision(allowed=True)


def evaluate_push_delivery(prefs: NotificationPreferences, severity="medium", now=None):
    return _evaluate(
        prefs.push_notifications,
        "Las notificaciones push están desactivadas",
        severity,
        prefs.min_push_severity,
        prefs.push_quiet_hours,
        prefs.timezone,
        now,
        "push",
    )


def evaluate_report_delivery(prefs: NotificationPreferences, severity="medium", now=None):
    return _evaluate(
        prefs.email_notifications,
        "Las notificaciones por email están desactivadas",
        severity,
        prefs.min_report_severity,
        prefs.report_quiet_hours,
        prefs.timezone,
        now,
        "reportes",
    )
