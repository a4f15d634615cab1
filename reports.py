"""Analítica agregada, exportación CSV y reportes programados por email."""
import csv
import io
import logging
import smtplib
from datetime import timedelta, timezone
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings
from database import parse_iso, to_iso, utcnow
from preferences import evaluate_report_delivery, get_notification_preferences
from severity import highest_severity

logger = logging.getLogger("agronex_api.reports")

TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

CSV_HEADER = ["date", "hour", "sensorType", "avgValue", "minValue", "maxValue", "count"]


def timeframe_start(timeframe, now=None):
    now = now or utcnow()
    return now - TIMEFRAMES.get(timeframe, TIMEFRAMES["24h"])


def aggregate_analytics(db, user_id, timeframe="24h", types: Optional[List[str]] = None, now=None):
    since = timeframe_start(timeframe, now)
    return db.aggregate_readings(user_id, to_iso(since), types or None)


def to_csv(rows: List[Dict]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(
            [
                row["date"],
                row["hour"],
                row["sensor_type"],
                row["avg_value"],
                row["min_value"],
                row["max_value"],
                row["count"],
            ]
        )
    return output.getvalue()


def local_now(now, tz_name):
    try:
        zone = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    return now.astimezone(zone)


def is_schedule_due(schedule: Dict, now_local) -> bool:
    """Un reporte toca si es su hora local, no se envió en la última hora y
    coincide la frecuencia (diaria, o semanal los lunes)."""
    if not schedule.get("enabled", True):
        return False
    if now_local.hour != int(schedule.get("hour_local", 8)):
        return False
    if schedule.get("frequency") == "weekly" and now_local.weekday() != 0:
        return False

    last_run = parse_iso(schedule.get("last_run_at"))
    if last_run and now_local - last_run < timedelta(hours=1):
        return False
    return True


def send_email_csv(to_email, subject, body, csv_content, filename="report.csv"):
    """Envía un email con el CSV adjunto. Devuelve False si SMTP no está configurado."""
    if not settings.smtp_configured:
        logger.warning("SMTP no configurado; se omite el envío del reporte")
        return False

    message = MIMEMultipart()
    message["Subject"] = subject
    message["From"] = settings.smtp_from
    message["To"] = to_email
    message.attach(MIMEText(body, "plain"))

    attachment = MIMEApplication(csv_content.encode("utf-8"), Name=filename)
    attachment["Content-Disposition"] = f'attachment; filename="{filename}"'
    message.attach(attachment)

    if settings.smtp_port == 465:
        with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port) as server:
            server.login(settings.smtp_user, settings.smtp_pass)
            server.sendmail(settings.smtp_from, to_email, message.as_string())
    else:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_pass)
            server.sendmail(settings.smtp_from, to_email, message.as_string())

    logger.info(f"Reporte enviado a {to_email}")
    return True


def report_severity(db, user_id, timeframe, now=None):
    since = timeframe_start(timeframe, now)
    return highest_severity(db.alert_severities_since(user_id, to_iso(since)), default="info")


def run_schedule(db, schedule: Dict, now=None) -> str:
    """Ejecuta un reporte programado y devuelve el resultado: sent, skipped o deferred."""
    now = now or utcnow()
    user_id = schedule["user_id"]
    timeframe = schedule.get("timeframe") or "24h"

    prefs = get_notification_preferences(db, user_id)
    severity = report_severity(db, user_id, timeframe, now)
    decision = evaluate_report_delivery(prefs, severity, now)
    if decision.deferred:
        logger.info(f"Reporte {schedule['id']} aplazado: {decision.reason}")
        return "deferred"
    if not decision.allowed:
        logger.info(f"Reporte {schedule['id']} omitido: {decision.reason}")
        db.mark_schedule_run(schedule["id"], to_iso(now))
        return "skipped"

    rows = aggregate_analytics(db, user_id, timeframe, schedule.get("types"), now)
    body = (
        f"Reporte '{schedule['name']}' ({timeframe}).\n"
        f"Filas: {len(rows)}. Severidad máxima de alertas: {severity}.\n"
    )
    try:
        sent = send_email_csv(
            schedule["email"],
            f"AgroNex - {schedule['name']}",
            body,
            to_csv(rows),
            filename=f"report-{timeframe}.csv",
        )
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Error enviando el reporte {schedule['id']}: {e}")
        return "failed"

    db.mark_schedule_run(schedule["id"], to_iso(now))
    return "sent" if sent else "skipped"


def run_due_schedules(db, now=None) -> Dict[str, int]:
    now = now or utcnow()
    results: Dict[str, int] = {}
    for schedule in db.enabled_report_schedules():
        tz_name = db.get_user_settings(schedule["user_id"])["system"].get("timezone")
        if not is_schedule_due(schedule, local_now(now, tz_name)):
            continue
        status = run_schedule(db, schedule, now)
        results[status] = results.get(status, 0) + 1
    if results:
        logger.info(f"Reportes programados procesados: {results}")
    return results
