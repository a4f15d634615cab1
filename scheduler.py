"""Tareas periódicas: reportes, recordatorios de calendario y entregas push."""
import logging
from datetime import timedelta
from typing import Dict, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from database import get_db, parse_iso, to_iso, utcnow
from push import PushDispatcher
from realtime import broadcast_alerts
from reports import run_due_schedules

logger = logging.getLogger("agronex_api.scheduler")

scheduler = AsyncIOScheduler(timezone="UTC")


def due_reminders(event: Dict, now) -> List[int]:
    """Minutos de antelación de los recordatorios que ya tocan y no se entregaron."""
    start = parse_iso(event["start_at"])
    delivered = set(event.get("delivered_reminders") or [])
    due = []
    for reminder in event.get("reminders") or []:
        minutes = int(reminder.get("minutes_before", 0))
        if minutes in delivered:
            continue
        if now >= start - timedelta(minutes=minutes):
            due.append(minutes)
    return sorted(set(due))


def build_reminder_alert(event: Dict, minutes_before: int, now) -> Dict:
    when = "ahora" if minutes_before == 0 else f"en {minutes_before} min"
    message = f"'{event['title']}' comienza {when}"
    if event.get("room_id"):
        message += f" ({event['room_id']})"
    return {
        "user_id": event["user_id"],
        "type": "system",
        "severity": "warning",
        "origin": "reminder",
        "title": f"Recordatorio: {event['title']}"[:100],
        "message": message[:500],
        "room_id": event.get("room_id"),
        "push_status": "skipped",
        "created_at": to_iso(now),
    }


async def process_calendar_reminders(db=None, now=None):
    db = db or get_db()
    now = now or utcnow()
    events = db.events_with_reminders(
        to_iso(now - timedelta(hours=1)), to_iso(now + timedelta(days=30))
    )
    created = 0
    for event in events:
        for minutes in due_reminders(event, now):
            alert = db.create_alert(build_reminder_alert(event, minutes, now))
            db.mark_reminder_delivered(event["id"], minutes)
            await broadcast_alerts(event["user_id"], [alert])
            created += 1
    if created:
        logger.info(f"Recordatorios de calendario enviados: {created}")
    return created


def process_report_schedules(db=None, now=None):
    """Envía los reportes programados que tocan. Corre en el pool de hilos del scheduler."""
    return run_due_schedules(db or get_db(), now)


def process_deferred_pushes(db=None, now=None):
    return PushDispatcher(db or get_db()).deliver_deferred(now)


def prune_push_subscriptions(db=None):
    return PushDispatcher(db or get_db()).prune_stale_subscriptions()


def start_scheduler():
    if scheduler.running:
        return scheduler
    scheduler.add_job(process_report_schedules, "interval", minutes=5, id="reports", replace_existing=True)
    scheduler.add_job(process_calendar_reminders, "interval", minutes=1, id="reminders", replace_existing=True)
    scheduler.add_job(process_deferred_pushes, "interval", minutes=5, id="deferred-push", replace_existing=True)
    scheduler.add_job(prune_push_subscriptions, "interval", hours=6, id="push-prune", replace_existing=True)
    scheduler.start()
    logger.info("Scheduler iniciado")
    return scheduler


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler detenido")
