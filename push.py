"""Envío de notificaciones Web Push a las suscripciones de cada usuario."""
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from pywebpush import WebPushException, webpush

from config import settings
from database import to_iso, utcnow
from preferences import evaluate_push_delivery, get_notification_preferences
from severity import to_canonical

logger = logging.getLogger("agronex_api.push")

# Códigos con los que el servicio push indica que la suscripción ya no existe
GONE_STATUS_CODES = (404, 410)


@dataclass
class PushResult:
    sent: int = 0
    failed: int = 0
    deferred: bool = False
    skipped: bool = False
    message: Optional[str] = None

    @property
    def status(self):
        if self.deferred:
            return "deferred"
        if self.sent:
            return "sent"
        if self.failed:
            return "failed"
        return "skipped"

    def to_dict(self):
        return {
            "sent": self.sent,
            "failed": self.failed,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "message": self.message,
            "status": self.status,
        }


def _status_code(error: WebPushException):
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


class PushDispatcher:
    def __init__(self, db):
        self.db = db

    def _send_one(self, subscription: Dict, payload: str):
        webpush(
            subscription_info={
                "endpoint": subscription["endpoint"],
                "keys": {"p256dh": subscription.get("p256dh"), "auth": subscription.get("auth")},
            },
            data=payload,
            vapid_private_key=settings.vapid_private_key,
            vapid_claims={"sub": settings.vapid_subject},
        )

    def send_to_user(self, user_id, payload: Dict, severity="warning", now=None, respect_preferences=True):
        """Envía un payload a todas las suscripciones del usuario si sus preferencias lo permiten."""
        severity = to_canonical(severity or payload.get("severity") or "warning")
        if respect_preferences:
            prefs = get_notification_preferences(self.db, user_id)
            decision = evaluate_push_delivery(prefs, severity, now)
            if not decision.allowed:
                return PushResult(
                    deferred=decision.deferred,
                    skipped=True,
                    message=decision.reason or "Push bloqueado por las preferencias del usuario",
                )

        subscriptions = self.db.list_subscriptions(user_id)
        if not subscriptions:
            return PushResult(skipped=True, message="No hay suscripciones push para este usuario")
        if not settings.vapid_configured:
            return PushResult(
                failed=len(subscriptions), message="Claves VAPID no configuradas en el servidor"
            )

        serialized = json.dumps(payload)
        result = PushResult()
        for subscription in subscriptions:
            try:
                self._send_one(subscription, serialized)
                result.sent += 1
            except WebPushException as e:
                result.failed += 1
                code = _status_code(e)
                logger.warning(f"Fallo push a {subscription['endpoint']}: {code or e}")
                if code in GONE_STATUS_CODES:
                    self.db.delete_subscription_by_id(subscription["id"])
        return result

    def notify_alert(self, alert: Dict, now=None):
        """Envía una alerta y registra el resultado en su push_status."""
        payload = {
            "title": alert["title"],
            "body": alert["message"],
            "severity": alert["severity"],
            "alertId": alert["id"],
            "url": "/alerts",
        }
        try:
            result = self.send_to_user(alert["user_id"], payload, alert["severity"], now)
        except Exception as e:
            logger.error(f"Error enviando push de la alerta {alert['id']}: {e}")
            result = PushResult(failed=1, message=str(e))
        self.db.set_push_status(alert["id"], result.status)
        return result

    def deliver_deferred(self, now=None, max_age_hours=24):
        """Reintenta las alertas aplazadas por horas de silencio."""
        now = now or utcnow()
        since = to_iso(now - timedelta(hours=max_age_hours))
        delivered = 0
        for alert in self.db.deferred_push_alerts(since):
            result = self.notify_alert(alert, now)
            if result.status == "sent":
                delivered += 1
        if delivered:
            logger.info(f"Entregadas {delivered} notificaciones push aplazadas")
        return delivered

    def prune_stale_subscriptions(self, limit=200):
        """Elimina suscripciones que el servicio push ya no reconoce."""
        results = {"checked": 0, "removed": 0}
        if not settings.vapid_configured:
            logger.info("Limpieza de suscripciones omitida: claves VAPID no configuradas")
            return results

        ping = json.dumps({"title": "ping", "body": ""})
        for subscription in self.db.sample_subscriptions(limit):
            results["checked"] += 1
            try:
                self._send_one(subscription, ping)
            except WebPushException as e:
                if _status_code(e) in GONE_STATUS_CODES:
                    self.db.delete_subscription_by_id(subscription["id"])
                    results["removed"] += 1
        logger.info(f"Limpieza de suscripciones completada: {results}")
        return results
