import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool

from auth import get_current_user
from config import settings
from database import DatabaseManager, get_db
from models import NotificationSettings, SubscribeRequest, SystemSettings, UnsubscribeRequest
from push import PushDispatcher

logger = logging.getLogger("agronex_api.notifications")

router = APIRouter(tags=["notificaciones"])


# Notificaciones push
@router.get("/api/notifications/vapid-public-key")
async def vapid_public_key():
    if not settings.vapid_public_key:
        raise HTTPException(status_code=503, detail="Claves VAPID no configuradas")
    return {"public_key": settings.vapid_public_key}


@router.post("/api/notifications/subscribe", status_code=201)
async def subscribe(
    request: SubscribeRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    subscription = request.subscription
    db.upsert_subscription(
        user_id, subscription.endpoint, subscription.keys.p256dh, subscription.keys.auth
    )
    logger.info(f"Suscripción push registrada para {user_id}")
    return {"message": "Suscripción guardada"}


@router.post("/api/notifications/unsubscribe")
async def unsubscribe(
    request: UnsubscribeRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    deleted = db.delete_subscription(user_id, request.endpoint)
    return {"message": "Suscripción eliminada", "deleted": deleted}


@router.get("/api/notifications/subscriptions")
async def list_subscriptions(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    return [
        {"id": s["id"], "endpoint": s["endpoint"], "created_at": s["created_at"]}
        for s in db.list_subscriptions(user_id)
    ]


@router.post("/api/notifications/send-test")
async def send_test(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    """Envía una notificación de prueba a todas las suscripciones del usuario"""
    payload = {
        "title": "AgroNex",
        "body": "Notificación de prueba",
        "severity": "info",
        "url": "/settings",
    }
    result = await run_in_threadpool(
        PushDispatcher(db).send_to_user, user_id, payload, "info", respect_preferences=False
    )
    return result.to_dict()


# Ajustes de usuario
@router.get("/api/settings")
async def get_settings(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    return db.get_user_settings(user_id)


@router.put("/api/settings/notifications")
async def update_notification_settings(
    changes: NotificationSettings,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    return db.update_user_settings(
        user_id, "notifications", changes.model_dump(exclude_unset=True)
    )


@router.put("/api/settings/system")
async def update_system_settings(
    changes: SystemSettings,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    # alert_debounce_seconds a null vuelve al valor del servidor
    return db.update_user_settings(user_id, "system", changes.model_dump(exclude_unset=True))
