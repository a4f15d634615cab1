import logging
import sqlite3
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from alerts import resolve_debounce_seconds
from auth import get_current_user
from database import DatabaseManager, get_db, to_iso, utcnow
from models import (
    AlertReadUpdate,
    AlertResolve,
    Metric,
    PredictiveAlertRequest,
    ThresholdCreate,
    ThresholdUpdate,
)
from realtime import broadcast_alerts
from risk import LOOKBACK_MINUTES, generate_predictive_alerts
from services import dispatch_alert_pushes
from severity import to_canonical

logger = logging.getLogger("agronex_api.alerts")

router = APIRouter(tags=["alertas"])


# Alertas
@router.get("/api/alerts")
async def list_alerts(
    severity: Optional[str] = None,
    type: Optional[str] = None,
    is_read: Optional[bool] = None,
    is_resolved: Optional[bool] = None,
    origin: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Lista las alertas del usuario, las más recientes primero"""
    if severity:
        severity = to_canonical(severity)
    items, total = db.list_alerts(
        user_id, severity, type, is_read, is_resolved, limit, offset, origin=origin
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/api/alerts/summary")
async def alerts_summary(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    return db.alert_summary(user_id)


@router.post("/api/alerts/predict")
async def predict_alerts(
    request: PredictiveAlertRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Evalúa las tendencias recientes de cada dispositivo y crea alertas predictivas"""
    now = utcnow()
    debounce_seconds = resolve_debounce_seconds(db.get_user_settings(user_id))
    since = to_iso(now - timedelta(minutes=LOOKBACK_MINUTES))

    created = []
    for device_id in db.recent_device_ids(user_id, since):
        created += generate_predictive_alerts(
            db,
            user_id,
            device_id,
            debounce_seconds=debounce_seconds,
            min_confidence=request.min_confidence,
            categories=request.categories,
            now=now,
        )

    if created:
        await broadcast_alerts(user_id, created)
        background_tasks.add_task(dispatch_alert_pushes, db, created)
    return {"count": len(created), "alerts": created}


@router.patch("/api/alerts/read-all")
async def mark_all_read(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    updated = db.mark_all_alerts_read(user_id)
    return {"message": "Alertas marcadas como leídas", "updated": updated}


@router.delete("/api/alerts/resolved")
async def clear_resolved(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    deleted = db.clear_resolved_alerts(user_id)
    return {"message": "Alertas resueltas eliminadas", "deleted": deleted}


@router.patch("/api/alerts/{alert_id}/read")
async def mark_read(
    alert_id: int,
    body: Optional[AlertReadUpdate] = None,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    is_read = body.is_read if body else True
    alert = db.update_alert(user_id, alert_id, {"is_read": is_read})
    if not alert:
        raise HTTPException(status_code=404, detail="Alerta no encontrada")
    return alert


@router.patch("/api/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: int,
    body: AlertResolve,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Resuelve (o reabre) una alerta registrando la acción tomada"""
    if body.is_resolved:
        fields = {
            "is_resolved": True,
            "is_read": True,
            "resolved_at": to_iso(utcnow()),
            "resolved_by": user_id,
            "action_taken": body.action_taken,
        }
    else:
        fields = {"is_resolved": False, "resolved_at": None, "resolved_by": None}

    alert = db.update_alert(user_id, alert_id, fields)
    if not alert:
        raise HTTPException(status_code=404, detail="Alerta no encontrada")
    return alert


@router.delete("/api/alerts/{alert_id}")
async def delete_alert(
    alert_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    if not db.delete_alert(user_id, alert_id):
        raise HTTPException(status_code=404, detail="Alerta no encontrada")
    return {"message": "Alerta eliminada"}


# Umbrales
@router.get("/api/thresholds")
async def list_thresholds(
    room_id: Optional[str] = None,
    metric: Optional[Metric] = None,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    return db.list_thresholds(user_id, room_id, metric)


@router.post("/api/thresholds", status_code=201)
async def create_threshold(
    threshold: ThresholdCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    try:
        created = db.create_threshold(user_id, threshold.model_dump())
    except sqlite3.IntegrityError:
        raise HTTPException(
            status_code=409, detail="Ya existe un umbral con ese nombre para la métrica y sala"
        )
    logger.info(f"Umbral creado: {created['name']} ({created['metric']})")
    return created


@router.put("/api/thresholds/{threshold_id}")
async def update_threshold(
    threshold_id: int,
    changes: ThresholdUpdate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    current = db.get_threshold(user_id, threshold_id)
    if not current:
        raise HTTPException(status_code=404, detail="Umbral no encontrado")

    fields = changes.model_dump(exclude_unset=True)
    low = fields.get("min", current["min"])
    high = fields.get("max", current["max"])
    if low is not None and high is not None and low > high:
        raise HTTPException(status_code=400, detail="min no puede ser mayor que max")

    try:
        return db.update_threshold(user_id, threshold_id, fields)
    except sqlite3.IntegrityError:
        raise HTTPException(
            status_code=409, detail="Ya existe un umbral con ese nombre para la métrica y sala"
        )


@router.delete("/api/thresholds/{threshold_id}")
async def delete_threshold(
    threshold_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    if not db.delete_threshold(user_id, threshold_id):
        raise HTTPException(status_code=404, detail="Umbral no encontrado")
    return {"message": "Umbral eliminado"}
