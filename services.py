import logging
import sqlite3
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query

from auth import generate_device_id, generate_device_token, get_current_user, hash_token
from config import settings
from database import DatabaseManager, get_db, to_iso, utcnow
from ingest import forget_device, ingest_readings, parse_line
from logic import analyze_sensor_trends, assistant
from models import DeviceCreate, SensorBatch, Timeframe
from push import PushDispatcher
from realtime import broadcast_alerts, broadcast_sensor_update
from reports import aggregate_analytics

logger = logging.getLogger("agronex_api.sensors")

router = APIRouter(tags=["sensores"])


def dispatch_alert_pushes(db: DatabaseManager, alerts: List[dict]):
    """Envía por push las alertas recién creadas (se ejecuta en segundo plano)."""
    dispatcher = PushDispatcher(db)
    for alert in alerts:
        result = dispatcher.notify_alert(alert)
        logger.info(f"Push de alerta {alert['id']}: {result.status}")


def _batch_readings(batch: SensorBatch):
    if batch.readings:
        return [r.model_dump() for r in batch.readings]
    if batch.line:
        return parse_line(batch.line)
    return []


async def process_batch(db, user_id, device_id, batch: SensorBatch, background_tasks: BackgroundTasks):
    readings = _batch_readings(batch)
    if not readings:
        raise HTTPException(status_code=400, detail="No se recibieron lecturas válidas")

    result = ingest_readings(
        db,
        user_id,
        device_id,
        readings,
        batch_timestamp=batch.timestamp,
        room_id=batch.room_id,
    )
    if result.received == 0:
        raise HTTPException(status_code=400, detail="No se recibieron lecturas válidas")

    await broadcast_sensor_update(user_id, result.dashboard)
    if result.alerts:
        await broadcast_alerts(user_id, result.alerts)
        background_tasks.add_task(dispatch_alert_pushes, db, result.alerts)

    if result.analysis_due and assistant.available:
        background_tasks.add_task(analyze_sensor_trends, db, assistant, user_id)
        logger.info("Análisis programado en segundo plano")

    return {
        "message": "Datos recibidos correctamente",
        "device_id": device_id,
        "saved": len(result.saved),
        "duplicates_ignored": result.duplicates_ignored,
        "alerts": [alert["id"] for alert in result.alerts],
        "timestamp": result.dashboard.get("timestamp"),
    }


# Endpoints para el ESP32
@router.post("/api/iot/ingest", status_code=201)
async def iot_ingest(
    batch: SensorBatch,
    background_tasks: BackgroundTasks,
    x_device_token: Optional[str] = Header(None),
    x_iot_key: Optional[str] = Header(None),
    db: DatabaseManager = Depends(get_db),
):
    """Recibe lecturas del ESP32 autenticado con token de dispositivo o clave IoT"""
    device_token = x_device_token or batch.device_token
    api_key = x_iot_key or batch.api_key

    if device_token:
        device = db.find_device_by_token_hash(hash_token(device_token))
        if not device:
            raise HTTPException(status_code=401, detail="Token de dispositivo inválido")
        user_id, device_id = device["user_id"], device["device_id"]
    elif api_key:
        if not settings.iot_api_key:
            logger.error("IOT_API_KEY no configurada en el servidor")
            raise HTTPException(status_code=500, detail="Ingesta IoT no configurada")
        if api_key != settings.iot_api_key:
            raise HTTPException(status_code=401, detail="Clave IoT inválida")
        if not batch.device_id or not batch.user_id:
            raise HTTPException(
                status_code=400, detail="Se requieren device_id y user_id con la clave IoT"
            )
        user_id, device_id = batch.user_id, batch.device_id
    else:
        raise HTTPException(status_code=401, detail="Se requiere autenticación del dispositivo")

    return await process_batch(db, user_id, device_id, batch, background_tasks)


# Endpoints para el Frontend
@router.post("/api/sensors/data", status_code=201)
async def create_sensor_data(
    batch: SensorBatch,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Registra lecturas enviadas por un cliente autenticado"""
    if not batch.device_id:
        raise HTTPException(status_code=400, detail="device_id es obligatorio")
    return await process_batch(db, user_id, batch.device_id, batch, background_tasks)


@router.get("/api/sensors/data")
async def get_sensor_data(
    sensor_type: Optional[str] = None,
    device_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Obtiene el historial de lecturas con filtros y paginación"""
    items, total = db.list_readings(user_id, sensor_type, device_id, start, end, limit, offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.delete("/api/sensors/data")
async def purge_sensor_data(
    device_id: str = Query(..., min_length=1),
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Elimina todas las lecturas de un dispositivo"""
    deleted = db.purge_readings(user_id, device_id)
    logger.info(f"Lecturas eliminadas de {device_id}: {deleted}")
    return {"message": "Lecturas eliminadas", "deleted": deleted}


@router.get("/api/sensors/latest")
async def get_latest_readings(
    device_id: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Última lectura de cada sensor, lista para el dashboard"""
    readings = db.latest_readings(user_id, device_id)
    dashboard = {r["sensor_type"]: r["value"] for r in readings}
    if readings:
        dashboard["last_updated"] = max(r["timestamp"] for r in readings)
    return {"readings": readings, "dashboard": dashboard}


@router.get("/api/sensors/stats")
async def get_sensor_stats(
    hours: int = Query(24, ge=1, le=24 * 30),
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Estadísticas por sensor y por hora"""
    since = to_iso(utcnow() - timedelta(hours=hours))
    return db.reading_stats(user_id, since)


@router.get("/api/sensors/analytics")
async def get_sensor_analytics(
    timeframe: Timeframe = "24h",
    types: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Agregados por fecha, hora y tipo de sensor"""
    type_list = [t.strip() for t in types.split(",") if t.strip()] if types else None
    rows = aggregate_analytics(db, user_id, timeframe, type_list)
    return {"timeframe": timeframe, "data": rows}


@router.get("/api/sensors/trends")
async def get_trends(
    limit: int = Query(5, ge=1, le=50),
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Obtiene los análisis de tendencias más recientes."""
    return db.latest_trend_analyses(user_id, limit)


@router.post("/api/sensors/analyze-now", status_code=202)
async def analyze_now(
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Fuerza un análisis inmediato de los datos."""
    if not assistant.available:
        raise HTTPException(status_code=503, detail="Asistente de IA no configurado")
    background_tasks.add_task(analyze_sensor_trends, db, assistant, user_id)
    return {"message": "Análisis iniciado en segundo plano"}


# Dispositivos
@router.get("/api/devices")
async def list_devices(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    return db.list_devices(user_id)


@router.post("/api/devices", status_code=201)
async def create_device(
    device: DeviceCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Registra un dispositivo. El token solo se devuelve en esta respuesta."""
    token = generate_device_token()
    try:
        created = db.create_device(
            user_id,
            device.name,
            device.device_id or generate_device_id(),
            hash_token(token),
            token[-4:],
            device.location,
            device.notes,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Ya existe un dispositivo con ese device_id")

    created.pop("token_hash", None)
    logger.info(f"Dispositivo registrado: {created['device_id']} (usuario {user_id})")
    return {"device": created, "token": token}


@router.post("/api/devices/{device_id}/rotate-token")
async def rotate_device_token(
    device_id: str,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    token = generate_device_token()
    if not db.update_device_token(user_id, device_id, hash_token(token), token[-4:]):
        raise HTTPException(status_code=404, detail="Dispositivo no encontrado")
    return {"device_id": device_id, "token": token}


@router.delete("/api/devices/{device_id}")
async def delete_device(
    device_id: str,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    if not db.delete_device(user_id, device_id):
        raise HTTPException(status_code=404, detail="Dispositivo no encontrado")
    forget_device(device_id)
    return {"message": "Dispositivo eliminado"}
