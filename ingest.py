"""Ingesta de lecturas: normalización, deduplicado y disparo de alertas."""
import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from alerts import check_and_create_alerts, determine_status, resolve_debounce_seconds
from config import settings
from database import to_iso, utcnow
from risk import generate_predictive_alerts

logger = logging.getLogger("agronex_api.ingest")

DEFAULT_UNITS = {
    "temperature": "C",
    "humidity": "%",
    "co2": "ppm",
    "light": "lux",
    "soilMoisture": "%",
}

# Un dispositivo se considera reconectado si no envió datos en este intervalo
DEVICE_ONLINE_WINDOW_SECONDS = 2 * 60

_device_last_seen: Dict[str, float] = {}
_batches_since_analysis: Dict[str, int] = defaultdict(int)


def normalize_type(sensor_type) -> Optional[str]:
    if not sensor_type:
        return None
    t = str(sensor_type).lower()
    if t in ("soil", "soilmoisture", "soil_moisture"):
        return "soilMoisture"
    if t == "gas":
        return "co2"
    if t in ("temperature", "humidity", "co2", "light"):
        return t
    return None


def parse_ingestion_timestamp(raw, fallback=None) -> datetime:
    """Convierte el timestamp de una lectura; si no es válido usa el del lote o ahora."""
    for candidate in (raw, fallback):
        if candidate is None or candidate == "":
            continue
        try:
            if isinstance(candidate, datetime):
                parsed = candidate
            elif isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
                # Epoch en milisegundos, como lo envía el ESP32
                parsed = datetime.fromtimestamp(candidate / 1000, tz=timezone.utc)
            else:
                parsed = datetime.fromisoformat(str(candidate).strip().replace("Z", "+00:00"))
        except (ValueError, OverflowError, OSError):
            return utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return utcnow()


def normalize_reading(reading: Optional[Dict]) -> Optional[Dict]:
    if not reading:
        return None
    sensor_type = normalize_type(reading.get("type"))
    if not sensor_type:
        return None

    try:
        value = float(reading.get("value"))
    except (TypeError, ValueError):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None

    unit = str(reading.get("unit") or "")
    if sensor_type == "co2" and unit == "%":
        value = value * 100
        unit = "ppm"
    if sensor_type == "light" and unit == "%":
        value = value * 10
        unit = "lux"
    if not unit:
        unit = DEFAULT_UNITS[sensor_type]

    metadata = reading.get("metadata") or {}
    timestamp = reading.get("timestamp")
    if timestamp is None:
        timestamp = reading.get("ts")
    if timestamp is None:
        timestamp = metadata.get("timestamp")

    return {
        "type": sensor_type,
        "value": value,
        "unit": unit,
        "timestamp": timestamp,
        "room_id": reading.get("room_id") or reading.get("location"),
        "metadata": metadata,
    }


LINE_PATTERNS = {
    "temperature": re.compile(r"Temp:\s*([0-9.]+)", re.IGNORECASE),
    "humidity": re.compile(r"Hum:\s*([0-9.]+)", re.IGNORECASE),
    "gas": re.compile(r"Gas:\s*([0-9.]+)%", re.IGNORECASE),
    "light_off": re.compile(r"Light:\s*OFF", re.IGNORECASE),
    "light_on": re.compile(r"Light:\s*ON\s*([0-9.]+)%", re.IGNORECASE),
    "soil": re.compile(r"Soil:\s*([0-9.]+)%", re.IGNORECASE),
}


def parse_line(line: str) -> List[Dict]:
    """Interpreta una línea serie del ESP32, p. ej. 'Temp: 24.5 Hum: 60 Soil: 33%'."""
    readings = []

    def _number(match):
        try:
            return float(match.group(1))
        except ValueError:
            return None

    temp = LINE_PATTERNS["temperature"].search(line)
    hum = LINE_PATTERNS["humidity"].search(line)
    gas = LINE_PATTERNS["gas"].search(line)
    light_off = LINE_PATTERNS["light_off"].search(line)
    light_on = LINE_PATTERNS["light_on"].search(line)
    soil = LINE_PATTERNS["soil"].search(line)

    if temp and _number(temp) is not None:
        readings.append({"type": "temperature", "value": _number(temp), "unit": "C"})
    if hum and _number(hum) is not None:
        readings.append({"type": "humidity", "value": _number(hum), "unit": "%"})
    if gas and _number(gas) is not None:
        readings.append({"type": "co2", "value": _number(gas) * 100, "unit": "ppm"})
    if light_off:
        readings.append({"type": "light", "value": 0.0, "unit": "lux"})
    if light_on and _number(light_on) is not None:
        readings.append({"type": "light", "value": _number(light_on) * 10, "unit": "lux"})
    if soil and _number(soil) is not None:
        readings.append({"type": "soilMoisture", "value": _number(soil), "unit": "%"})

    return readings


@dataclass
class IngestResult:
    saved: List[Dict] = field(default_factory=list)
    received: int = 0
    alerts: List[Dict] = field(default_factory=list)
    dashboard: Dict = field(default_factory=dict)
    analysis_due: bool = False

    @property
    def duplicates_ignored(self):
        return self.received - len(self.saved)


def _prune_device_last_seen(now_ts):
    stale = [
        device_id
        for device_id, seen in _device_last_seen.items()
        if now_ts - seen > DEVICE_ONLINE_WINDOW_SECONDS
    ]
    for device_id in stale:
        del _device_last_seen[device_id]


def mark_device_seen(db, device_id, user_id, now=None):
    now_ts = time.time()
    last_seen = _device_last_seen.get(device_id)
    _prune_device_last_seen(now_ts)
    if last_seen is None or now_ts - last_seen > DEVICE_ONLINE_WINDOW_SECONDS:
        logger.info(f"ESP conectado: device_id={device_id} user_id={user_id}")
    _device_last_seen[device_id] = now_ts
    db.touch_device(device_id, to_iso(now or utcnow()))


def forget_device(device_id):
    """Olvida el estado en memoria de un dispositivo eliminado."""
    _device_last_seen.pop(device_id, None)


def register_batch(user_id) -> bool:
    """Cuenta lotes por usuario; devuelve True cuando toca un análisis automático."""
    every = settings.analysis_every_n_batches
    if every <= 0:
        return False
    _batches_since_analysis[user_id] += 1
    if _batches_since_analysis[user_id] >= every:
        del _batches_since_analysis[user_id]
        logger.info(f"Se alcanzó umbral de {every} lotes para {user_id} - Análisis pendiente")
        return True
    return False


def ingest_readings(db, user_id, device_id, readings: List[Dict], batch_timestamp=None, room_id=None, now=None):
    """Normaliza, guarda y evalúa un lote de lecturas.

    Las lecturas repetidas (mismo tipo y timestamp) se ignoran, tanto dentro del
    lote como frente a las ya almacenadas. Solo las lecturas nuevas se evalúan
    contra los umbrales.
    """
    now = now or utcnow()
    normalized = [r for r in (normalize_reading(r) for r in readings) if r]
    result = IngestResult(received=len(normalized))
    if not normalized:
        return result

    seen_keys = set()
    for reading in normalized:
        timestamp = parse_ingestion_timestamp(reading["timestamp"], batch_timestamp)
        key = (reading["type"], timestamp)
        if key in seen_keys:
            continue
        seen_keys.add(key)

        doc = {
            "user_id": user_id,
            "device_id": device_id,
            "sensor_type": reading["type"],
            "room_id": reading["room_id"] or room_id,
            "value": reading["value"],
            "unit": reading["unit"],
            "status": determine_status(reading["type"], reading["value"]),
            "battery_level": reading["metadata"].get("batteryLevel"),
            "signal_strength": reading["metadata"].get("signalStrength"),
            "timestamp": to_iso(timestamp),
        }
        reading_id = db.insert_reading(doc)
        if reading_id is not None:
            result.saved.append(dict(doc, id=reading_id))

    mark_device_seen(db, device_id, user_id, now)

    if result.saved:
        user_settings = db.get_user_settings(user_id)
        debounce_seconds = resolve_debounce_seconds(user_settings)
        result.alerts = check_and_create_alerts(
            db, user_id, result.saved, debounce_seconds=debounce_seconds, now=now
        )
        if settings.predictive_alerts:
            result.alerts += generate_predictive_alerts(
                db, user_id, device_id, debounce_seconds=debounce_seconds, now=now
            )
        result.analysis_due = register_batch(user_id)

    dashboard = {r["type"]: r["value"] for r in normalized}
    dashboard["device_id"] = device_id
    dashboard["timestamp"] = to_iso(now)
    dashboard["last_updated"] = dashboard["timestamp"]
    result.dashboard = dashboard

    logger.info(
        f"Lote de {device_id}: {len(result.saved)} guardadas, "
        f"{result.duplicates_ignored} duplicadas, {len(result.alerts)} alertas"
    )
    return result
