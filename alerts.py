"""Evaluación de umbrales y creación de alertas.

Una lectura fuera del rango [min, max] de su umbral genera como mucho una
alerta por métrica y sala dentro de la ventana de debounce.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from config import settings
from database import to_iso, utcnow
from severity import severity_rank, to_canonical

logger = logging.getLogger("agronex_api.alerts")

# Rangos por defecto cuando el usuario no definió umbrales para la métrica
DEFAULT_THRESHOLDS = {
    "temperature": {"min": 18, "max": 28},
    "humidity": {"min": 40, "max": 80},
    "co2": {"min": 300, "max": 600},
    "light": {"min": 200, "max": 800},
    "soilMoisture": {"min": 30, "max": 70},
}

# Margen relativo fuera del rango que separa "warning" de "critical"/"danger"
MARGIN = 0.2


@dataclass
class Violation:
    threshold: Dict
    severity: str
    direction: str  # "low" | "high"


def _beyond_margin(value, low, high):
    if low is not None and value < low * (1 - MARGIN):
        return True
    if high is not None and value > high * (1 + MARGIN):
        return True
    return False


def determine_status(metric, value):
    """Estado de una lectura respecto al rango por defecto: safe, warning o danger."""
    threshold = DEFAULT_THRESHOLDS.get(metric)
    if threshold is None:
        return "safe"
    low, high = threshold["min"], threshold["max"]
    if low <= value <= high:
        return "safe"
    if _beyond_margin(value, low, high):
        return "danger"
    return "warning"


def default_threshold(metric) -> Optional[Dict]:
    bounds = DEFAULT_THRESHOLDS.get(metric)
    if bounds is None:
        return None
    return {
        "id": None,
        "name": "default",
        "metric": metric,
        "room_id": None,
        "min": bounds["min"],
        "max": bounds["max"],
        "severity": None,
    }


def select_thresholds(user_thresholds: List[Dict], metric, room_id=None) -> List[Dict]:
    """Elige los umbrales aplicables: primero los de la sala, luego los globales
    del usuario y por último el rango por defecto."""
    enabled = [t for t in user_thresholds if t.get("enabled", True) and t["metric"] == metric]
    if room_id is not None:
        scoped = [t for t in enabled if t.get("room_id") == room_id]
        if scoped:
            return scoped
    unscoped = [t for t in enabled if t.get("room_id") is None]
    if unscoped:
        return unscoped
    fallback = default_threshold(metric)
    return [fallback] if fallback else []


def classify_severity(value, threshold):
    if threshold.get("severity"):
        return to_canonical(threshold["severity"])
    if _beyond_margin(value, threshold.get("min"), threshold.get("max")):
        return "critical"
    return "warning"


def evaluate_reading(value, thresholds: List[Dict]) -> Optional[Violation]:
    """Compara un valor con los umbrales; devuelve la violación más severa o None."""
    violations = []
    for threshold in thresholds:
        low, high = threshold.get("min"), threshold.get("max")
        if low is not None and value < low:
            direction = "low"
        elif high is not None and value > high:
            direction = "high"
        else:
            continue
        violations.append(
            Violation(threshold, classify_severity(value, threshold), direction)
        )
    if not violations:
        return None
    return max(violations, key=lambda v: severity_rank(v.severity))


def resolve_debounce_seconds(user_settings: Optional[Dict]) -> int:
    system = (user_settings or {}).get("system") or {}
    configured = system.get("alert_debounce_seconds")
    if configured is None:
        return settings.alert_debounce_seconds
    return int(configured)


def build_alert(user_id, reading: Dict, violation: Violation, now) -> Dict:
    metric = reading["sensor_type"]
    threshold = violation.threshold
    value = reading["value"]
    unit = reading.get("unit") or ""
    label = "demasiado bajo" if violation.direction == "low" else "demasiado alto"

    title = f"Alerta de {metric}"
    if threshold.get("id") is not None:
        title = f"{threshold['name']}: alerta de {metric}"
    message = f"{metric} {label}: {value} {unit}".strip()
    if reading.get("room_id"):
        message += f" en {reading['room_id']}"

    return {
        "user_id": user_id,
        "type": metric,
        "severity": violation.severity,
        "origin": "reactive",
        "title": title[:100],
        "message": message[:500],
        "value": value,
        "unit": unit,
        "threshold_id": threshold.get("id"),
        "threshold_min": threshold.get("min"),
        "threshold_max": threshold.get("max"),
        "reading_id": reading.get("id"),
        "device_id": reading.get("device_id"),
        "room_id": reading.get("room_id"),
        "push_status": "pending",
        "created_at": to_iso(now),
    }


def check_and_create_alerts(db, user_id, readings: List[Dict], debounce_seconds=None, now=None):
    """Evalúa las lecturas guardadas y crea las alertas que correspondan.

    Args:
        db: DatabaseManager
        user_id: dueño de las lecturas
        readings: lecturas ya almacenadas (con sensor_type, value, room_id...)
        debounce_seconds: ventana mínima entre alertas de la misma métrica y sala
        now: instante de evaluación (por defecto, ahora en UTC)

    Returns:
        list: alertas creadas
    """
    now = now or utcnow()
    if debounce_seconds is None:
        debounce_seconds = settings.alert_debounce_seconds
    since = to_iso(now - timedelta(seconds=debounce_seconds))

    thresholds_by_metric = {}
    created = []

    for reading in readings:
        metric = reading.get("sensor_type")
        if metric not in DEFAULT_THRESHOLDS:
            continue

        if metric not in thresholds_by_metric:
            thresholds_by_metric[metric] = db.enabled_thresholds(user_id, metric)
        candidates = select_thresholds(thresholds_by_metric[metric], metric, reading.get("room_id"))

        violation = evaluate_reading(reading["value"], candidates)
        if violation is None:
            continue

        if debounce_seconds > 0:
            recent = db.find_recent_alert(user_id, metric, reading.get("room_id"), since)
            if recent is not None:
                logger.debug(
                    f"Alerta de {metric} omitida por debounce (alerta previa {recent['id']})"
                )
                continue

        alert = db.create_alert(build_alert(user_id, reading, violation, now))
        logger.info(
            f"Alerta {alert['id']} creada: {alert['type']} {alert['severity']} "
            f"valor={alert['value']} usuario={user_id}"
        )
        created.append(alert)

    return created
