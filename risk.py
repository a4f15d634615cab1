"""Alertas predictivas a partir de la tendencia reciente de cada sensor.

Se ajusta una recta por mínimos cuadrados a las lecturas de las últimas horas
de un dispositivo y se proyecta el valor a unas horas vista. Hay tres
categorías de riesgo: riego, estrés climático y enfermedad.
"""
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from alerts import DEFAULT_THRESHOLDS
from database import parse_iso, to_iso, utcnow
from severity import clamp_confidence, severity_from_risk_score

logger = logging.getLogger("agronex_api.risk")

LOOKBACK_MINUTES = 180
MIN_READINGS = 8
MIN_SERIES = 4

# Horizonte de proyección por categoría, en minutos
CATEGORY_WINDOWS = {
    "irrigation": 240,
    "weather_stress": 180,
    "disease": 180,
}

RISK_CATEGORIES = tuple(CATEGORY_WINDOWS)


@dataclass
class Trend:
    slope_per_minute: float
    latest_value: float
    sample_count: int
    r2: float

    @property
    def slope_per_hour(self):
        return self.slope_per_minute * 60

    def project(self, minutes):
        return self.latest_value + self.slope_per_minute * minutes


@dataclass
class RiskCandidate:
    category: str
    metric: str
    score: int
    confidence: int
    window_minutes: int
    title: str
    message: str
    value: float
    threshold: Dict
    based_on: List[str] = field(default_factory=list)

    @property
    def severity(self):
        return severity_from_risk_score(self.score)


def linear_trend(series: List[Dict]) -> Optional[Trend]:
    """Recta de mínimos cuadrados sobre (minutos desde la primera lectura, valor)."""
    if len(series) < 3:
        return None
    oldest = parse_iso(series[0]["timestamp"])
    points = []
    for reading in series:
        try:
            y = float(reading["value"])
        except (TypeError, ValueError):
            continue
        if not math.isfinite(y):
            continue
        x = (parse_iso(reading["timestamp"]) - oldest).total_seconds() / 60
        points.append((x, y))
    if len(points) < 3:
        return None

    n = len(points)
    sum_x = sum(x for x, _ in points)
    sum_y = sum(y for _, y in points)
    sum_xx = sum(x * x for x, _ in points)
    sum_xy = sum(x * y for x, y in points)
    denom = n * sum_xx - sum_x * sum_x
    if denom == 0:
        return None

    slope = (n * sum_xy - sum_x * sum_y) / denom
    intercept = (sum_y - slope * sum_x) / n
    mean_y = sum_y / n
    sst = sum((y - mean_y) ** 2 for _, y in points)
    sse = sum((y - (slope * x + intercept)) ** 2 for x, y in points)
    r2 = 0.0 if sst == 0 else max(0.0, min(1.0, 1 - sse / sst))

    return Trend(slope_per_minute=slope, latest_value=points[-1][1], sample_count=n, r2=r2)


def confidence_from_trend(trend: Optional[Trend]):
    if trend is None:
        return 0
    density = min(40, trend.sample_count * 4)
    fit = round(trend.r2 * 35)
    strength = min(20, abs(trend.slope_per_hour) * 4)
    return clamp_confidence(35 + density + fit + strength, 60)


def vapor_pressure_deficit(temperature, humidity):
    """Déficit de presión de vapor en kPa."""
    saturation = 0.61078 * math.exp((17.27 * temperature) / (temperature + 237.3))
    return round(saturation - saturation * (humidity / 100), 3)


def group_by_metric(readings: Iterable[Dict]) -> Dict[str, List[Dict]]:
    grouped = defaultdict(list)
    for reading in readings:
        if reading.get("sensor_type"):
            grouped[reading["sensor_type"]].append(reading)
    for series in grouped.values():
        series.sort(key=lambda r: r["timestamp"])
    return grouped


def _long_enough(series):
    return series is not None and len(series) >= MIN_SERIES


def irrigation_risk(grouped) -> Optional[RiskCandidate]:
    series = grouped.get("soilMoisture")
    if not _long_enough(series):
        return None
    trend = linear_trend(series)
    if trend is None:
        return None

    window = CATEGORY_WINDOWS["irrigation"]
    bounds = DEFAULT_THRESHOLDS["soilMoisture"]
    projected = trend.project(window)
    below_now = trend.latest_value < bounds["min"]
    below_soon = projected < bounds["min"]
    falling_fast = trend.slope_per_hour <= -1.5
    if not below_now and not (below_soon and falling_fast):
        return None

    span = bounds["max"] - bounds["min"]
    deficit_now = max(0, (bounds["min"] - trend.latest_value) / span)
    deficit_projected = max(0, (bounds["min"] - projected) / span)
    penalty = max(0, (-trend.slope_per_hour - 0.8) * 12)
    score = min(100, round(deficit_now * 35 + deficit_projected * 45 + penalty + 20))

    return RiskCandidate(
        category="irrigation",
        metric="soilMoisture",
        score=score,
        confidence=confidence_from_trend(trend),
        window_minutes=window,
        title="Riesgo de riego previsto",
        message=(
            f"La humedad del suelo se proyecta en {projected:.1f}% en ~{window} minutos "
            f"(mínimo seguro {bounds['min']}%)."
        ),
        value=round(trend.latest_value, 2),
        threshold=bounds,
        based_on=["soilMoisture_trend"],
    )


def _distance_outside(value, bounds, scale=1):
    if value > bounds["max"]:
        return (value - bounds["max"]) / scale
    if value < bounds["min"]:
        return (bounds["min"] - value) / scale
    return None


def weather_stress_risk(grouped) -> Optional[RiskCandidate]:
    temp_series = grouped.get("temperature")
    light_series = grouped.get("light")
    temp_trend = linear_trend(temp_series) if _long_enough(temp_series) else None
    light_trend = linear_trend(light_series) if _long_enough(light_series) else None
    if temp_trend is None and light_trend is None:
        return None

    window = CATEGORY_WINDOWS["weather_stress"]
    score = 0
    based_on = []
    if temp_trend is not None:
        dist = _distance_outside(temp_trend.project(window), DEFAULT_THRESHOLDS["temperature"])
        if dist is not None:
            score += min(60, dist * 10 + abs(temp_trend.slope_per_hour) * 4 + 20)
            based_on.append("temperature_trend")
    if light_trend is not None:
        dist = _distance_outside(light_trend.project(window), DEFAULT_THRESHOLDS["light"], scale=50)
        if dist is not None:
            score += min(45, dist * 8 + abs(light_trend.slope_per_hour) * 2 + 10)
            based_on.append("light_trend")

    score = min(100, round(score))
    if score < 35:
        return None

    dominant = "temperature" if temp_trend is not None else "light"
    dominant_trend = temp_trend or light_trend
    confidence = (confidence_from_trend(temp_trend) + confidence_from_trend(light_trend)) / 2
    return RiskCandidate(
        category="weather_stress",
        metric=dominant,
        score=score,
        confidence=clamp_confidence(confidence, 60),
        window_minutes=window,
        title="Riesgo de estrés climático previsto",
        message=(
            f"La tendencia indica posible estrés climático en ~{window} minutos. "
            "Revisa ventilación, sombreo y circulación de aire."
        ),
        value=round(dominant_trend.latest_value, 2),
        threshold=DEFAULT_THRESHOLDS[dominant],
        based_on=based_on,
    )


def disease_risk(grouped) -> Optional[RiskCandidate]:
    temp_series = grouped.get("temperature")
    humidity_series = grouped.get("humidity")
    if not _long_enough(temp_series) or not _long_enough(humidity_series):
        return None
    temp_trend = linear_trend(temp_series)
    humidity_trend = linear_trend(humidity_series)
    if temp_trend is None or humidity_trend is None:
        return None

    window = CATEGORY_WINDOWS["disease"]
    projected_humidity = humidity_trend.project(window)
    projected_vpd = vapor_pressure_deficit(temp_trend.project(window), projected_humidity)

    humid_pressure = max(0, projected_humidity - 82)
    vpd_pressure = max(0, 0.45 - projected_vpd) * 100
    humidity_rising = max(0, humidity_trend.slope_per_hour)
    score = min(100, round(humid_pressure * 2.8 + vpd_pressure * 0.8 + humidity_rising * 4))
    if score < 35 or projected_humidity < 80:
        return None

    confidence = (confidence_from_trend(temp_trend) + confidence_from_trend(humidity_trend)) / 2
    return RiskCandidate(
        category="disease",
        metric="humidity",
        score=score,
        confidence=clamp_confidence(confidence, 65),
        window_minutes=window,
        title="Riesgo de enfermedad previsto",
        message=(
            f"El patrón de humedad y VPD puede aumentar la presión de enfermedades "
            f"(HR proyectada {projected_humidity:.1f}%, VPD {projected_vpd:.2f} kPa)."
        ),
        value=round(humidity_trend.latest_value, 2),
        threshold=DEFAULT_THRESHOLDS["humidity"],
        based_on=["humidity_trend", "vpd"],
    )


def evaluate_risks(readings: List[Dict]) -> List[RiskCandidate]:
    if len(readings) < MIN_READINGS:
        return []
    grouped = group_by_metric(readings)
    candidates = (disease_risk(grouped), weather_stress_risk(grouped), irrigation_risk(grouped))
    return [c for c in candidates if c is not None]


def build_predictive_alert(user_id, device_id, candidate: RiskCandidate, now) -> Dict:
    return {
        "user_id": user_id,
        "type": candidate.metric,
        "severity": candidate.severity,
        "origin": "predictive",
        "title": candidate.title[:100],
        "message": candidate.message[:500],
        "value": candidate.value,
        "threshold_min": candidate.threshold.get("min"),
        "threshold_max": candidate.threshold.get("max"),
        "device_id": device_id,
        "risk_category": candidate.category,
        "risk_score": candidate.score,
        "confidence": candidate.confidence,
        "window_minutes": candidate.window_minutes,
        "based_on": candidate.based_on,
        "push_status": "pending",
        "created_at": to_iso(now),
    }


def generate_predictive_alerts(
    db, user_id, device_id, debounce_seconds=300, min_confidence=0, categories=None, now=None
):
    """Crea alertas predictivas para un dispositivo y devuelve las creadas.

    Una categoría no se repite mientras exista una alerta predictiva abierta
    de la misma categoría y dispositivo dentro de la ventana de debounce.
    """
    if not user_id or not device_id:
        return []
    now = now or utcnow()
    readings = db.recent_device_readings(
        user_id, device_id, to_iso(now - timedelta(minutes=LOOKBACK_MINUTES))
    )
    since = to_iso(now - timedelta(seconds=debounce_seconds))

    created = []
    for candidate in evaluate_risks(readings):
        if candidate.confidence < min_confidence:
            continue
        if categories and candidate.category not in categories:
            continue
        if debounce_seconds > 0 and db.find_recent_predictive_alert(
            user_id, device_id, candidate.category, since
        ):
            continue
        alert = db.create_alert(build_predictive_alert(user_id, device_id, candidate, now))
        logger.info(
            f"Alerta predictiva {candidate.category} ({alert['severity']}, riesgo {candidate.score}) "
            f"para {device_id}"
        )
        created.append(alert)
    return created
