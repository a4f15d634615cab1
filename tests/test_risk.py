from datetime import datetime, timedelta, timezone

import pytest

from alerts import check_and_create_alerts
from database import to_iso
from ingest import ingest_readings
from risk import (
    evaluate_risks,
    generate_predictive_alerts,
    linear_trend,
    vapor_pressure_deficit,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def series(metric, values, step_minutes=15, now=NOW):
    start = now - timedelta(minutes=step_minutes * (len(values) - 1))
    return [
        {
            "sensor_type": metric,
            "value": value,
            "timestamp": to_iso(start + timedelta(minutes=step_minutes * i)),
        }
        for i, value in enumerate(values)
    ]


def store(db, readings, device_id="dev-1", user_id="user-1"):
    for reading in readings:
        db.insert_reading(dict(reading, user_id=user_id, device_id=device_id, unit="%"))


DRYING_SOIL = [40, 38, 36, 34, 32, 30, 28, 26, 24]


def test_linear_trend_slope_and_fit():
    trend = linear_trend(series("soilMoisture", DRYING_SOIL))
    assert trend.slope_per_hour == pytest.approx(-8)
    assert trend.latest_value == 24
    assert trend.r2 == pytest.approx(1)
    assert linear_trend(series("soilMoisture", [30, 31])) is None


def test_vapor_pressure_deficit():
    assert vapor_pressure_deficit(24, 50) == pytest.approx(1.492, abs=0.01)
    assert vapor_pressure_deficit(24, 100) == 0


def test_drying_soil_is_critical_irrigation_risk():
    risks = evaluate_risks(series("soilMoisture", DRYING_SOIL))
    assert [r.category for r in risks] == ["irrigation"]
    assert risks[0].score == 100
    assert risks[0].severity == "critical"


def test_rising_temperature_is_weather_stress():
    risks = evaluate_risks(series("temperature", [24, 25, 26, 27, 28, 29, 30, 31, 32]))
    assert [r.category for r in risks] == ["weather_stress"]
    assert risks[0].score == 60
    assert risks[0].severity == "warning"


def test_humid_room_is_disease_risk():
    readings = series("temperature", [24] * 9) + series("humidity", [78, 79, 80, 81, 82, 83, 84, 85, 86])
    risks = evaluate_risks(readings)
    assert [r.category for r in risks] == ["disease"]
    assert risks[0].severity == "critical"


def test_stable_conditions_and_short_history_have_no_risk():
    assert evaluate_risks(series("soilMoisture", [50] * 9)) == []
    assert evaluate_risks(series("soilMoisture", DRYING_SOIL[-5:])) == []


def test_predictive_alert_created_and_debounced(db):
    store(db, series("soilMoisture", DRYING_SOIL))

    created = generate_predictive_alerts(db, "user-1", "dev-1", debounce_seconds=300, now=NOW)
    assert len(created) == 1
    alert = created[0]
    assert alert["origin"] == "predictive"
    assert alert["risk_category"] == "irrigation"
    assert alert["type"] == "soilMoisture"
    assert alert["severity"] == "critical"
    assert alert["based_on"] == ["soilMoisture_trend"]

    later = NOW + timedelta(minutes=1)
    assert generate_predictive_alerts(db, "user-1", "dev-1", debounce_seconds=300, now=later) == []

    db.update_alert("user-1", alert["id"], {"is_resolved": True})
    again = generate_predictive_alerts(db, "user-1", "dev-1", debounce_seconds=300, now=later)
    assert len(again) == 1


def test_predictive_alerts_filtered_by_category(db):
    store(db, series("soilMoisture", DRYING_SOIL))
    assert generate_predictive_alerts(db, "user-1", "dev-1", categories=["disease"], now=NOW) == []
    assert generate_predictive_alerts(db, "user-1", "other-dev", now=NOW) == []


def test_predictive_alert_does_not_debounce_reactive_alert(db):
    store(db, series("soilMoisture", DRYING_SOIL))
    generate_predictive_alerts(db, "user-1", "dev-1", now=NOW)

    reading = {"id": 1, "sensor_type": "soilMoisture", "value": 20, "unit": "%", "device_id": "dev-1"}
    reactive = check_and_create_alerts(db, "user-1", [reading], now=NOW)
    assert [a["origin"] for a in reactive] == ["reactive"]


def test_ingest_adds_predictive_alerts(db):
    readings = [
        {"type": r["sensor_type"], "value": r["value"], "timestamp": r["timestamp"]}
        for r in series("soilMoisture", DRYING_SOIL)
    ]
    result = ingest_readings(db, "user-1", "dev-1", readings, now=NOW)

    origins = sorted(a["origin"] for a in result.alerts)
    assert origins == ["predictive", "reactive"]
