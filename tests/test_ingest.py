from datetime import datetime, timedelta, timezone

import pytest

import ingest
from ingest import (
    forget_device,
    ingest_readings,
    normalize_reading,
    parse_ingestion_timestamp,
    parse_line,
    register_batch,
)


def test_parse_line_full():
    readings = parse_line("Temp: 24.5 Hum: 60 Gas: 4.2% Light: ON 45% Soil: 33%")
    by_type = {r["type"]: r for r in readings}

    assert by_type["temperature"]["value"] == 24.5
    assert by_type["humidity"]["value"] == 60
    assert by_type["co2"]["value"] == pytest.approx(420)
    assert by_type["co2"]["unit"] == "ppm"
    assert by_type["light"]["value"] == pytest.approx(450)
    assert by_type["soilMoisture"]["value"] == 33


def test_parse_line_light_off_and_partial():
    readings = parse_line("Light: OFF Temp: 19")
    assert {r["type"]: r["value"] for r in readings} == {"temperature": 19.0, "light": 0.0}
    assert parse_line("garbage") == []


def test_normalize_reading_units_and_aliases():
    co2 = normalize_reading({"type": "gas", "value": "5", "unit": "%"})
    assert co2["type"] == "co2"
    assert co2["value"] == 500
    assert co2["unit"] == "ppm"

    soil = normalize_reading({"type": "soil_moisture", "value": 40})
    assert soil["type"] == "soilMoisture"
    assert soil["unit"] == "%"

    light = normalize_reading({"type": "light", "value": 50, "unit": "%"})
    assert light["value"] == 500
    assert light["unit"] == "lux"


def test_normalize_reading_rejects_invalid():
    assert normalize_reading({"type": "pressure", "value": 1}) is None
    assert normalize_reading({"type": "temperature", "value": "abc"}) is None
    assert normalize_reading({"type": "temperature", "value": float("nan")}) is None
    assert normalize_reading(None) is None


def test_normalize_reading_room_and_timestamp_fallbacks():
    reading = normalize_reading(
        {"type": "temperature", "value": 20, "location": "room-a", "metadata": {"timestamp": 1}}
    )
    assert reading["room_id"] == "room-a"
    assert reading["timestamp"] == 1


def test_parse_ingestion_timestamp():
    assert parse_ingestion_timestamp(1700000000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert parse_ingestion_timestamp("2026-01-01T10:00:00Z") == datetime(2026, 1, 1, 10, tzinfo=timezone.utc)
    assert parse_ingestion_timestamp(None, "2026-01-01T10:00:00") == datetime(2026, 1, 1, 10, tzinfo=timezone.utc)

    parsed = parse_ingestion_timestamp("not a date")
    assert abs(datetime.now(timezone.utc) - parsed) < timedelta(seconds=5)


def test_ingest_dedupes_and_alerts(db):
    now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    readings = [
        {"type": "temperature", "value": 35, "timestamp": "2026-03-02T11:59:00Z"},
        {"type": "temperature", "value": 35, "timestamp": "2026-03-02T11:59:00Z"},
        {"type": "humidity", "value": 60, "timestamp": "2026-03-02T11:59:00Z"},
        {"type": "unknown", "value": 1},
    ]

    result = ingest_readings(db, "user-1", "dev-1", readings, now=now)

    assert result.received == 3
    assert len(result.saved) == 2
    assert result.duplicates_ignored == 1
    assert [a["type"] for a in result.alerts] == ["temperature"]
    assert result.dashboard["temperature"] == 35
    assert result.dashboard["device_id"] == "dev-1"

    again = ingest_readings(db, "user-1", "dev-1", readings[:1], now=now)
    assert again.saved == []
    assert again.alerts == []
    assert db.list_readings("user-1")[1] == 2


def test_ingest_uses_batch_room(db):
    result = ingest_readings(
        db, "user-1", "dev-1", [{"type": "humidity", "value": 55}], room_id="room-a"
    )
    assert result.saved[0]["room_id"] == "room-a"
    assert result.saved[0]["status"] == "safe"


def test_ingest_updates_device_last_seen(db):
    db.create_device("user-1", "Sensor", "dev-1", "hash", "abcd")
    ingest_readings(db, "user-1", "dev-1", [{"type": "humidity", "value": 55}])
    assert db.get_device("user-1", "dev-1")["last_seen_at"] is not None


def test_device_presence_is_pruned(db, monkeypatch):
    monkeypatch.setattr(ingest, "_device_last_seen", {"old-dev": 0.0})
    ingest_readings(db, "user-1", "dev-1", [{"type": "humidity", "value": 55}])
    assert set(ingest._device_last_seen) == {"dev-1"}

    forget_device("dev-1")
    assert ingest._device_last_seen == {}


def test_register_batch_clears_counter(test_settings, monkeypatch):
    monkeypatch.setattr(ingest, "_batches_since_analysis", ingest.defaultdict(int))
    monkeypatch.setattr(test_settings, "analysis_every_n_batches", 2)

    assert register_batch("user-1") is False
    assert register_batch("user-1") is True
    assert "user-1" not in ingest._batches_since_analysis
