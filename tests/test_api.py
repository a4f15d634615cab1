import threading
from datetime import timedelta

import pytest

import logic
import reports
from database import to_iso, utcnow


def reading(sensor_type, value, timestamp):
    return {"type": sensor_type, "value": value, "timestamp": timestamp}


def test_root_lists_endpoints(client):
    response = client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["version"] == "1.0.0"
    assert any(e["path"] == "/api/iot/ingest" for e in body["endpoints"])


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok", "database": "ok"}


def test_requires_bearer_token(client):
    assert client.get("/api/alerts").status_code == 401
    bad = client.get("/api/alerts", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 403


def test_sensor_data_creates_alert_once(client, auth_headers):
    first = client.post(
        "/api/sensors/data",
        json={"device_id": "dev-1", "readings": [reading("temperature", 35, "2026-03-02T10:00:00Z")]},
        headers=auth_headers,
    )
    assert first.status_code == 201
    assert first.json()["saved"] == 1
    assert len(first.json()["alerts"]) == 1

    second = client.post(
        "/api/sensors/data",
        json={"device_id": "dev-1", "readings": [reading("temperature", 36, "2026-03-02T10:01:00Z")]},
        headers=auth_headers,
    )
    assert second.json()["alerts"] == []

    alerts = client.get("/api/alerts", headers=auth_headers).json()
    assert alerts["total"] == 1
    assert alerts["items"][0]["type"] == "temperature"


def test_sensor_data_in_range_no_alert(client, auth_headers):
    response = client.post(
        "/api/sensors/data",
        json={"device_id": "dev-1", "readings": [reading("humidity", 60, "2026-03-02T10:00:00Z")]},
        headers=auth_headers,
    )
    assert response.json()["alerts"] == []
    assert client.get("/api/alerts", headers=auth_headers).json()["total"] == 0


def test_sensor_data_validation(client, auth_headers):
    missing_device = client.post(
        "/api/sensors/data", json={"readings": [reading("humidity", 60, None)]}, headers=auth_headers
    )
    assert missing_device.status_code == 400
    empty = client.post("/api/sensors/data", json={"device_id": "dev-1"}, headers=auth_headers)
    assert empty.status_code == 400


def test_list_latest_and_purge(client, auth_headers):
    client.post(
        "/api/sensors/data",
        json={
            "device_id": "dev-1",
            "readings": [
                reading("humidity", 50, "2026-03-02T10:00:00Z"),
                reading("humidity", 55, "2026-03-02T10:05:00Z"),
                reading("temperature", 22, "2026-03-02T10:05:00Z"),
            ],
        },
        headers=auth_headers,
    )

    data = client.get("/api/sensors/data?sensor_type=humidity", headers=auth_headers).json()
    assert data["total"] == 2
    assert data["items"][0]["value"] == 55

    latest = client.get("/api/sensors/latest", headers=auth_headers).json()
    assert latest["dashboard"]["humidity"] == 55
    assert latest["dashboard"]["temperature"] == 22

    purged = client.delete("/api/sensors/data?device_id=dev-1", headers=auth_headers).json()
    assert purged["deleted"] == 3


def test_device_token_ingest(client, auth_headers):
    created = client.post("/api/devices", json={"name": "Invernadero 1"}, headers=auth_headers)
    assert created.status_code == 201
    token = created.json()["token"]
    device_id = created.json()["device"]["device_id"]
    assert "token_hash" not in created.json()["device"]

    response = client.post(
        "/api/iot/ingest",
        json={"line": "Temp: 24.5 Hum: 60 Soil: 33%", "timestamp": "2026-03-02T10:00:00Z"},
        headers={"x-device-token": token},
    )
    assert response.status_code == 201
    assert response.json()["device_id"] == device_id
    assert response.json()["saved"] == 3

    devices = client.get("/api/devices", headers=auth_headers).json()
    assert devices[0]["last_seen_at"] is not None


def test_rotated_token_replaces_old_one(client, auth_headers):
    created = client.post("/api/devices", json={"name": "Sala B", "device_id": "esp-b"}, headers=auth_headers)
    old_token = created.json()["token"]
    rotated = client.post("/api/devices/esp-b/rotate-token", headers=auth_headers).json()

    body = {"readings": [reading("humidity", 60, "2026-03-02T10:00:00Z")]}
    assert client.post("/api/iot/ingest", json=body, headers={"x-device-token": old_token}).status_code == 401
    assert client.post("/api/iot/ingest", json=body, headers={"x-device-token": rotated["token"]}).status_code == 201


def test_iot_ingest_auth(client, test_settings, monkeypatch):
    body = {"device_id": "esp-1", "user_id": "user-1", "line": "Temp: 30"}
    assert client.post("/api/iot/ingest", json=body).status_code == 401
    assert client.post("/api/iot/ingest", json=body, headers={"x-iot-key": "k"}).status_code == 500

    monkeypatch.setattr(test_settings, "iot_api_key", "k")
    assert client.post("/api/iot/ingest", json=body, headers={"x-iot-key": "wrong"}).status_code == 401
    no_user = client.post("/api/iot/ingest", json={"line": "Temp: 30"}, headers={"x-iot-key": "k"})
    assert no_user.status_code == 400

    ok = client.post("/api/iot/ingest", json=body, headers={"x-iot-key": "k"})
    assert ok.status_code == 201
    assert ok.json()["saved"] == 1


def test_thresholds_crud(client, auth_headers):
    invalid = client.post(
        "/api/thresholds", json={"name": "t", "metric": "temperature", "min": 30, "max": 20}, headers=auth_headers
    )
    assert invalid.status_code == 422

    created = client.post(
        "/api/thresholds",
        json={"name": "Flora", "metric": "temperature", "room_id": "room-a", "min": 20, "max": 26, "severity": "critical"},
        headers=auth_headers,
    )
    assert created.status_code == 201
    threshold_id = created.json()["id"]

    duplicate = client.post(
        "/api/thresholds",
        json={"name": "Flora", "metric": "temperature", "room_id": "room-a", "min": 20, "max": 26},
        headers=auth_headers,
    )
    assert duplicate.status_code == 409

    bad_update = client.put(f"/api/thresholds/{threshold_id}", json={"min": 27}, headers=auth_headers)
    assert bad_update.status_code == 400

    updated = client.put(f"/api/thresholds/{threshold_id}", json={"enabled": False}, headers=auth_headers)
    assert updated.json()["enabled"] is False

    listed = client.get("/api/thresholds?room_id=room-a", headers=auth_headers).json()
    assert [t["id"] for t in listed] == [threshold_id]

    assert client.delete(f"/api/thresholds/{threshold_id}", headers=auth_headers).status_code == 200
    assert client.delete(f"/api/thresholds/{threshold_id}", headers=auth_headers).status_code == 404


def test_alert_lifecycle(client, auth_headers, db):
    alert = db.create_alert(
        {"user_id": "user-1", "type": "co2", "severity": "critical", "title": "CO2", "message": "co2 demasiado alto"}
    )
    alert_id = alert["id"]

    read = client.patch(f"/api/alerts/{alert_id}/read", json={"is_read": True}, headers=auth_headers)
    assert read.json()["is_read"] is True

    resolved = client.patch(
        f"/api/alerts/{alert_id}/resolve",
        json={"is_resolved": True, "action_taken": "Ventilación abierta"},
        headers=auth_headers,
    ).json()
    assert resolved["is_resolved"] is True
    assert resolved["resolved_by"] == "user-1"
    assert resolved["action_taken"] == "Ventilación abierta"

    summary = client.get("/api/alerts/summary", headers=auth_headers).json()
    assert summary["total"] == 1
    assert summary["unread"] == 0

    filtered = client.get("/api/alerts?severity=high&is_resolved=true", headers=auth_headers).json()
    assert filtered["total"] == 0
    filtered = client.get("/api/alerts?severity=critical&is_resolved=true", headers=auth_headers).json()
    assert filtered["total"] == 1

    cleared = client.delete("/api/alerts/resolved", headers=auth_headers).json()
    assert cleared["deleted"] == 1
    assert client.patch(f"/api/alerts/{alert_id}/read", headers=auth_headers).status_code == 404


def test_alerts_are_private(client, headers_for, db):
    alert = db.create_alert(
        {"user_id": "user-1", "type": "co2", "severity": "warning", "title": "CO2", "message": "m"}
    )
    other = headers_for("user-2")
    assert client.get("/api/alerts", headers=other).json()["total"] == 0
    assert client.delete(f"/api/alerts/{alert['id']}", headers=other).status_code == 404


def test_settings_defaults_and_updates(client, auth_headers):
    current = client.get("/api/settings", headers=auth_headers).json()
    assert current["notifications"]["push_quiet_hours_start"] == "22:00"
    assert current["system"]["timezone"] == "UTC"

    invalid = client.put(
        "/api/settings/notifications", json={"push_quiet_hours_start": "25:00"}, headers=auth_headers
    )
    assert invalid.status_code == 422
    assert client.put("/api/settings/system", json={"timezone": "Mars/Base"}, headers=auth_headers).status_code == 422

    updated = client.put(
        "/api/settings/notifications",
        json={"push_quiet_hours_start": "23:30", "min_push_severity": "High"},
        headers=auth_headers,
    ).json()
    assert updated["notifications"]["push_quiet_hours_start"] == "23:30"
    assert updated["notifications"]["min_push_severity"] == "high"
    assert updated["notifications"]["push_quiet_hours_end"] == "07:00"

    system = client.put(
        "/api/settings/system", json={"timezone": "Europe/Madrid", "alert_debounce_seconds": 60}, headers=auth_headers
    ).json()
    assert system["system"]["timezone"] == "Europe/Madrid"
    assert system["system"]["alert_debounce_seconds"] == 60


def test_push_subscription_endpoints(client, auth_headers, db):
    subscription = {"subscription": {"endpoint": "https://push.example/1", "keys": {"p256dh": "p", "auth": "a"}}}
    assert client.post("/api/notifications/subscribe", json=subscription, headers=auth_headers).status_code == 201
    assert client.post("/api/notifications/subscribe", json=subscription, headers=auth_headers).status_code == 201
    assert len(db.list_subscriptions("user-1")) == 1

    assert client.get("/api/notifications/vapid-public-key").status_code == 503
    test = client.post("/api/notifications/send-test", headers=auth_headers).json()
    assert test["status"] == "failed"

    removed = client.post(
        "/api/notifications/unsubscribe", json={"endpoint": "https://push.example/1"}, headers=auth_headers
    ).json()
    assert removed["deleted"] == 1


def test_recipe_and_phase_flow(client, auth_headers):
    setpoints = {"temperature": 24, "humidity": 65, "co2": 800}
    recipe = client.post(
        "/api/recipes",
        json={
            "name": "Tomate",
            "strain": "Cherry",
            "phases": [
                {"name": "Vegetativo", "duration_hours": 48, "setpoints": setpoints},
                {"name": "Floración", "duration_hours": 72, "setpoints": setpoints},
            ],
        },
        headers=auth_headers,
    )
    assert recipe.status_code == 201
    recipe_id = recipe.json()["id"]

    no_phases = client.post(
        "/api/recipes", json={"name": "x", "strain": "y", "phases": []}, headers=auth_headers
    )
    assert no_phases.status_code == 422

    applied = client.post(
        "/api/phases/apply", json={"room_id": "room-a", "recipe_id": recipe_id}, headers=auth_headers
    ).json()
    assert applied["active"]["phase_index"] == 0
    assert applied["active"]["phase"]["name"] == "Vegetativo"

    advanced = client.post("/api/phases/advance", json={"room_id": "room-a"}, headers=auth_headers).json()
    assert advanced["active"]["phase_index"] == 1

    completed = client.post("/api/phases/advance", json={"room_id": "room-a"}, headers=auth_headers).json()
    assert completed["completed"] is True
    assert client.get("/api/phases/room-a", headers=auth_headers).status_code == 404


def test_calendar_events(client, auth_headers):
    created = client.post(
        "/api/calendar",
        json={
            "title": "Fertilizar",
            "start_at": "2099-01-10T08:00:00Z",
            "reminders": [{"minutes_before": 30}, {"minutes_before": 30}, {"minutes_before": 60}],
        },
        headers=auth_headers,
    )
    assert created.status_code == 201
    event = created.json()
    assert event["reminders"] == [{"minutes_before": 60}, {"minutes_before": 30}]

    missing_title = client.post("/api/calendar", json={"start_at": "2099-01-10T08:00:00Z"}, headers=auth_headers)
    assert missing_title.status_code == 422
    backwards = client.post(
        "/api/calendar",
        json={"title": "x", "start_at": "2099-01-10T08:00:00Z", "end_at": "2099-01-09T08:00:00Z"},
        headers=auth_headers,
    )
    assert backwards.status_code == 400

    listed = client.get(
        "/api/calendar?start=2099-01-01T00:00:00Z&end=2099-01-31T00:00:00Z", headers=auth_headers
    ).json()
    assert [e["id"] for e in listed] == [event["id"]]

    updated = client.put(
        f"/api/calendar/{event['id']}", json={"title": "Fertilizar sala A"}, headers=auth_headers
    ).json()
    assert updated["title"] == "Fertilizar sala A"
    assert client.delete(f"/api/calendar/{event['id']}", headers=auth_headers).status_code == 200


def test_chat_flow(client, headers_for):
    alice, bob = headers_for("alice"), headers_for("bob")

    direct = client.post("/api/chats", json={"type": "one-to-one", "members": ["bob"]}, headers=alice)
    assert direct.status_code == 201
    again = client.post("/api/chats", json={"type": "one-to-one", "members": ["alice"]}, headers=bob)
    assert again.json()["id"] == direct.json()["id"]

    chat_id = direct.json()["id"]
    message = client.post("/api/messages", json={"chat_id": chat_id, "content": "Hola"}, headers=alice)
    assert message.status_code == 201
    assert message.json()["seen_by"] == ["alice"]

    bob_chats = client.get("/api/chats", headers=bob).json()
    assert bob_chats[0]["unread_count"] == 1
    assert bob_chats[0]["last_message"]["content"] == "Hola"

    client.post(f"/api/messages/{chat_id}/seen", headers=bob)
    assert client.get("/api/chats", headers=bob).json()[0]["unread_count"] == 0

    outsider = headers_for("carol")
    assert client.get(f"/api/messages/{chat_id}", headers=outsider).status_code == 403
    message_id = message.json()["id"]
    assert client.delete(f"/api/messages/{message_id}", headers=bob).status_code == 403
    assert client.delete(f"/api/messages/{message_id}", headers=alice).status_code == 200


def test_group_admin_rules(client, headers_for):
    alice, bob = headers_for("alice"), headers_for("bob")
    group = client.post(
        "/api/chats", json={"type": "group", "name": "Invernadero", "members": ["bob"]}, headers=alice
    ).json()
    assert group["admins"] == ["alice"]

    assert client.patch(f"/api/chats/{group['id']}", json={"name": "X"}, headers=bob).status_code == 403
    renamed = client.patch(f"/api/chats/{group['id']}", json={"name": "Sala A"}, headers=alice).json()
    assert renamed["name"] == "Sala A"

    added = client.post(f"/api/chats/{group['id']}/members", json={"user_id": "carol"}, headers=alice).json()
    assert "carol" in added["members"]

    left = client.delete(f"/api/chats/{group['id']}/members/bob", headers=bob).json()
    assert "bob" not in left["members"]

    assert client.post("/api/chats", json={"type": "group", "members": []}, headers=alice).status_code == 400


def test_ai_endpoints_require_api_key(client, auth_headers, monkeypatch):
    monkeypatch.setattr(logic.assistant, "client", None)
    response = client.post("/api/chat/ai", json={"message": "¿Cuándo riego?"}, headers=auth_headers)
    assert response.status_code == 503
    assert client.post("/api/sensors/analyze-now", headers=auth_headers).status_code == 503


def test_ai_chat_uses_assistant(client, auth_headers, monkeypatch):
    monkeypatch.setattr(logic.assistant, "client", object())
    monkeypatch.setattr(logic.assistant, "ask", lambda message, user_id, context=None: f"{user_id}: {message}")
    response = client.post("/api/chat/ai", json={"message": "hola"}, headers=auth_headers)
    assert response.json() == {"response": "user-1: hola"}


def test_report_export_and_schedules(client, auth_headers):
    client.post(
        "/api/sensors/data",
        json={"device_id": "dev-1", "readings": [{"type": "humidity", "value": 50}]},
        headers=auth_headers,
    )
    export = client.post("/api/reports/export", json={"timeframe": "1h"}, headers=auth_headers)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    lines = export.text.splitlines()
    assert lines[0] == "date,hour,sensorType,avgValue,minValue,maxValue,count"
    assert lines[1].split(",")[2] == "humidity"

    invalid = client.post(
        "/api/reports/schedules", json={"name": "r", "email": "a@b.c", "hour_local": 24}, headers=auth_headers
    )
    assert invalid.status_code == 422

    created = client.post(
        "/api/reports/schedules",
        json={"name": "Semanal", "email": "farmer@example.com", "frequency": "weekly", "types": ["humidity"]},
        headers=auth_headers,
    ).json()
    assert created["types"] == ["humidity"]
    assert client.get("/api/reports/schedules", headers=auth_headers).json()[0]["id"] == created["id"]
    assert client.delete(f"/api/reports/schedules/{created['id']}", headers=auth_headers).status_code == 200


@pytest.mark.parametrize("path", ["/api/sensors/latest", "/api/devices", "/api/recipes", "/api/chats"])
def test_protected_routes(client, path):
    assert client.get(path).status_code == 401


def test_run_schedule_now_sends_outside_event_loop(client, db, monkeypatch):
    from auth import get_current_user
    from main import app

    threads = {}

    async def current_user():
        threads["loop"] = threading.get_ident()
        return "user-1"

    def fake_send(to_email, subject, body, csv_content, filename="report.csv"):
        threads["mailer"] = threading.get_ident()
        return True

    monkeypatch.setattr(reports, "send_email_csv", fake_send)
    monkeypatch.setitem(app.dependency_overrides, get_current_user, current_user)
    db.update_user_settings("user-1", "notifications", {"report_quiet_hours_enabled": False})
    schedule = db.create_report_schedule(
        "user-1", {"name": "Diario", "email": "farmer@example.com", "timeframe": "24h", "types": []}
    )

    response = client.post(f"/api/reports/schedules/{schedule['id']}/run")

    assert response.json() == {"status": "sent"}
    assert threads["mailer"] != threads["loop"]


@pytest.mark.parametrize("field", ["name", "metric", "severity", "enabled"])
def test_threshold_update_rejects_null_required_fields(client, auth_headers, field):
    created = client.post(
        "/api/thresholds",
        json={"name": "Vege", "metric": "humidity", "min": 40, "max": 70},
        headers=auth_headers,
    ).json()

    response = client.put(f"/api/thresholds/{created['id']}", json={field: None}, headers=auth_headers)

    assert response.status_code == 422
    stored = client.get("/api/thresholds", headers=auth_headers).json()[0]
    assert stored["name"] == "Vege"
    assert stored["severity"] == "warning"


def test_threshold_update_can_clear_room(client, auth_headers):
    created = client.post(
        "/api/thresholds",
        json={"name": "Vege", "metric": "humidity", "room_id": "room-a", "min": 40},
        headers=auth_headers,
    ).json()

    response = client.put(f"/api/thresholds/{created['id']}", json={"room_id": None}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["room_id"] is None


def test_unscoped_threshold_names_are_unique(client, auth_headers):
    body = {"name": "General", "metric": "co2", "max": 900}
    assert client.post("/api/thresholds", json=body, headers=auth_headers).status_code == 201
    assert client.post("/api/thresholds", json=body, headers=auth_headers).status_code == 409

    scoped = dict(body, room_id="room-a")
    assert client.post("/api/thresholds", json=scoped, headers=auth_headers).status_code == 201


def test_predict_alerts_endpoint(client, auth_headers, db):
    now = utcnow()
    for i, value in enumerate([40, 38, 36, 34, 32, 30, 28, 26, 24]):
        db.insert_reading(
            {
                "user_id": "user-1",
                "device_id": "dev-1",
                "sensor_type": "soilMoisture",
                "value": value,
                "unit": "%",
                "timestamp": to_iso(now - timedelta(minutes=15 * (8 - i))),
            }
        )

    invalid = client.post("/api/alerts/predict", json={"categories": ["frost"]}, headers=auth_headers)
    assert invalid.status_code == 422

    response = client.post("/api/alerts/predict", json={}, headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["alerts"][0]["risk_category"] == "irrigation"

    repeated = client.post("/api/alerts/predict", json={}, headers=auth_headers).json()
    assert repeated["count"] == 0

    listed = client.get("/api/alerts?origin=predictive", headers=auth_headers).json()
    assert listed["total"] == 1
