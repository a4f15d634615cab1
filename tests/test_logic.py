from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from database import to_iso
from logic import AgronomyAssistant, AssistantUnavailableError, analyze_sensor_trends


class FakeModels:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error:
            raise self.error
        return SimpleNamespace(text=self.text)


def assistant_with(text=None, error=None):
    assistant = AgronomyAssistant(None)
    assistant.client = SimpleNamespace(models=FakeModels(text, error))
    return assistant


def test_without_api_key_is_unavailable():
    assistant = AgronomyAssistant(None)
    assert not assistant.available
    with pytest.raises(AssistantUnavailableError):
        assistant.ask("hola", "user-1")


def test_ask_includes_context():
    assistant = assistant_with("Riega por la mañana")
    answer = assistant.ask("¿Cuándo riego?", "user-1", {"humidity": 35})
    assert answer == "Riega por la mañana"
    prompt = assistant.client.models.calls[0]["contents"]
    assert "¿Cuándo riego?" in prompt
    assert '"humidity": 35' in prompt


def test_analyze_trends_extracts_json():
    text = 'Aquí va:\n```json\n{"trend": "creciente", "risk_score": "62", "recommendation": "Ventilar", "details": {"patterns": ["subida"]}}\n```'
    result = assistant_with(text).analyze_trends("datos")
    assert result == {
        "trend": "creciente",
        "risk_score": 62.0,
        "recommendation": "Ventilar",
        "details": {"patterns": ["subida"]},
    }


def test_analyze_trends_fallback_on_invalid_json():
    result = assistant_with("sin json aquí").analyze_trends("datos")
    assert result["trend"] == "análisis incompleto"
    assert result["details"]["original_response"].startswith("sin json")

    broken = assistant_with("{trend: creciente}").analyze_trends("datos")
    assert broken["trend"] == "análisis incompleto"


def test_analyze_trends_reports_errors():
    result = assistant_with(error=RuntimeError("cuota agotada")).analyze_trends("datos")
    assert result["trend"] == "error"
    assert "cuota agotada" in result["recommendation"]


def test_analyze_sensor_trends_saves_result(db):
    now = datetime.now(timezone.utc)
    for i in range(6):
        db.insert_reading(
            {
                "user_id": "user-1",
                "device_id": "dev-1",
                "sensor_type": "temperature",
                "value": 20 + i,
                "unit": "C",
                "timestamp": to_iso(now - timedelta(minutes=i)),
            }
        )
    assistant = assistant_with('{"trend": "estable", "risk_score": 10, "recommendation": "Nada"}')

    result = analyze_sensor_trends(db, assistant, "user-1")

    assert result["period"] == "últimas 6 lecturas"
    saved = db.latest_trend_analyses("user-1")
    assert saved[0]["trend"] == "estable"
    assert saved[0]["details"] == {}


def test_analyze_sensor_trends_needs_data(db):
    assistant = assistant_with("{}")
    assert analyze_sensor_trends(db, assistant, "user-1") is None
    assert analyze_sensor_trends(db, AgronomyAssistant(None), "user-1") is None
