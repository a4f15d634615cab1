import pytest

from severity import (
    clamp_confidence,
    highest_severity,
    meets_severity_threshold,
    severity_from_risk_score,
    to_canonical,
    to_legacy,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("low", "info"),
        ("medium", "warning"),
        ("high", "warning"),
        ("critical", "critical"),
        ("  CRITICAL ", "critical"),
        ("info", "info"),
        ("bogus", "warning"),
        (None, "warning"),
    ],
)
def test_to_canonical(value, expected):
    assert to_canonical(value) == expected


def test_to_legacy():
    assert to_legacy("info") == "low"
    assert to_legacy("warning") == "medium"
    assert to_legacy("critical") == "critical"
    assert to_legacy("high") == "medium"


def test_severity_from_risk_score():
    assert severity_from_risk_score(80) == "critical"
    assert severity_from_risk_score(75) == "critical"
    assert severity_from_risk_score(45) == "warning"
    assert severity_from_risk_score("12") == "info"
    assert severity_from_risk_score("n/a") == "warning"
    assert severity_from_risk_score(float("nan")) == "warning"


def test_meets_severity_threshold():
    assert meets_severity_threshold("critical", "high")
    assert not meets_severity_threshold("warning", "high")
    assert meets_severity_threshold("info", "low")
    assert not meets_severity_threshold("info", "medium")
    # Mínimos expresados en la escala canónica
    assert meets_severity_threshold("warning", "warning")
    assert not meets_severity_threshold("info", "warning")
    # Un mínimo desconocido equivale a "low"
    assert meets_severity_threshold("info", "whatever")


def test_highest_severity():
    assert highest_severity(["info", "critical", "warning"]) == "critical"
    assert highest_severity(["low", "medium"]) == "warning"
    assert highest_severity([]) == "info"


def test_clamp_confidence():
    assert clamp_confidence(126) == 100
    assert clamp_confidence(-5) == 0
    assert clamp_confidence(72.4) == 72
    assert clamp_confidence("nope", 65) == 65
    assert clamp_confidence(float("nan")) == 60
