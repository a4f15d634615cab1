"""Etiquetas de severidad de alertas y umbrales.

Las alertas se guardan con la escala canónica (info, warning, critical). Los
clientes antiguos y las preferencias de notificación todavía usan la escala
legacy (low, medium, high, critical), así que aquí viven las conversiones.
"""

CANONICAL = ("info", "warning", "critical")

LEGACY_TO_CANONICAL = {
    "low": "info",
    "info": "info",
    "medium": "warning",
    "high": "warning",
    "warning": "warning",
    "critical": "critical",
}

CANONICAL_TO_LEGACY = {
    "info": "low",
    "warning": "medium",
    "critical": "critical",
}

# Escala legacy usada por las preferencias de entrega
LEGACY_RANK = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}


def to_canonical(value, fallback="warning"):
    normalized = str(value or "").strip().lower()
    if normalized in CANONICAL:
        return normalized
    return LEGACY_TO_CANONICAL.get(normalized, fallback)


def to_legacy(value, fallback="medium"):
    canonical = to_canonical(value, "warning")
    return CANONICAL_TO_LEGACY.get(canonical, fallback)


def severity_rank(value):
    """Posición de una severidad en la escala canónica (info=0 ... critical=2)."""
    return CANONICAL.index(to_canonical(value))


def highest_severity(values, default="info"):
    values = [to_canonical(v) for v in values if v]
    if not values:
        return default
    return max(values, key=severity_rank)


def severity_from_risk_score(score):
    try:
        numeric = float(score)
    except (TypeError, ValueError):
        return "warning"
    if numeric != numeric:  # NaN
        return "warning"
    if numeric >= 75:
        return "critical"
    if numeric >= 45:
        return "warning"
    return "info"


def clamp_confidence(value, fallback=60):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return fallback
    return max(0, min(100, round(numeric)))


def meets_severity_threshold(event_severity="medium", min_severity="low"):
    """Indica si una severidad alcanza el mínimo configurado por el usuario."""
    event_legacy = to_legacy(event_severity, "medium")
    event_rank = LEGACY_RANK.get(event_legacy, LEGACY_RANK["medium"])
    min_key = str(min_severity or "low").strip().lower()
    if min_key not in LEGACY_RANK and min_key in LEGACY_TO_CANONICAL:
        min_key = to_legacy(min_key)
    min_rank = LEGACY_RANK.get(min_key, LEGACY_RANK["low"])
    return event_rank >= min_rank
