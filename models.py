import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

Metric = Literal["temperature", "humidity", "co2", "light", "soilMoisture"]
Severity = Literal["info", "warning", "critical"]
Timeframe = Literal["1h", "24h", "7d", "30d"]
RiskCategory = Literal["irrigation", "weather_stress", "disease"]

HOUR_MINUTE_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
DELIVERY_SEVERITIES = ("low", "medium", "high", "critical", "info", "warning")


# Modelos de datos de sensores
class SensorReading(BaseModel):
    type: Optional[str] = None
    value: Any = None
    unit: Optional[str] = None
    timestamp: Any = None
    ts: Any = None
    room_id: Optional[str] = None
    location: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SensorBatch(BaseModel):
    device_id: Optional[str] = None
    user_id: Optional[str] = None  # solo con IOT_API_KEY
    readings: Optional[List[SensorReading]] = None
    line: Optional[str] = None  # línea serie cruda del ESP32
    timestamp: Any = None
    room_id: Optional[str] = None
    device_token: Optional[str] = None
    api_key: Optional[str] = None


# Umbrales
class ThresholdCreate(BaseModel):
    name: str = Field(min_length=1)
    metric: Metric
    room_id: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    severity: Severity = "warning"
    enabled: bool = True
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min no puede ser mayor que max")
        return self


class ThresholdUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    metric: Optional[Metric] = None
    room_id: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    severity: Optional[Severity] = None
    enabled: Optional[bool] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_required_not_null(self):
        # room_id y los límites sí admiten null
        for name in ("name", "metric", "severity", "enabled"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} no puede ser null")
        return self


# Alertas
class AlertReadUpdate(BaseModel):
    is_read: bool = True


class AlertResolve(BaseModel):
    is_resolved: bool = True
    action_taken: Optional[str] = None


class PredictiveAlertRequest(BaseModel):
    categories: Optional[List[RiskCategory]] = None
    min_confidence: float = Field(default=0, ge=0, le=100)


# Dispositivos
class DeviceCreate(BaseModel):
    name: str
    device_id: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        value = value.strip()
        if len(value) < 2:
            raise ValueError("El nombre del dispositivo es obligatorio")
        return value


# Recetas y fases
class Setpoints(BaseModel):
    temperature: float
    humidity: float
    co2: float
    light: float = 0


class Phase(BaseModel):
    name: str
    duration_hours: float = Field(gt=0)
    setpoints: Setpoints


class RecipeCreate(BaseModel):
    name: str = Field(min_length=1)
    strain: str = Field(min_length=1)
    phases: List[Phase] = Field(min_length=1)
    notes: Optional[str] = None


class RecipeUpdate(BaseModel):
    name: Optional[str] = None
    strain: Optional[str] = None
    phases: Optional[List[Phase]] = None
    notes: Optional[str] = None


class PhaseApply(BaseModel):
    room_id: str
    recipe_id: int


class PhaseAdvance(BaseModel):
    room_id: str


# Calendario
class Reminder(BaseModel):
    minutes_before: int = Field(ge=0)


class CalendarEventCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    room_id: Optional[str] = None
    start_at: datetime
    end_at: Optional[datetime] = None
    reminders: List[Reminder] = Field(default_factory=list)


class CalendarEventUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    room_id: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    reminders: Optional[List[Reminder]] = None


# Chat
class ChatCreate(BaseModel):
    type: Literal["group", "one-to-one"]
    name: Optional[str] = None
    members: List[str] = Field(default_factory=list)
    is_ai_group: bool = False

    @model_validator(mode="after")
    def check_members(self):
        if self.type == "one-to-one" and len(self.members) < 1:
            raise ValueError("Un chat uno a uno necesita otro miembro")
        return self


class ChatRename(BaseModel):
    name: str = Field(min_length=1)


class ChatMember(BaseModel):
    user_id: str


class MessageCreate(BaseModel):
    chat_id: int
    content: Optional[str] = None
    type: Literal["text", "image", "file", "ai"] = "text"
    media_url: Optional[str] = None
    reply_to: Optional[int] = None


class AIChatRequest(BaseModel):
    message: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None


class AnalyzeDataRequest(BaseModel):
    sensor_data: Any
    timeframe: str = "24h"


class FarmingTipsRequest(BaseModel):
    crop_type: Optional[str] = None
    growth_stage: Optional[str] = None
    current_conditions: Optional[Dict[str, Any]] = None
    specific_question: Optional[str] = None


# Ajustes de usuario
class NotificationSettings(BaseModel):
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    weather_alerts: Optional[bool] = None
    system_updates: Optional[bool] = None
    marketing_emails: Optional[bool] = None
    min_push_severity: Optional[str] = None
    min_report_severity: Optional[str] = None
    push_quiet_hours_enabled: Optional[bool] = None
    push_quiet_hours_start: Optional[str] = None
    push_quiet_hours_end: Optional[str] = None
    report_quiet_hours_enabled: Optional[bool] = None
    report_quiet_hours_start: Optional[str] = None
    report_quiet_hours_end: Optional[str] = None

    @field_validator("min_push_severity", "min_report_severity")
    @classmethod
    def check_severity(cls, value):
        if value is None:
            return value
        value = value.strip().lower()
        if value not in DELIVERY_SEVERITIES:
            raise ValueError(f"Severidad desconocida: {value}")
        return value

    @field_validator(
        "push_quiet_hours_start",
        "push_quiet_hours_end",
        "report_quiet_hours_start",
        "report_quiet_hours_end",
    )
    @classmethod
    def check_hour_minute(cls, value):
        if value is None:
            return value
        if not HOUR_MINUTE_RE.match(value.strip()):
            raise ValueError("Formato de hora inválido, se espera HH:MM")
        return value.strip()


class SystemSettings(BaseModel):
    language: Optional[Literal["en", "es", "fr", "de"]] = None
    timezone: Optional[str] = None
    date_format: Optional[Literal["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD"]] = None
    temperature_unit: Optional[Literal["celsius", "fahrenheit"]] = None
    alert_debounce_seconds: Optional[int] = Field(default=None, ge=0)
    auto_save: Optional[bool] = None

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value):
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Zona horaria desconocida: {value}")
        return value


# Notificaciones push
class PushKeys(BaseModel):
    p256dh: Optional[str] = None
    auth: Optional[str] = None


class PushSubscription(BaseModel):
    endpoint: str = Field(min_length=1)
    keys: PushKeys = Field(default_factory=PushKeys)


class SubscribeRequest(BaseModel):
    subscription: PushSubscription


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1)


# Reportes
class ReportExportRequest(BaseModel):
    timeframe: Timeframe = "24h"
    types: List[str] = Field(default_factory=list)


class ReportScheduleCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    timeframe: Timeframe = "24h"
    types: List[str] = Field(default_factory=list)
    frequency: Literal["daily", "weekly"] = "daily"
    hour_local: int = Field(default=8, ge=0, le=23)
    enabled: bool = True
