import logging
import os

from dotenv import load_dotenv

# Cargar variables de entorno
load_dotenv()


def _as_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Configuración del servidor leída desde el entorno (.env)."""

    def __init__(self):
        self.database_path = os.getenv("DATABASE_PATH", "agronex.db")
        self.jwt_secret = os.getenv("JWT_SECRET")
        self.iot_api_key = os.getenv("IOT_API_KEY")

        self.gemini_api_key = os.getenv("GEMINI")
        self.gemini_model = os.getenv("GEMINI_MODEL", "gemini-1.5-pro")

        origins = os.getenv("FRONTEND_URL", "http://localhost:3000")
        self.allowed_origins = [
            o.strip().rstrip("/") for o in origins.split(",") if o.strip()
        ]

        self.alert_debounce_seconds = int(os.getenv("ALERT_DEBOUNCE_SECONDS", "300"))
        self.analysis_every_n_batches = int(os.getenv("ANALYSIS_EVERY_N_BATCHES", "5"))
        self.predictive_alerts = _as_bool(os.getenv("PREDICTIVE_ALERTS"), default=True)

        self.vapid_public_key = os.getenv("VAPID_PUBLIC_KEY")
        self.vapid_private_key = os.getenv("VAPID_PRIVATE_KEY")
        self.vapid_subject = os.getenv("VAPID_SUBJECT", "mailto:admin@example.com")

        self.smtp_host = os.getenv("SMTP_HOST")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user = os.getenv("SMTP_USER")
        self.smtp_pass = os.getenv("SMTP_PASS")
        self.smtp_from = os.getenv("SMTP_FROM", "reports@agronex.local")

        self.enable_scheduler = _as_bool(os.getenv("ENABLE_SCHEDULER"), default=True)
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def vapid_configured(self):
        return bool(self.vapid_public_key and self.vapid_private_key)

    @property
    def smtp_configured(self):
        return bool(self.smtp_host and self.smtp_user and self.smtp_pass)


settings = Settings()

# Configuración de logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("agronex_api")
