import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


def _flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default) in ("1", "true", "True")


class Settings(BaseSettings):
    APP_NAME: str = "Safeguard Crisis Service"
    ENV: str = os.getenv("ENV", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    DB_USER: str = os.getenv("DB_USER", "root")
    DB_PASS: str = os.getenv("DB_PASS", "")
    DB_HOST: str = os.getenv("DB_HOST", "127.0.0.1")
    DB_PORT: str = os.getenv("DB_PORT", "3306")
    DB_NAME: str = os.getenv("DB_NAME", "safeguard")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "mysql+mysqlconnector")
    # Full URL override, e.g. sqlite:///./safeguard.db for local runs
    DB_URL: Optional[str] = os.getenv("DB_URL")

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return (
            f"{self.DB_DRIVER}://{self.DB_USER}:{self.DB_PASS}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    # CORS
    CORS_ORIGINS: List[str] = []

    # JWT (tokens are issued by the platform's identity service)
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "super-dev-secret-please-change-later")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Reference data / context API of the host platform
    REFERENCE_API_URL: str = os.getenv("REFERENCE_API_URL", "")
    REFERENCE_API_TOKEN: str = os.getenv("REFERENCE_API_TOKEN", "")

    # Emergency dispatch webhook (HMAC signed)
    EMERGENCY_WEBHOOK_URL: str = os.getenv("EMERGENCY_WEBHOOK_URL", "")
    EMERGENCY_WEBHOOK_SECRET: str = os.getenv("EMERGENCY_WEBHOOK_SECRET", "")

    # Notification gateways
    SMS_GATEWAY_URL: str = os.getenv("SMS_GATEWAY_URL", "")
    VOICE_GATEWAY_URL: str = os.getenv("VOICE_GATEWAY_URL", "")
    EMAIL_GATEWAY_URL: str = os.getenv("EMAIL_GATEWAY_URL", "")
    GATEWAY_API_KEY: str = os.getenv("GATEWAY_API_KEY", "")

    # Pusher (dashboard realtime)
    PUSHER_APP_ID: str = os.getenv("PUSHER_APP_ID", "")
    PUSHER_APP_KEY: str = os.getenv("PUSHER_APP_KEY", "")
    PUSHER_APP_SECRET: str = os.getenv("PUSHER_APP_SECRET", "")
    PUSHER_APP_CLUSTER: str = os.getenv("PUSHER_APP_CLUSTER", "ap1")

    # Detection tunables
    DETECTION_ENABLED: bool = _flag("DETECTION_ENABLED")
    KEYWORD_DETECTION: bool = _flag("KEYWORD_DETECTION")
    PATTERN_DETECTION: bool = _flag("PATTERN_DETECTION")
    CONTEXT_ANALYSIS: bool = _flag("CONTEXT_ANALYSIS")
    BATCH_ANALYSIS: bool = _flag("BATCH_ANALYSIS", "0")
    CONFIDENCE_THRESHOLD: float = float(os.getenv("CONFIDENCE_THRESHOLD", "0.3"))
    ESCALATION_RISK_LEVEL: str = os.getenv("ESCALATION_RISK_LEVEL", "high")
    TIME_FACTOR_WEIGHT: float = float(os.getenv("TIME_FACTOR_WEIGHT", "0.1"))
    USER_HISTORY_WEIGHT: float = float(os.getenv("USER_HISTORY_WEIGHT", "0.2"))
    DETECTION_LANGUAGES: List[str] = ["en"]
    RULE_REFRESH_MINUTES: int = int(os.getenv("RULE_REFRESH_MINUTES", "15"))

    # Per-operation budgets (seconds)
    CONTEXT_TIMEOUT: float = float(os.getenv("CONTEXT_TIMEOUT", "2.0"))
    LOOKUP_TIMEOUT: float = float(os.getenv("LOOKUP_TIMEOUT", "1.5"))
    GEOLOCATION_TIMEOUT: float = float(os.getenv("GEOLOCATION_TIMEOUT", "0.8"))
    LOG_WRITE_TIMEOUT: float = float(os.getenv("LOG_WRITE_TIMEOUT", "3.0"))
    NOTIFICATION_SEND_TIMEOUT: float = float(os.getenv("NOTIFICATION_SEND_TIMEOUT", "10.0"))
    EMERGENCY_DISPATCH_TIMEOUT: float = float(os.getenv("EMERGENCY_DISPATCH_TIMEOUT", "10.0"))

    # Escalation / dispatch
    ESCALATION_RETRY_SECONDS: float = float(os.getenv("ESCALATION_RETRY_SECONDS", "5"))
    NOTIFICATION_MAX_RETRIES: int = int(os.getenv("NOTIFICATION_MAX_RETRIES", "3"))
    NOTIFICATION_BASE_BACKOFF: float = float(os.getenv("NOTIFICATION_BASE_BACKOFF", "1.0"))
    NOTIFICATION_MAX_BACKOFF: float = float(os.getenv("NOTIFICATION_MAX_BACKOFF", "60.0"))

    # Panic mode
    PANIC_SESSION_MAX_HOURS: int = int(os.getenv("PANIC_SESSION_MAX_HOURS", "6"))
    BREATHING_TICK_SECONDS: float = float(os.getenv("BREATHING_TICK_SECONDS", "1.0"))

    # Message delivery
    DELIVERY_TIMEOUT_SECONDS: float = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "30"))
    DELIVERY_MAX_RETRIES: int = int(os.getenv("DELIVERY_MAX_RETRIES", "3"))

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


def _load_settings() -> "Settings":
    s = Settings()
    origins = os.getenv("FRONTEND_ORIGINS") or os.getenv("FRONTEND_ORIGIN")
    dev_defaults = [
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8000",
    ]
    if origins:
        provided = [o.strip() for o in origins.split(",") if o.strip()]
        s.CORS_ORIGINS = sorted(set(provided + dev_defaults))
    else:
        s.CORS_ORIGINS = dev_defaults
    languages = os.getenv("DETECTION_LANGUAGES")
    if languages:
        s.DETECTION_LANGUAGES = [lang.strip() for lang in languages.split(",") if lang.strip()]
    return s


settings = _load_settings()
