from pydantic import BaseModel
import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _csv(name: str, default: str) -> list[str]:
    return [p.strip() for p in os.getenv(name, default).split(",") if p.strip()]


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./seatag.db")
    event_store: str = os.getenv("EVENT_STORE", "sql")  # sql|memory
    cors_origins: list[str] = _csv("CORS_ORIGINS", "*")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "5000"))

    # wire format generation: "multi" carries deviceId first, "legacy" has none
    payload_layout: str = os.getenv("PAYLOAD_LAYOUT", "multi")
    default_device_id: str = os.getenv("DEFAULT_DEVICE_ID", "default")
    accept_minimal_status: bool = _flag("ACCEPT_MINIMAL_STATUS")
    persisted_modes: list[str] = _csv("PERSISTED_MODES", "EMERGENCY,NORMAL")

    store_timeout_seconds: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))
    subscriber_queue_size: int = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "256"))

    mqtt_enabled: bool = _flag("MQTT_ENABLED")
    mqtt_host: str = os.getenv("MQTT_HOST", "localhost")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "seatag")

    @property
    def multi_device(self) -> bool:
        return self.payload_layout != "legacy"

settings = Settings()
