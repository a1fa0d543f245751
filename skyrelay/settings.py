from pydantic import BaseModel
import os

class Settings(BaseModel):
    # sqlite:// keeps everything in process memory; point at Postgres to persist
    database_url: str = os.getenv("DATABASE_URL", "sqlite://")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

    heartbeat_interval: float = float(os.getenv("HEARTBEAT_INTERVAL", "30"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_enabled: bool = os.getenv("MQTT_ENABLED", "0") == "1"
    mqtt_host: str = os.getenv("MQTT_HOST", "mqtt")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "skyrelay")

settings = Settings()
