from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration.

    Built once by the application factory and passed to the orchestrator,
    the dispatcher and the session factory. Peer service URLs left empty
    disable delivery to that peer.
    """

    model_config = SettingsConfigDict(env_prefix="PLC_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./production_lifecycle.sqlite3"

    # Peer services
    machine_queue_url: str = ""
    material_inventory_url: str = ""
    feedback_service_url: str = ""

    # Outbox delivery
    notification_timeout_seconds: float = 3.0
    dispatcher_enabled: bool = True
    dispatcher_poll_interval_seconds: float = 1.0
    dispatcher_batch_size: int = 50
    dispatcher_max_attempts: int = 10

    # Quality verdict bands on the 0-100 score
    quality_pass_threshold: float = 80.0
    quality_conditional_threshold: float = 60.0

    log_level: str = "INFO"
    log_json: bool = True


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
