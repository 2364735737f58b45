from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

UNIT_SELECTION_POLICIES = ("registry_order", "nearest")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Dispatch Core"
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    @field_validator("debug", "log_json", mode="before")
    @classmethod
    def _coerce_bool(cls, v: object) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("1", "true", "yes")
        return bool(v)

    database_url: str = Field(default="")
    redis_url: str = Field(default="")
    notification_channel_prefix: str = Field(default="dispatch.transitions.")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Unit assignment
    max_units_per_dispatch: int = Field(default=3, ge=1)
    default_eta_minutes: int = Field(default=15, ge=0)
    average_speed_kmh: float = Field(default=40.0, gt=0)
    unit_selection_policy: str = Field(
        default="registry_order",
        description="registry_order (default, fixed ETA) or nearest (opt-in distance ranking)",
    )

    # Optimistic concurrency
    transition_retry_attempts: int = Field(default=3, ge=1)
    number_generation_attempts: int = Field(default=5, ge=1)

    # Statistics
    statistics_dedup_window: int = Field(default=10_000, ge=1)

    # Background tasks
    task_history_size: int = Field(default=1_000, ge=1)

    # Outbox redelivery
    redelivery_batch_size: int = Field(default=100, ge=1)
    redelivery_max_attempts: int = Field(default=10, ge=1)
    redelivery_interval_seconds: float = Field(default=15.0, gt=0)

    @field_validator("unit_selection_policy")
    @classmethod
    def _validate_selection_policy(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in UNIT_SELECTION_POLICIES:
            raise ValueError(
                f"UNIT_SELECTION_POLICY must be one of {', '.join(UNIT_SELECTION_POLICIES)}, got: {v!r}"
            )
        return normalized

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        env = self.environment.lower()
        if env in ("production", "prod", "staging"):
            missing = [
                env_name
                for attr, env_name in (("database_url", "DATABASE_URL"), ("redis_url", "REDIS_URL"))
                if not getattr(self, attr, "")
            ]
            if missing:
                raise ValueError(
                    f"The following required environment variables are not set "
                    f"for environment '{env}': {', '.join(missing)}."
                )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
