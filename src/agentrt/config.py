"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    app_db: str = Field(alias="APP_DB", default="/tmp/agentrt.db")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    decision_timeout_seconds: float = Field(alias="DECISION_TIMEOUT_SECONDS", default=30.0)
    decision_confidence_threshold: float = Field(
        alias="DECISION_CONFIDENCE_THRESHOLD", default=0.5
    )
    execution_timeout_seconds: float = Field(alias="EXECUTION_TIMEOUT_SECONDS", default=30.0)
    max_transitions_per_turn: int = Field(alias="MAX_TRANSITIONS_PER_TURN", default=32)
    max_iterations: int = Field(alias="MAX_ITERATIONS", default=100)

    reasoner_base_url: str = Field(alias="REASONER_BASE_URL", default="http://localhost:30000/v1")
    reasoner_model: str = Field(alias="REASONER_MODEL", default="openai/gpt-oss-120b")
    reasoner_api_key: str = Field(alias="REASONER_API_KEY", default="")
    reasoner_timeout_seconds: float = Field(alias="REASONER_TIMEOUT_SECONDS", default=60.0)

    module_bundle_dir: str = Field(alias="MODULE_BUNDLE_DIR", default="modules")
    catalog_url: str = Field(alias="CATALOG_URL", default="")
    catalog_min_score: float = Field(alias="CATALOG_MIN_SCORE", default=0.2)


def validate_settings_for_env(settings: Settings) -> None:
    if settings.decision_timeout_seconds <= 0:
        raise ValueError("DECISION_TIMEOUT_SECONDS must be positive")
    if not 0.0 <= settings.decision_confidence_threshold <= 1.0:
        raise ValueError("DECISION_CONFIDENCE_THRESHOLD must be within [0, 1]")
    if settings.max_transitions_per_turn < 1:
        raise ValueError("MAX_TRANSITIONS_PER_TURN must be at least 1")
    if settings.max_iterations < 1:
        raise ValueError("MAX_ITERATIONS must be at least 1")
    if settings.app_env != "prod":
        return

    missing: list[str] = []
    required_non_empty = {
        "APP_DB": settings.app_db,
        "REASONER_BASE_URL": settings.reasoner_base_url,
        "REASONER_MODEL": settings.reasoner_model,
        "REASONER_API_KEY": settings.reasoner_api_key,
    }
    for key, value in required_non_empty.items():
        if not value.strip():
            missing.append(key)
    if not settings.app_db.startswith("/"):
        missing.append("APP_DB(absolute path required)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ValueError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
