from functools import lru_cache
from typing import List, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # Application
    APP_NAME: str = "Experiment Promoter"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # API
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    STORE_TIMEOUT_SECONDS: float = 10.0

    # Security
    ADMIN_API_TOKEN: str

    # Default promotion policy (overridable per request via customRules)
    PROMOTION_MIN_CONFIDENCE_LEVEL: float = 95
    PROMOTION_MIN_SAMPLE_SIZE: int = 1000
    PROMOTION_MIN_IMPROVEMENT_PERCENT: float = 5.0
    PROMOTION_MAX_ERROR_RATE: float = 0.05
    PROMOTION_STRATEGY: str = "immediate"
    PROMOTION_ARCHIVE_LOSERS: bool = True
    # Operational rules preset ("default" or "aggressive"); unset picks by ENVIRONMENT
    PROMOTION_RULES_PRESET: Optional[str] = None
    # Experiments the sweep never auto-promotes
    PROMOTION_EXCLUDED_EXPERIMENTS: Union[List[str], str] = []

    # Alerts
    ALERT_THROTTLE_MINUTES: int = 15

    # CORS
    CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("CORS_ORIGINS", "PROMOTION_EXCLUDED_EXPERIMENTS", mode="before")
    @classmethod
    def parse_name_list(cls, v):
        if isinstance(v, str):
            # Handle both comma-separated and JSON array strings
            if v.strip().startswith("["):
                import json

                return json.loads(v)
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("PROMOTION_STRATEGY")
    @classmethod
    def check_strategy(cls, v: str) -> str:
        if v not in ("immediate", "gradual"):
            raise ValueError("PROMOTION_STRATEGY must be 'immediate' or 'gradual'")
        return v

    @field_validator("PROMOTION_RULES_PRESET")
    @classmethod
    def check_rules_preset(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("default", "aggressive"):
            raise ValueError("PROMOTION_RULES_PRESET must be 'default' or 'aggressive'")
        return v


@lru_cache()
def get_settings() -> Settings:
    return Settings()
