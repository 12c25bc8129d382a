"""
Runtime configuration, read once from the environment (and a local .env).
"""
from typing import Dict, List, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PER_KG_RATES: Dict[str, float] = {
    "plastic": 20,
    "organic": 15,
    "hazardous": 100,
    "electronic": 50,
    "mixed": 25,
}

URGENCY_FACTORS: Dict[str, float] = {
    "normal": 1.0,
    "urgent": 1.5,
    "emergency": 2.0,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    database_url: str = ""
    database_name: str = "wastebolt"
    jwt_secret: str = "supersecretkey"
    access_token_expire_minutes: int = Field(60 * 24, gt=0)
    # ADMIN_EMAILS is a comma-separated list
    admin_emails: Union[List[str], str] = Field(default_factory=list)
    storage_dir: str = "/tmp/uploads"
    log_level: str = "INFO"

    messaging_webhook_url: str = ""
    messaging_timeout_s: float = Field(10.0, gt=0)
    notification_workers: int = Field(4, ge=1)

    dispatch_radius_km: float = Field(10.0, gt=0)
    location_max_age_minutes: float = Field(15.0, gt=0)
    grid_cell_deg: float = Field(0.05, gt=0)
    pending_timeout_minutes: float = Field(10.0, gt=0)

    surge_interval_s: float = Field(120.0, gt=0)
    surge_validity_s: float = Field(300.0, gt=0)
    surge_threshold: float = Field(1.0, ge=0)
    surge_step: float = Field(0.25, ge=0)
    surge_max_multiplier: float = Field(2.5, ge=1)

    per_kg_rates: Dict[str, float] = Field(default_factory=lambda: dict(PER_KG_RATES))
    urgency_factors: Dict[str, float] = Field(default_factory=lambda: dict(URGENCY_FACTORS))
    currency: str = "KES"
    peak_factor: float = Field(1.2, ge=1)
    peak_start_hour: int = Field(17, ge=0, le=23)
    peak_end_hour: int = Field(20, ge=0, le=23)
    local_utc_offset_hours: float = Field(3.0, ge=-12, le=14)
    max_quantity_kg: float = Field(10000.0, gt=0)

    commission_rate: float = Field(0.15, ge=0, le=1)
    platform_fee: float = Field(50.0, ge=0)

    enable_background_jobs: bool = True
    redispatch_interval_s: float = Field(60.0, gt=0)
    expiry_interval_s: float = Field(60.0, gt=0)

    io_retry_attempts: int = Field(3, ge=1)
    io_retry_base_s: float = Field(0.2, ge=0)

    @field_validator("admin_emails", mode="before")
    @classmethod
    def _split_emails(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return [e.strip().lower() for e in value if e.strip()]

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls) -> "Settings":
        return cls()
