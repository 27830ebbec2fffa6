# condo_collections/config.py
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import EmailStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # --- Database ---
    database_url: str = "sqlite:///data/collections.db"

    # --- Logging ---
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    log_format: Literal["text", "json"] = "text"

    # --- Association ---
    association_name: str = "Heritage Condominium Association"
    association_address: str = "13275 Biscayne Blvd, North Miami, FL 33181"
    payment_portal_url: str = "https://portal.heritagecondo.example/owner-portal"
    board_contact_phone: str = "(305) 555-0100"

    # --- Email ---
    email_backend: str = "local"
    sendgrid_api_key: str | None = None
    email_from_address: EmailStr | None = None
    email_from_name: str = "Heritage Condo Board"
    email_reply_to: EmailStr | None = None
    email_host: str | None = None
    email_port: int | None = 587
    email_host_user: str | None = None
    email_host_password: str | None = None
    email_use_tls: bool = True
    email_output_dir: str = "data/emails"

    # --- Collections recipients (fallbacks when no user holds the role) ---
    board_email: EmailStr | None = "board@heritagecondo.example"
    board_cc_email: EmailStr | None = None
    attorney_email: EmailStr | None = None
    attorney_name: str = "Association Counsel"

    # --- Collections scheduler ---
    collections_scheduler_enabled: bool = True
    collections_run_hour: int = 6
    collections_run_minute: int = 0
    collections_timezone: str = "America/New_York"

    # --- Dispatch ---
    dispatch_timeout_seconds: float = 30.0
    transport_max_attempts: int = 3
    transport_retry_backoff_seconds: float = 2.0

    # --- Collections policy ---
    auto_attorney_referral: bool = False
    attorney_fee_estimate: Decimal = Decimal("3500")
    court_cost_estimate: Decimal = Decimal("1500")
    default_monthly_charge: Decimal = Decimal("350")


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

# Ensure path directory exists (for SQLite)
if settings.database_url.startswith("sqlite:///"):
    db_path = Path(settings.database_url.replace("sqlite:///", ""))
    db_path.parent.mkdir(parents=True, exist_ok=True)

# --- SQLAlchemy setup ---
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False}
    if settings.database_url.startswith("sqlite")
    else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
