"""Application settings shared by the booking, conflict and magic-link services."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

_DOTENV_PATH = find_dotenv(filename=".env", raise_error_if_not_found=False, usecwd=True)
if _DOTENV_PATH:
    load_dotenv(_DOTENV_PATH)


class AppSettings(BaseSettings):
    """Values read from the environment (``PUBLIC_APP_URL`` and friends)."""

    model_config = SettingsConfigDict(extra="ignore")

    environment: str = "development"
    public_app_url: str = "http://localhost:3000"
    magic_link_ttl_hours: int = 24
    group_invitation_ttl_days: int = 7
    available_bookings_page_size: int = 20
    resend_webhook_secret: Optional[str] = None
    webhook_max_age_seconds: int = 300

    @property
    def normalized_public_base(self) -> str:
        return self.public_app_url.rstrip("/")


@lru_cache
def get_settings() -> AppSettings:
    try:
        return AppSettings()
    except ValidationError as exc:  # pragma: no cover - configuration error
        raise RuntimeError("Application environment variables are invalid") from exc
