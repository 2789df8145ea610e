"""Site and channel settings, read fresh on every notification."""
from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from .models import SiteSetting


class SiteSettings(BaseModel):
    site_name: str = "Electronics Store"
    site_email: str = "noreply@store.com"
    site_phone: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_username and self.smtp_password)

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


class SettingsProvider(Protocol):
    def get(self) -> SiteSettings: ...


class StaticSettingsProvider:
    def __init__(self, settings: Optional[SiteSettings] = None):
        self.settings = settings or SiteSettings()

    def get(self) -> SiteSettings:
        return self.settings


class DatabaseSettingsProvider:
    """Reads the key/value ``settings`` table; blank values count as unset."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self) -> SiteSettings:
        db = self.session_factory()
        try:
            rows = db.query(SiteSetting.setting_key, SiteSetting.setting_value).all()
        finally:
            db.close()

        values = {}
        for key, value in rows:
            if key in SiteSettings.model_fields and value not in (None, ""):
                values[key] = value
        if "smtp_port" in values and not str(values["smtp_port"]).isdigit():
            del values["smtp_port"]
        return SiteSettings(**values)
