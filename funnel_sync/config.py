"""
Runtime configuration for the funnel sync pipeline.

Secrets come from .dlt/secrets.toml (or the equivalent SOURCES__META_ADS__*
environment variables), tunables from .dlt/config.toml. Everything is read
once into an immutable SyncConfig which is passed into each component.

Example .dlt/config.toml:

    [sources.meta_ads]
    api_version = "v18.0"
    page_size = 1000
    window_days = 7
    request_timeout_seconds = 30
    destination = "postgres"
    dataset_name = "meta_ads"
    table_name = "funnel_analytics"
    schedule_hour = 1
    schedule_minute = 0
    schedule_timezone = "UTC"
"""

import os
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Optional

import dlt
from dotenv import load_dotenv


GRAPH_BASE_URL = "https://graph.facebook.com"
CONFIG_SECTION = "sources.meta_ads"


@dataclass(frozen=True)
class DateWindow:
    """Inclusive calendar-date reporting window."""

    start_date: date
    end_date: date

    @classmethod
    def trailing(cls, days: int = 7, today: Optional[date] = None) -> "DateWindow":
        """Window covering [today - days, today], both ends inclusive."""
        today = today or date.today()
        return cls(start_date=today - timedelta(days=days), end_date=today)

    def as_time_range(self) -> dict[str, str]:
        return {"since": self.start_date.isoformat(), "until": self.end_date.isoformat()}


@dataclass(frozen=True)
class SyncConfig:
    access_token: str
    api_version: str = "v18.0"
    base_url: str = GRAPH_BASE_URL
    page_size: int = 1000
    window_days: int = 7
    request_timeout_seconds: float = 30.0
    destination: str = "postgres"
    dataset_name: str = "meta_ads"
    table_name: str = "funnel_analytics"
    schedule_hour: int = 1
    schedule_minute: int = 0
    schedule_timezone: str = "UTC"
    server_host: str = "0.0.0.0"
    server_port: int = 3000

    @property
    def graph_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_version}"

    def current_window(self, today: Optional[date] = None) -> DateWindow:
        return DateWindow.trailing(self.window_days, today=today)

    @classmethod
    def from_dlt(cls) -> "SyncConfig":
        """
        Build the configuration from dlt's config providers.

        Raises:
            ValueError: If the Meta access token is not configured
        """
        load_dotenv()

        access_token = dlt.secrets.get(f"{CONFIG_SECTION}.access_token")
        if not access_token:
            raise ValueError(
                f"Missing Meta access token in .dlt/secrets.toml at {CONFIG_SECTION}.access_token"
            )

        def setting(key: str, default: Any, cast=str):
            value = dlt.config.get(f"{CONFIG_SECTION}.{key}")
            return default if value is None else cast(value)

        port = os.getenv("PORT") or dlt.config.get("server.port")

        return cls(
            access_token=access_token,
            api_version=setting("api_version", cls.api_version),
            base_url=setting("base_url", cls.base_url),
            page_size=setting("page_size", cls.page_size, int),
            window_days=setting("window_days", cls.window_days, int),
            request_timeout_seconds=setting("request_timeout_seconds", cls.request_timeout_seconds, float),
            destination=setting("destination", cls.destination),
            dataset_name=setting("dataset_name", cls.dataset_name),
            table_name=setting("table_name", cls.table_name),
            schedule_hour=setting("schedule_hour", cls.schedule_hour, int),
            schedule_minute=setting("schedule_minute", cls.schedule_minute, int),
            schedule_timezone=setting("schedule_timezone", cls.schedule_timezone),
            server_host=dlt.config.get("server.host") or cls.server_host,
            server_port=int(port) if port else cls.server_port,
        )
