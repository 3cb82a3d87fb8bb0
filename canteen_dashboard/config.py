from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    backend_mode: str = "sql"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    backend_timeout: float = 5.0
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    webhook_secret: Optional[str] = None
    api_key: Optional[str] = None
    timezone_name: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            backend_mode=os.environ.get("BACKEND_MODE", "sql").lower(),
            supabase_url=os.environ.get("SUPABASE_URL") or None,
            supabase_key=os.environ.get("SUPABASE_KEY") or None,
            backend_timeout=float(os.environ.get("BACKEND_TIMEOUT", "5")),
            allowed_origins=[
                origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
            ],
            webhook_secret=os.environ.get("WEBHOOK_SECRET") or None,
            api_key=os.environ.get("API_KEY") or None,
            timezone_name=os.environ.get("DASHBOARD_TIMEZONE") or None,
        )

    @property
    def timezone(self) -> tzinfo | None:
        return ZoneInfo(self.timezone_name) if self.timezone_name else None


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
