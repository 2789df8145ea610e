"""Process configuration (env)."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

INPROCESS = "inprocess"
RABBITMQ = "rabbitmq"


@dataclass
class Config:
    database_url: str
    upload_dir: str
    receipt_max_bytes: int
    notification_transport: str
    rabbitmq_host: str
    rabbitmq_user: str
    rabbitmq_password: str
    telegram_api_base: str
    log_level: str

    @classmethod
    def from_env(cls) -> "Config":
        transport = os.getenv("NOTIFICATION_TRANSPORT", INPROCESS).strip().lower()
        if transport not in (INPROCESS, RABBITMQ):
            raise ValueError(f"Unknown NOTIFICATION_TRANSPORT: {transport}")
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./storefront.db"),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            receipt_max_bytes=int(os.getenv("RECEIPT_MAX_BYTES", str(10 * 1024 * 1024))),
            notification_transport=transport,
            rabbitmq_host=os.getenv("RABBITMQ_HOST", "rabbitmq"),
            rabbitmq_user=os.getenv("RABBITMQ_USER", "guest"),
            rabbitmq_password=os.getenv("RABBITMQ_PASSWORD", "guest"),
            telegram_api_base=os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
