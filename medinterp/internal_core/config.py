from __future__ import annotations

import logging
import os
from dataclasses import dataclass


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class InterpreterConfig:
    WEBHOOK_SITE_URL: str
    WEBHOOK_TIMEOUT_SECONDS: float
    WEBHOOK_MAX_RETRIES: int
    WEBHOOK_RETRY_BACKOFF_SEC: float
    OPENAI_API_KEY: str
    MEDINTERP_REALTIME_URL: str
    MEDINTERP_REALTIME_MODEL: str
    MEDINTERP_REALTIME_VOICE: str
    MEDINTERP_SUMMARY_MODEL: str
    MEDINTERP_LOG_LEVEL: str

    @property
    def webhook_url(self) -> str | None:
        url = self.WEBHOOK_SITE_URL.strip()
        return url or None

    @property
    def openai_api_key(self) -> str | None:
        key = self.OPENAI_API_KEY.strip()
        return key or None

    def realtime_endpoint(self) -> str:
        base = self.MEDINTERP_REALTIME_URL.rstrip("/")
        return f"{base}?model={self.MEDINTERP_REALTIME_MODEL}"


def load_config() -> InterpreterConfig:
    return InterpreterConfig(
        WEBHOOK_SITE_URL=_getenv_str("WEBHOOK_SITE_URL", ""),
        WEBHOOK_TIMEOUT_SECONDS=_getenv_float("WEBHOOK_TIMEOUT_SECONDS", 10.0),
        WEBHOOK_MAX_RETRIES=max(0, _getenv_int("WEBHOOK_MAX_RETRIES", 0)),
        WEBHOOK_RETRY_BACKOFF_SEC=max(0.0, _getenv_float("WEBHOOK_RETRY_BACKOFF_SEC", 0.5)),
        OPENAI_API_KEY=_getenv_str("OPENAI_API_KEY", ""),
        MEDINTERP_REALTIME_URL=_getenv_str(
            "MEDINTERP_REALTIME_URL", "wss://api.openai.com/v1/realtime"
        ),
        MEDINTERP_REALTIME_MODEL=_getenv_str(
            "MEDINTERP_REALTIME_MODEL", "gpt-4o-realtime-preview-2025-06-03"
        ),
        MEDINTERP_REALTIME_VOICE=_getenv_str("MEDINTERP_REALTIME_VOICE", "alloy"),
        MEDINTERP_SUMMARY_MODEL=_getenv_str("MEDINTERP_SUMMARY_MODEL", "gpt-4o"),
        MEDINTERP_LOG_LEVEL=_getenv_str("MEDINTERP_LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str | None = None) -> None:
    resolved = str(level or load_config().MEDINTERP_LOG_LEVEL or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
