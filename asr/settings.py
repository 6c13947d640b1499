from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("ASR_DB_PATH", "asr.db")
    config_path: str = os.getenv("ASR_CONFIG_PATH", "asr.yaml")

    # Loop cadence (seconds). Probes are evaluated more often than scaling.
    tick_s: float = _env_float("ASR_TICK_S", 1.0)
    probe_period_s: float = _env_float("ASR_PROBE_PERIOD_S", 1.0)
    scale_period_s: float = _env_float("ASR_SCALE_PERIOD_S", 15.0)

    # Worker pools
    probe_workers: int = _env_int("ASR_PROBE_WORKERS", 8)
    lifecycle_workers: int = _env_int("ASR_LIFECYCLE_WORKERS", 4)

    # Metrics
    metrics_staleness_s: float = _env_float("ASR_METRICS_STALENESS_S", 60.0)
    metrics_buffer: int = _env_int("ASR_METRICS_BUFFER", 10)

    # Intent retries
    backoff_base_s: float = _env_float("ASR_BACKOFF_BASE_S", 1.0)
    backoff_max_s: float = _env_float("ASR_BACKOFF_MAX_S", 60.0)
    degraded_after: int = _env_int("ASR_DEGRADED_AFTER", 5)

    # Docker adapter
    docker_network: str = os.getenv("ASR_DOCKER_NETWORK", "asr")

    # Email alerting (optional)
    enable_email: bool = _env_bool("ASR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("ASR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("ASR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("ASR_SMTP_USER")
    smtp_password: str | None = os.getenv("ASR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("ASR_EMAIL_FROM")
    email_to: str | None = os.getenv("ASR_EMAIL_TO")


settings = Settings()
