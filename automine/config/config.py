"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from automine.core.credentials import Credentials, load_credentials

load_dotenv()

DEFAULT_API_URL = "https://automine.refinore.com/api"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    api_url: str
    api_key: str | None
    http_timeout: float
    http_deadline: float
    retry_base_ms: int
    retry_cap_sec: float
    retry_max_attempts: int
    queue_capacity: int
    sse_enabled: bool
    poll_round_sec: float
    poll_results_sec: float
    settle_timeout_sec: float
    pause_recheck_sec: float
    risk_cooldown_sec: float | None
    shutdown_grace_sec: float
    ledger_window: int
    tile_ids_field: str
    metrics_port: int
    metrics_token: str | None
    log_file: str | None
    log_level: str
    session_profile: str

    def dump(self) -> dict:
        """Return a dict of settings for logging, with the credential masked."""
        data = self.__dict__.copy()
        if data.get("api_key"):
            data["api_key"] = data["api_key"][:4] + "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ValueError(f"{key} must be an integer, got {raw!r}") from exc

        def _float_env(key: str, default: float | None) -> float | None:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ValueError(f"{key} must be a number, got {raw!r}") from exc

        cfg = cls(
            api_url=os.getenv("REFINORE_API_URL", DEFAULT_API_URL).rstrip("/"),
            # REFINORE_AUTH_TOKEN is the legacy JWT variable
            api_key=os.getenv("REFINORE_API_KEY") or os.getenv("REFINORE_AUTH_TOKEN"),
            http_timeout=_float_env("REFINORE_HTTP_TIMEOUT_SEC", 15.0),
            http_deadline=_float_env("REFINORE_HTTP_DEADLINE_SEC", 60.0),
            retry_base_ms=_int_env("REFINORE_RETRY_BASE_MS", 500),
            retry_cap_sec=_float_env("REFINORE_RETRY_CAP_SEC", 30.0),
            retry_max_attempts=_int_env("REFINORE_RETRY_MAX_ATTEMPTS", 6),
            queue_capacity=_int_env("REFINORE_QUEUE_CAPACITY", 1024),
            sse_enabled=env_bool("REFINORE_SSE_ENABLED", True),
            poll_round_sec=_float_env("REFINORE_POLL_ROUND_SEC", 2.0),
            poll_results_sec=_float_env("REFINORE_POLL_RESULTS_SEC", 10.0),
            settle_timeout_sec=_float_env("REFINORE_SETTLE_TIMEOUT_SEC", 120.0),
            pause_recheck_sec=_float_env("REFINORE_PAUSE_RECHECK_SEC", 60.0),
            risk_cooldown_sec=_float_env("REFINORE_RISK_COOLDOWN_SEC", None),
            shutdown_grace_sec=_float_env("REFINORE_SHUTDOWN_GRACE_SEC", 10.0),
            ledger_window=_int_env("REFINORE_LEDGER_WINDOW", 100),
            tile_ids_field=os.getenv("REFINORE_TILE_IDS_FIELD", "tile_ids"),
            metrics_port=_int_env("REFINORE_METRICS_PORT", 0),
            metrics_token=os.getenv("REFINORE_METRICS_TOKEN"),
            log_file=os.getenv("REFINORE_LOG_FILE", "automine.log") or None,
            log_level=os.getenv("REFINORE_LOG_LEVEL", "INFO").upper(),
            session_profile=os.getenv("REFINORE_SESSION_PROFILE", "configs/session.yaml"),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def credentials(self) -> Credentials:
        """Resolve the credential variant; raises ValueError with a clear message if missing."""
        return load_credentials(self.api_key)

    def _validate(self) -> None:
        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError(f"REFINORE_API_URL must be an http(s) URL, got {self.api_url!r}")
        if self.http_timeout <= 0 or self.http_deadline <= 0:
            raise ValueError("REFINORE_HTTP_TIMEOUT_SEC and REFINORE_HTTP_DEADLINE_SEC must be > 0")
        if self.http_deadline < self.http_timeout:
            raise ValueError("REFINORE_HTTP_DEADLINE_SEC must be >= REFINORE_HTTP_TIMEOUT_SEC")
        if self.retry_base_ms <= 0 or self.retry_cap_sec <= 0:
            raise ValueError("Retry base and cap must be > 0")
        if self.retry_max_attempts < 1:
            raise ValueError("REFINORE_RETRY_MAX_ATTEMPTS must be >= 1")
        if self.queue_capacity < 1:
            raise ValueError("REFINORE_QUEUE_CAPACITY must be >= 1")
        if self.poll_round_sec <= 0 or self.poll_results_sec <= 0:
            raise ValueError("Polling intervals must be > 0")
        if self.settle_timeout_sec <= 0 or self.pause_recheck_sec <= 0:
            raise ValueError("REFINORE_SETTLE_TIMEOUT_SEC and REFINORE_PAUSE_RECHECK_SEC must be > 0")
        if self.risk_cooldown_sec is not None and self.risk_cooldown_sec <= 0:
            raise ValueError("REFINORE_RISK_COOLDOWN_SEC must be > 0 when set")
        if self.ledger_window < 1:
            raise ValueError("REFINORE_LEDGER_WINDOW must be >= 1")
        if self.tile_ids_field not in ("tile_ids", "custom_tiles"):
            raise ValueError("REFINORE_TILE_IDS_FIELD must be tile_ids or custom_tiles")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"REFINORE_LOG_LEVEL {self.log_level!r} is not a logging level")


def session_env_overrides() -> Dict[str, Any]:
    """SessionConfig fields supplied through REFINORE_* variables."""
    mapping = {
        "REFINORE_SOL_PER_ROUND": "sol_per_round",
        "REFINORE_NUM_TILES": "num_tiles",
        "REFINORE_RISK": "risk_tolerance",
        "REFINORE_MINING_TOKEN": "mining_token",
        "REFINORE_TILE_SELECTION": "tile_selection",
        "REFINORE_AUTO_RESTART": "auto_restart",
        "REFINORE_EV_THRESHOLD": "ev_threshold",
        "REFINORE_MOTHERLODE_ONLY": "motherlode_only",
        "REFINORE_STOP_LOSS_SOL": "stop_loss_sol",
        "REFINORE_MAX_LOSS_STREAK": "max_loss_streak",
    }
    out: Dict[str, Any] = {}
    for env_key, field_name in mapping.items():
        raw = os.getenv(env_key)
        if raw is not None and raw != "":
            out[field_name] = raw
    return out


def _sanity_check(cfg: Settings) -> None:
    """Log the effective settings once at startup so overrides are obvious."""
    logger = logging.getLogger("automine")
    payload: Dict[str, Optional[Any]] = {
        "event": "config_loaded",
        "api_url": cfg.api_url,
        "auth": "missing" if not cfg.api_key else ("api_key" if cfg.api_key.startswith("rsk_") else "bearer"),
        "http_timeout": cfg.http_timeout,
        "http_deadline": cfg.http_deadline,
        "queue_capacity": cfg.queue_capacity,
        "tile_ids_field": cfg.tile_ids_field,
    }
    logger.info(json.dumps(payload))
