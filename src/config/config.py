"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

from src.core.json_utils import dumps
from src.core.utils import normalize_symbol

load_dotenv()

log = logging.getLogger("dcabot")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    base_url: str
    ws_url: str
    instruments: List[str]
    api_key: str | None
    api_secret: str | None
    http_timeout: float
    # Event ledger
    ledger_dir: str
    ledger_retention_days: int
    ledger_archive_interval_sec: int
    archive_s3_bucket: str | None
    # ApiGovernor
    max_requests_per_second: int
    max_requests_per_minute: int
    circuit_threshold: int
    circuit_cooldown_sec: float
    backoff_base_sec: float
    backoff_max_sec: float
    limit_restore_sec: float
    call_timeout_sec: float
    max_attempts: int
    governor_workers: int
    governor_tick_sec: float
    # StreamIngestor
    reconnect_delay_sec: float
    max_reconnect_attempts: int
    heartbeat_interval_sec: float
    liveness_interval_sec: float
    stale_after_sec: float
    poll_interval_sec: float
    # Reconciliation
    reconcile_interval_sec: float
    reconcile_on_startup: bool
    default_tolerance: float
    per_instrument_config: str
    # Operations
    fresh_start: bool
    metrics_port: int
    log_file: str | None
    log_level: str
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (secrets masked)."""
        out = self.__dict__.copy()
        for key in ("api_key", "api_secret"):
            if out.get(key):
                out[key] = "***"
        return out

    @staticmethod
    def _instruments() -> List[str]:
        raw = os.getenv("BP_INSTRUMENTS")
        if not raw:
            return [normalize_symbol(os.getenv("BP_INSTRUMENT", "SOL_USDC"))]
        return [normalize_symbol(s) for s in raw.split(",") if s.strip()]

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            base_url=os.getenv("BP_BASE_URL", "https://api.backpack.exchange"),
            ws_url=os.getenv("BP_WS_URL", "wss://ws.backpack.exchange"),
            instruments=cls._instruments(),
            api_key=os.getenv("BP_API_KEY"),
            api_secret=os.getenv("BP_API_SECRET"),
            http_timeout=_float_env("BP_HTTP_TIMEOUT", 10.0),
            ledger_dir=os.getenv("BP_LEDGER_DIR", "logs"),
            ledger_retention_days=_int_env("BP_LEDGER_RETENTION_DAYS", 30),
            ledger_archive_interval_sec=_int_env("BP_LEDGER_ARCHIVE_INTERVAL_SEC", 3600),
            archive_s3_bucket=os.getenv("BP_ARCHIVE_S3_BUCKET"),
            max_requests_per_second=_int_env("BP_MAX_RPS", 10),
            max_requests_per_minute=_int_env("BP_MAX_RPM", 100),
            circuit_threshold=_int_env("BP_CIRCUIT_THRESHOLD", 3),
            circuit_cooldown_sec=_float_env("BP_CIRCUIT_COOLDOWN_SEC", 60.0),
            backoff_base_sec=_float_env("BP_BACKOFF_BASE_SEC", 1.0),
            backoff_max_sec=_float_env("BP_BACKOFF_MAX_SEC", 120.0),
            limit_restore_sec=_float_env("BP_LIMIT_RESTORE_SEC", 60.0),
            call_timeout_sec=_float_env("BP_CALL_TIMEOUT_SEC", 30.0),
            max_attempts=_int_env("BP_MAX_ATTEMPTS", 3),
            governor_workers=_int_env("BP_GOVERNOR_WORKERS", 4),
            governor_tick_sec=_float_env("BP_GOVERNOR_TICK_SEC", 0.1),
            reconnect_delay_sec=_float_env("BP_RECONNECT_DELAY_SEC", 5.0),
            max_reconnect_attempts=_int_env("BP_MAX_RECONNECT_ATTEMPTS", 5),
            heartbeat_interval_sec=_float_env("BP_HEARTBEAT_SEC", 30.0),
            liveness_interval_sec=_float_env("BP_LIVENESS_SEC", 15.0),
            stale_after_sec=_float_env("BP_STALE_AFTER_SEC", 30.0),
            poll_interval_sec=_float_env("BP_POLL_INTERVAL_SEC", 5.0),
            reconcile_interval_sec=_float_env("BP_RECONCILE_INTERVAL_SEC", 300.0),
            reconcile_on_startup=env_bool("BP_RECONCILE_ON_STARTUP", True),
            default_tolerance=_float_env("BP_DEFAULT_TOLERANCE", 0.0001),
            per_instrument_config=os.getenv("BP_PER_INSTRUMENT_CONFIG", "configs/per_instrument.yaml"),
            fresh_start=env_bool("BP_FRESH_START", False),
            metrics_port=_int_env("BP_METRICS_PORT", 9095),
            log_file=os.getenv("BP_LOG_FILE", "dcabot.log") or None,
            log_level=os.getenv("BP_LOG_LEVEL", "INFO").upper(),
            alert_webhook_url=os.getenv("BP_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("BP_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("BP_ALERT_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if not self.instruments:
            raise ValueError("BP_INSTRUMENTS must name at least one instrument")
        if self.max_requests_per_second <= 0 or self.max_requests_per_minute <= 0:
            raise ValueError("BP_MAX_RPS and BP_MAX_RPM must be > 0")
        if self.max_requests_per_second > self.max_requests_per_minute:
            raise ValueError("BP_MAX_RPS must be <= BP_MAX_RPM")
        if self.circuit_threshold <= 0:
            raise ValueError("BP_CIRCUIT_THRESHOLD must be > 0")
        if self.backoff_base_sec <= 0 or self.backoff_max_sec < self.backoff_base_sec:
            raise ValueError("Backoff must satisfy 0 < BP_BACKOFF_BASE_SEC <= BP_BACKOFF_MAX_SEC")
        if self.call_timeout_sec <= 0:
            raise ValueError("BP_CALL_TIMEOUT_SEC must be > 0")
        if self.max_attempts <= 0:
            raise ValueError("BP_MAX_ATTEMPTS must be > 0")
        if self.governor_workers <= 0:
            raise ValueError("BP_GOVERNOR_WORKERS must be > 0")
        if self.stale_after_sec <= 0 or self.liveness_interval_sec <= 0:
            raise ValueError("Stream liveness thresholds must be > 0")
        if self.heartbeat_interval_sec <= 0 or self.reconnect_delay_sec <= 0:
            raise ValueError("Stream heartbeat and reconnect delay must be > 0")
        if self.default_tolerance < 0:
            raise ValueError("BP_DEFAULT_TOLERANCE must be >= 0")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"BP_LOG_LEVEL={self.log_level} is not a logging level")

        if self.stale_after_sec <= self.heartbeat_interval_sec / 2:
            log.warning(dumps({
                "event": "config_warning",
                "msg": "BP_STALE_AFTER_SEC is close to the heartbeat interval; expect spurious reconnects",
            }))
        if not self.api_key or not self.api_secret:
            log.warning(dumps({
                "event": "config_warning",
                "msg": "BP_API_KEY/BP_API_SECRET not set; private calls will fail",
            }))


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    log.info(dumps({
        "event": "config_loaded",
        "instruments": cfg.instruments,
        "ledger_dir": cfg.ledger_dir,
        "rps": cfg.max_requests_per_second,
        "rpm": cfg.max_requests_per_minute,
        "stale_after_sec": cfg.stale_after_sec,
        "reconcile_interval_sec": cfg.reconcile_interval_sec,
    }))
