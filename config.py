# config.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


# ============================================================
# Config model
# ============================================================

class _Section(BaseModel):
    # camelCase keys in config.json, snake_case in code. Unknown keys are ignored.
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class SecurityConfig(_Section):
    enable_rate_limiting: bool = Field(True, alias="enableRateLimiting")
    max_requests_per_minute: int = Field(10, alias="maxRequestsPerMinute", ge=1)
    block_suspicious_ips: bool = Field(True, alias="blockSuspiciousIPs")
    enable_csrf: bool = Field(True, alias="enableCSRF")


class LoggingConfig(_Section):
    log_to_file: bool = Field(True, alias="logToFile")
    log_level: str = Field("detailed", alias="logLevel")
    auto_cleanup: bool = Field(True, alias="autoCleanup")
    cleanup_after_days: int = Field(30, alias="cleanupAfterDays", ge=0)


class FeaturesConfig(_Section):
    enable_api: bool = Field(True, alias="enableAPI")
    enable_export: bool = Field(True, alias="enableExport")
    enable_statistics: bool = Field(True, alias="enableStatistics")
    real_time_updates: bool = Field(False, alias="realTimeUpdates")


class AppConfig(_Section):
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)


def load_config(path: Path) -> AppConfig:
    """
    Load config.json exactly once at startup.

    Never raises: a missing file, unreadable file, broken JSON or a value that
    fails validation all fall back to the built-in defaults.
    """
    if not path.exists():
        logger.info(f"Config file not found ({path}), using defaults")
        return AppConfig()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return AppConfig.model_validate(raw)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Failed to load config from {path}: {e}. Using defaults")
        return AppConfig()


# ============================================================
# Logging
# ============================================================

_FILE_HANDLER: Optional[logging.Handler] = None


def _level_for(log_level: str) -> int:
    v = (log_level or "").strip().lower()
    if v == "debug":
        return logging.DEBUG
    if v == "detailed":
        return logging.INFO
    return logging.WARNING


def configure_logging(cfg: LoggingConfig, log_path: Path) -> None:
    """
    Apply logging.logLevel / logging.logToFile to the root logger.

    Calling this again (tests, reload) swaps the file handler instead of
    stacking a second one.
    """
    global _FILE_HANDLER

    root = logging.getLogger()
    root.setLevel(_level_for(cfg.log_level))

    if _FILE_HANDLER is not None:
        root.removeHandler(_FILE_HANDLER)
        _FILE_HANDLER.close()
        _FILE_HANDLER = None

    if cfg.log_to_file:
        try:
            handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        except OSError as e:
            logger.error(f"Cannot open log file {log_path}: {e}")
            return
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _FILE_HANDLER = handler
