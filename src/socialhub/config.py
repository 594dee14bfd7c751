"""Runtime configuration read from SOCIALHUB_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class AppConfig:
    data_root: Path
    zero_persistence: bool
    headless: bool
    log_level: str
    workers: int
    loop_interval_ms: int

    @property
    def settings_path(self) -> Path:
        return self.data_root / "settings.json"

    @property
    def audit_log(self) -> Path:
        return self.data_root / "audit.log"


def load_config() -> AppConfig:
    return AppConfig(
        data_root=_data_root(),
        zero_persistence=_env_flag("SOCIALHUB_ZERO_PERSISTENCE", True),
        headless=_env_flag("SOCIALHUB_HEADLESS", False),
        log_level=str(os.getenv("SOCIALHUB_LOG_LEVEL", "INFO")).strip().upper() or "INFO",
        workers=max(1, _env_int("SOCIALHUB_WORKERS", 2)),
        loop_interval_ms=max(50, _env_int("SOCIALHUB_LOOP_INTERVAL_MS", 250)),
    )


def _data_root() -> Path:
    raw = str(os.getenv("SOCIALHUB_DATA_DIR", "")).strip()
    if raw:
        return Path(raw).expanduser()
    xdg = str(os.getenv("XDG_DATA_HOME", "")).strip()
    base = Path(xdg).expanduser() if xdg else Path.home() / ".local" / "share"
    return base / "socialhub"


def _env_flag(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default
