from __future__ import annotations

from pathlib import Path
import os

from .schema import Settings

DEFAULT_CONFIG_PATH = Path("config.toml")
CONFIG_ENV = "REPLYBRIDGE_CONFIG"
LOG_LEVEL_ENV = "REPLYBRIDGE_LOG_LEVEL"


def load_settings(path: str | Path | None = None) -> Settings:
    raw = path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH
    resolved = Path(raw).expanduser()
    settings = Settings.from_file(resolved) if resolved.exists() else Settings()
    level = os.environ.get(LOG_LEVEL_ENV)
    if level:
        settings.runtime.log_level = level.upper()
    return settings
