"""
Player configuration.

Settings are read from config.json in the config directory, then overridden
by CADENCE_* environment variables (a local .env file is honoured).
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from shared import constants as C

logger = logging.getLogger(__name__)


@dataclass
class PlayerConfig:
    """
    Player configuration stored locally on each device.

    Timing values are seconds. Only fields declared here are accepted when
    loading from disk; anything else in the file is ignored.
    """
    api_base_url: str = C.DEFAULT_API_BASE_URL
    cache_dir: str = C.DEFAULT_CACHE_DIR
    cache_max_size_gb: float = C.DEFAULT_CACHE_SIZE_GB
    network_timeout: float = C.DEFAULT_NETWORK_TIMEOUT
    probe_timeout: float = C.DEFAULT_PROBE_TIMEOUT
    download_attempts: int = C.DOWNLOAD_ATTEMPTS
    engine_setup_timeout: float = C.ENGINE_SETUP_TIMEOUT
    stall_check_interval: float = C.STALL_CHECK_INTERVAL
    stall_threshold_percent: int = C.STALL_THRESHOLD_PERCENT
    stall_resume_delay: float = C.STALL_RESUME_DELAY
    skip_guard_timeout: float = C.SKIP_GUARD_TIMEOUT
    skip_release_delay: float = C.SKIP_RELEASE_DELAY
    skip_retry_delay: float = C.SKIP_RETRY_DELAY
    connectivity_check_interval: float = C.CONNECTIVITY_CHECK_INTERVAL
    watchdog_interval: float = C.BACKGROUND_WATCHDOG_INTERVAL
    max_playback_retries: int = C.MAX_PLAYBACK_RETRIES
    lookahead_foreground: int = C.LOOKAHEAD_FOREGROUND
    lookahead_background: int = C.LOOKAHEAD_BACKGROUND
    volume: int = 100
    log_level: str = "INFO"

    @property
    def cache_max_size_bytes(self) -> int:
        return int(self.cache_max_size_gb * 1024 * 1024 * 1024)

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlayerConfig':
        field_names = {f.name for f in dataclasses.fields(cls)}
        filtered_data = {k: v for k, v in data.items() if k in field_names}
        return cls(**filtered_data)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def default_config_path() -> Path:
    return Path(C.DEFAULT_CONFIG_DIR).expanduser() / C.CONFIG_FILENAME


def _coerce(value: str, current: Any) -> Any:
    if isinstance(current, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def apply_env_overrides(config: PlayerConfig,
                        environ: Optional[Dict[str, str]] = None) -> PlayerConfig:
    """Override fields from CADENCE_<FIELD> variables, e.g. CADENCE_API_BASE_URL."""
    environ = os.environ if environ is None else environ
    for f in dataclasses.fields(config):
        key = C.ENV_PREFIX + f.name.upper()
        if key not in environ:
            continue
        current = getattr(config, f.name)
        try:
            setattr(config, f.name, _coerce(environ[key], current))
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", key, environ[key])
    return config


def load_config(path: Optional[Path] = None,
                environ: Optional[Dict[str, str]] = None) -> PlayerConfig:
    """Load configuration from disk and the environment."""
    if environ is None:
        load_dotenv()

    config_path = Path(path) if path else default_config_path()
    config = PlayerConfig()
    if config_path.exists():
        try:
            content = config_path.read_text(encoding="utf-8").strip()
            if content:
                config = PlayerConfig.from_dict(json.loads(content))
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning("Could not read config %s, using defaults: %s", config_path, e)

    return apply_env_overrides(config, environ)


def save_config(config: PlayerConfig, path: Optional[Path] = None) -> Path:
    config_path = Path(path) if path else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(config.to_json(), encoding="utf-8")
    return config_path
