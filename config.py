"""Configuration loader for the strangerd daemon.

Loads strangerd.toml, applies environment variable overrides for secrets
and deployment settings, validates values, and provides typed access to
all settings. Every setting has a default, so the daemon also runs with
no config file at all.
Immutable after load — no runtime config reloading.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "./strangerd.toml"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides: env var -> (section, key, type)
_ENV_OVERRIDES = {
    "STRANGERD_TOKEN": ("http", "token", str),
    "PORT": ("http", "port", int),
    "STRANGERD_PAIRING_PHONE": ("session", "pairing_phone", str),
    "STRANGERD_BRIDGE_URL": ("session", "bridge_url", str),
}

_AUTH_METHODS = ("qr", "pairing_code")
_CHANNELS = ("bridge", "replay")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from strangerd.toml."""

    def __init__(self, data: dict | None = None):
        self._data = data if data is not None else {}
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, (section, key, cast) in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if not val:
                continue
            try:
                val = cast(val)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}: {val!r}") from e
            if not isinstance(self._data.get(section), dict):
                self._data[section] = {}
            self._data[section][key] = val

    def _validate(self):
        errors = []
        port = self.http_port
        if not isinstance(port, int) or not 0 <= port <= 65535:
            errors.append(f"[http] port must be 0-65535, got {port!r}")
        for name, value in (
            ("[capture] excerpt_limit", self.excerpt_limit),
            ("[capture] probe_attempts", self.probe_attempts),
            ("[export] batch_size", self.batch_size),
            ("[http] rate_limit", self.http_rate_limit),
        ):
            if not isinstance(value, int) or value < 1:
                errors.append(f"{name} must be a positive integer, got {value!r}")
        for name, value in (
            ("[capture] probe_delay", self.probe_delay),
            ("[session] reconnect_delay", self.reconnect_delay),
            ("[export] flush_interval_seconds", self.flush_interval),
        ):
            if value < 0:
                errors.append(f"{name} must be >= 0, got {value!r}")
        if self.auth_method not in _AUTH_METHODS:
            errors.append(f"[session] auth_method must be one of {_AUTH_METHODS}, "
                          f"got {self.auth_method!r}")
        elif self.auth_method == "pairing_code" and not self.pairing_phone:
            errors.append("[session] pairing_phone is required for auth_method = \"pairing_code\"")
        if self.session_channel not in _CHANNELS:
            errors.append(f"[session] channel must be one of {_CHANNELS}, "
                          f"got {self.session_channel!r}")
        elif self.session_channel == "replay" and not self.replay_file:
            errors.append("[session] replay_file is required for channel = \"replay\"")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- HTTP ---

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="0.0.0.0")  # noqa: S104 — the download endpoint is meant to be reachable

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=8080)

    @property
    def http_token(self) -> str:
        return _deep_get(self._data, "http", "token", default="")

    @property
    def http_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "rate_limit", default=30)

    @property
    def http_rate_window(self) -> int:
        return _deep_get(self._data, "http", "rate_window", default=60)

    # --- Capture ---

    @property
    def excerpt_limit(self) -> int:
        return _deep_get(self._data, "capture", "excerpt_limit", default=100)

    @property
    def placeholder_name(self) -> str:
        return _deep_get(self._data, "capture", "placeholder_name", default="Unknown")

    @property
    def probe_attempts(self) -> int:
        return _deep_get(self._data, "capture", "probe_attempts", default=3)

    @property
    def probe_delay(self) -> float:
        return float(_deep_get(self._data, "capture", "probe_delay", default=1.0))

    @property
    def rehydrate(self) -> bool:
        return _deep_get(self._data, "capture", "rehydrate", default=True)

    # --- Export ---

    @property
    def export_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "export", "dir",
                                       default="~/.strangerd/exports"))

    @property
    def batch_size(self) -> int:
        return _deep_get(self._data, "export", "batch_size", default=10)

    @property
    def flush_interval(self) -> float:
        return float(_deep_get(self._data, "export", "flush_interval_seconds", default=0))

    # --- Session ---

    @property
    def session_channel(self) -> str:
        return _deep_get(self._data, "session", "channel", default="bridge")

    @property
    def bridge_url(self) -> str:
        return _deep_get(self._data, "session", "bridge_url", default="http://127.0.0.1:3000")

    @property
    def replay_file(self) -> str:
        return _deep_get(self._data, "session", "replay_file", default="")

    @property
    def poll_timeout(self) -> int:
        return _deep_get(self._data, "session", "poll_timeout", default=30)

    @property
    def auth_method(self) -> str:
        return _deep_get(self._data, "session", "auth_method", default="qr")

    @property
    def pairing_phone(self) -> str:
        return _deep_get(self._data, "session", "pairing_phone", default="")

    @property
    def reconnect_delay(self) -> float:
        return float(_deep_get(self._data, "session", "reconnect_delay", default=5.0))

    @property
    def purge_exports_on_logout(self) -> bool:
        return _deep_get(self._data, "session", "purge_exports_on_logout", default=False)

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.strangerd"))

    @property
    def credentials_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "credentials_dir",
                                       default="~/.strangerd/auth"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.strangerd/strangerd.log"))

    # --- Logging ---

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as strangerd.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(
    path: str | Path = DEFAULT_CONFIG_PATH,
    overrides: dict | None = None,
    required: bool = False,
) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to strangerd.toml config file.
        overrides: Dict of dotted-key overrides applied to the raw TOML data
                   before constructing Config (e.g. CLI args).
        required: Raise ConfigError if the file is missing. Otherwise a
                  missing file means built-in defaults.
    """
    p = Path(path).expanduser().resolve()
    if p.exists():
        _load_dotenv(p)
        try:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    elif required:
        raise ConfigError(f"Config file not found: {p}")
    else:
        log.info("No config file at %s, using defaults", p)
        data = {}
    # Apply overrides before validation
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data)
