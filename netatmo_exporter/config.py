import os
import re
from dataclasses import dataclass
from typing import Callable

Getenv = Callable[[str, str], str]

DEFAULT_ADDR = "0.0.0.0:9210"
DEFAULT_REFRESH_INTERVAL = 8 * 60.0
DEFAULT_STALE_DURATION = 60 * 60.0

_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")
# Go time.Duration strings: one or more <number><unit> groups, e.g. "1h30m" or "8m0s"
_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h))+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

class ConfigError(ValueError):
    pass

@dataclass(frozen=True)
class Config:
    host: str
    port: int
    external_url: str
    log_level: str
    refresh_interval: float  # seconds
    stale_duration: float  # seconds
    token_file: str
    debug_handlers: bool
    client_id: str
    client_secret: str

def parse_duration(raw: str) -> float:
    """
    Parse a duration such as "90", "30s", "8m", "1h" or "1h30m" into seconds.
    A bare number is taken as seconds.
    """
    value = raw.strip()
    if _NUMBER_RE.match(value):
        return float(value)
    if not _DURATION_RE.match(value):
        raise ConfigError(f"invalid duration {raw!r}")
    return sum(float(n) * _UNIT_SECONDS[unit] for n, unit in _DURATION_PART_RE.findall(value))

def bool_env(getenv: Getenv, name: str, default: bool = False) -> bool:
    raw = getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def duration_env(getenv: Getenv, name: str, default: float) -> float:
    raw = getenv(name, "")
    if not raw:
        return default
    try:
        return parse_duration(raw)
    except ConfigError as e:
        raise ConfigError(f"{name}: {e}") from e

def parse_addr(addr: str) -> tuple[str, int]:
    """Split "host:port" (or ":port") into its parts."""
    host, sep, port_raw = addr.rpartition(":")
    if not sep:
        raise ConfigError(f"address {addr!r} has no port")
    try:
        port = int(port_raw)
    except ValueError:
        raise ConfigError(f"address {addr!r} has an invalid port") from None
    if not (1 <= port <= 65535):
        raise ConfigError(f"port must be between 1 and 65535, got {port}")
    return host or "0.0.0.0", port

def load_config(getenv: Getenv = os.getenv) -> Config:
    """Build the exporter configuration from environment variables."""
    host, port = parse_addr(getenv("NETATMO_EXPORTER_ADDR", DEFAULT_ADDR) or DEFAULT_ADDR)
    external_url = (getenv("NETATMO_EXPORTER_EXTERNAL_URL", "") or "").strip()
    if not external_url:
        shown_host = "127.0.0.1" if host == "0.0.0.0" else host
        external_url = f"http://{shown_host}:{port}"

    cfg = Config(
        host=host,
        port=port,
        external_url=external_url.rstrip("/"),
        log_level=(getenv("NETATMO_LOG_LEVEL", "INFO") or "INFO").upper(),
        refresh_interval=duration_env(getenv, "NETATMO_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL),
        stale_duration=duration_env(getenv, "NETATMO_AGE_STALE", DEFAULT_STALE_DURATION),
        token_file=(getenv("NETATMO_EXPORTER_TOKEN_FILE", "") or "").strip(),
        debug_handlers=bool_env(getenv, "DEBUG_HANDLERS"),
        client_id=(getenv("NETATMO_CLIENT_ID", "") or "").strip(),
        client_secret=(getenv("NETATMO_CLIENT_SECRET", "") or "").strip(),
    )
    validate(cfg)
    return cfg

def validate(cfg: Config) -> None:
    errors: list[str] = []
    if not cfg.client_id:
        errors.append("NETATMO_CLIENT_ID can not be empty")
    if not cfg.client_secret:
        errors.append("NETATMO_CLIENT_SECRET can not be empty")
    if cfg.refresh_interval <= 0:
        errors.append(f"NETATMO_REFRESH_INTERVAL must be > 0, got {cfg.refresh_interval}")
    if cfg.stale_duration <= 0:
        errors.append(f"NETATMO_AGE_STALE must be > 0, got {cfg.stale_duration}")
    if errors:
        raise ConfigError("; ".join(errors))
