"""Environment-derived settings."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the environment does not describe a usable configuration."""


# settings attribute -> environment variable(s), first match wins
ENV_VARS: Dict[str, tuple[str, ...]] = {
    "api_key": ("API_KEY", "BIRDEYE_API_KEY"),
    "birdeye_url": ("BIRDEYE_URL",),
    "dexscreener_url": ("DEXSCREENER_URL",),
    "total_tokens": ("TOKENSCOPE_TOTAL_TOKENS",),
    "refresh_interval": ("TOKENSCOPE_REFRESH_INTERVAL",),
    "cache_path": ("TOKENSCOPE_CACHE_PATH",),
    "cache_ttl": ("TOKENSCOPE_CACHE_TTL",),
    "page_size": ("BIRDEYE_PAGE_SIZE",),
    "page_delay": ("BIRDEYE_PAGE_DELAY",),
    "rate_limit": ("BIRDEYE_RATE_LIMIT",),
    "max_attempts": ("BIRDEYE_MAX_ATTEMPTS",),
    "enrich_batch_size": ("DEXSCREENER_BATCH_SIZE",),
    "enrich_batch_delay": ("DEXSCREENER_BATCH_DELAY",),
    "weights_path": ("TOKENSCOPE_WEIGHTS_PATH",),
    "host": ("HOST",),
    "port": ("PORT",),
    "cors_origins": ("CORS_ORIGIN",),
    "rate_limit_max": ("RATE_LIMIT_MAX",),
    "rate_limit_window_ms": ("RATE_LIMIT_WINDOW_MS",),
    "trust_proxy": ("TRUST_PROXY",),
    "log_level": ("LOG_LEVEL",),
    "log_json": ("LOG_JSON",),
    "log_file": ("LOG_FILE",),
}


class Settings(BaseModel):
    """Runtime configuration for the fetcher, the scheduler and the web server."""

    model_config = ConfigDict(extra="forbid")

    api_key: str
    birdeye_url: str = "https://public-api.birdeye.so"
    dexscreener_url: str = "https://api.dexscreener.com"
    total_tokens: int = Field(1000, gt=0)
    refresh_interval: float = Field(30 * 60.0, gt=0)
    cache_path: Path = Path("data") / "token_cache.json"
    cache_ttl: float = Field(30 * 60.0, ge=0)
    page_size: int = Field(50, gt=0, le=50)
    page_delay: float = Field(1.2, ge=0)
    rate_limit: int = Field(1000, gt=0)
    max_attempts: int = Field(4, ge=1)
    enrich_batch_size: int = Field(30, gt=0, le=30)
    enrich_batch_delay: float = Field(0.25, ge=0)
    weights_path: Path | None = None
    host: str = "0.0.0.0"
    port: int = Field(3001, ge=0, le=65535)
    cors_origins: List[str] = Field(default_factory=list)
    rate_limit_max: int = Field(30, gt=0)
    rate_limit_window_ms: int = Field(60_000, gt=0)
    trust_proxy: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Path | None = None

    @field_validator("api_key")
    @classmethod
    def _api_key_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("API_KEY must be set in environment")
        return value

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def rate_limit_window(self) -> float:
        return self.rate_limit_window_ms / 1000.0


def settings_from_env(
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``).

    Blank variables count as unset. ``overrides`` win over the environment.
    Raises :class:`ConfigError` on missing or invalid values.
    """

    env = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for attr, names in ENV_VARS.items():
        for name in names:
            raw = env.get(name)
            if raw is not None and raw.strip() != "":
                data[attr] = raw.strip()
                break
    data.setdefault("api_key", "")
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def load_env_file(path: str | os.PathLike[str]) -> Dict[str, str]:
    """Load ``KEY=VALUE`` pairs from *path* into ``os.environ``.

    Blank lines and ``#`` comments are ignored, surrounding quotes are
    stripped and variables already present in the environment are kept.
    Returns the variables that were applied.
    """

    env_path = Path(path)
    applied: Dict[str, str] = {}
    if not env_path.exists():
        return applied
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if not key or key in os.environ:
            continue
        os.environ[key] = value
        applied[key] = value
    if applied:
        log.debug("Loaded %d variable(s) from %s", len(applied), env_path)
    return applied


__all__ = ["ConfigError", "ENV_VARS", "Settings", "load_env_file", "settings_from_env"]
