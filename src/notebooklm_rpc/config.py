"""Runtime settings, read from NOTEBOOKLM_* environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from . import constants


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.lower() not in ("false", "0", "no", "off")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


@dataclass
class Settings:
    """Protocol, retry and credential-lifetime settings.

    Timeouts and delays are in seconds.
    """

    base_url: str = constants.BASE_URL
    build_label: str = constants.DEFAULT_BUILD_LABEL
    locale: str = constants.DEFAULT_LOCALE
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".notebooklm-rpc")

    default_timeout: float = 30.0
    query_timeout: float = 120.0
    source_add_timeout: float = 120.0
    page_fetch_timeout: float = 15.0

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retry_statuses: frozenset[int] = constants.RETRY_STATUSES

    # The anti-forgery token lives ~4h; refresh it 30 min before that
    token_ttl: float = 4 * 60 * 60
    refresh_buffer: float = 30 * 60
    max_cookie_age_hours: float = 168

    cdp_enabled: bool = True
    cdp_host: str = "localhost"
    cdp_port: int = 9222

    @property
    def batchexecute_url(self) -> str:
        return f"{self.base_url}{constants.BATCHEXECUTE_PATH}"

    @property
    def query_url(self) -> str:
        return f"{self.base_url}{constants.QUERY_PATH}"

    @property
    def auth_path(self) -> Path:
        return self.cache_dir / "auth.json"

    @property
    def conversations_path(self) -> Path:
        return self.cache_dir / "conversations.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        defaults = cls()
        cache_dir = os.environ.get("NOTEBOOKLM_CACHE_DIR")
        return cls(
            base_url=os.environ.get("NOTEBOOKLM_BASE_URL", defaults.base_url).rstrip("/"),
            build_label=os.environ.get("NOTEBOOKLM_BL", defaults.build_label),
            locale=os.environ.get("NOTEBOOKLM_HL", defaults.locale),
            cache_dir=Path(cache_dir).expanduser() if cache_dir else defaults.cache_dir,
            default_timeout=_env_float("NOTEBOOKLM_TIMEOUT", defaults.default_timeout),
            query_timeout=_env_float("NOTEBOOKLM_QUERY_TIMEOUT", defaults.query_timeout),
            source_add_timeout=_env_float("NOTEBOOKLM_SOURCE_TIMEOUT", defaults.source_add_timeout),
            max_retries=_env_int("NOTEBOOKLM_MAX_RETRIES", defaults.max_retries),
            base_delay=_env_float("NOTEBOOKLM_BASE_DELAY", defaults.base_delay),
            max_delay=_env_float("NOTEBOOKLM_MAX_DELAY", defaults.max_delay),
            token_ttl=_env_float("NOTEBOOKLM_TOKEN_TTL", defaults.token_ttl),
            refresh_buffer=_env_float("NOTEBOOKLM_REFRESH_BUFFER", defaults.refresh_buffer),
            max_cookie_age_hours=_env_float(
                "NOTEBOOKLM_MAX_COOKIE_AGE_HOURS", defaults.max_cookie_age_hours
            ),
            cdp_enabled=_env_bool("NOTEBOOKLM_CDP_ENABLED", defaults.cdp_enabled),
            cdp_host=os.environ.get("NOTEBOOKLM_CDP_HOST", defaults.cdp_host),
            cdp_port=_env_int("NOTEBOOKLM_CDP_PORT", defaults.cdp_port),
        )
