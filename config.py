"""Configuration management for the Notion AI bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Notion backend
    notion_api_url: str
    notion_spaces_url: str
    notion_client_version: str
    notion_timezone: str
    default_model: str
    user_agent: str

    # Credentials
    notion_cookie: str
    cookie_file: str

    # Inbound auth
    proxy_auth_token: str

    # Outbound proxy (empty = direct)
    proxy_url: str

    # Timeouts and limits
    first_byte_timeout_s: float
    request_timeout_s: float
    max_request_bytes: int

    # Server settings
    port: int
    log_level: str
    log_path: str
    log_color: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            notion_api_url=_env_str(
                "NOTION_API_URL", "https://www.notion.so/api/v3/runInferenceTranscript"
            ),
            notion_spaces_url=_env_str(
                "NOTION_SPACES_URL", "https://www.notion.so/api/v3/getSpaces"
            ),
            notion_client_version=_env_str("NOTION_CLIENT_VERSION", "23.13.0.3686"),
            notion_timezone=_env_str("NOTION_TIMEZONE", "America/Los_Angeles"),
            default_model=_env_str("DEFAULT_MODEL", "anthropic-sonnet-4"),
            user_agent=_env_str("USER_AGENT", DEFAULT_USER_AGENT),
            notion_cookie=_env_str("NOTION_COOKIE", "").strip(),
            cookie_file=_env_str("COOKIE_FILE", "").strip(),
            proxy_auth_token=_env_str("PROXY_AUTH_TOKEN", "default_token"),
            proxy_url=_env_str("PROXY_URL", "").strip(),
            first_byte_timeout_s=_env_float("FIRST_BYTE_TIMEOUT_S", 30.0),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 50_000_000),
            port=_env_int("PORT", 7860),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/notion-bridge/notion-bridge.log"),
            log_color=_env_bool("LOG_COLOR", True),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.notion_cookie or self.cookie_file)

    def validate(self, require_credentials: bool = True) -> None:
        """Validate configuration."""
        if require_credentials and not self.has_credentials:
            raise ValueError("NOTION_COOKIE or COOKIE_FILE is required")
        if not self.notion_api_url:
            raise ValueError("NOTION_API_URL must be non-empty")
        if not self.notion_spaces_url:
            raise ValueError("NOTION_SPACES_URL must be non-empty")
        if not self.proxy_auth_token:
            raise ValueError("PROXY_AUTH_TOKEN must be non-empty")
        if self.first_byte_timeout_s <= 0:
            raise ValueError("FIRST_BYTE_TIMEOUT_S must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
