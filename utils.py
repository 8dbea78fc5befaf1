"""Startup helpers: .env loading and config dump."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("notion_bridge")

# Fields whose values never reach the log unmasked.
SECRET_FIELDS = frozenset({"notion_cookie", "proxy_auth_token"})


def env_file_candidates() -> List[Path]:
    """.env next to the program, then .env in the working directory (later wins)."""
    program_env = Path(__file__).resolve().parent / ".env"
    cwd_env = Path.cwd() / ".env"
    return [program_env] if cwd_env == program_env else [program_env, cwd_env]


def load_env_files() -> List[Path]:
    """Load every existing .env candidate and return the ones applied."""
    loaded: List[Path] = []
    for path in env_file_candidates():
        if not path.exists():
            log.debug("No .env at %s", path)
            continue
        if load_dotenv(dotenv_path=str(path), override=True):
            loaded.append(path)
            log.info("Loaded .env from %s", path)
    if not loaded:
        log.info(".env not loaded (not found or no variables applied).")
    return loaded


def dump_config(config: AppConfig) -> None:
    """Log the effective configuration at startup, secrets masked."""
    log.info("=== Notion bridge startup config ===")
    for f in dataclasses.fields(config):
        value = getattr(config, f.name)
        if f.name in SECRET_FIELDS:
            shown = f"{mask_secret(str(value), keep_start=4, keep_end=2)} (len={len(value)})" if value else "<unset>"
        else:
            shown = value if value != "" else "<unset>"
        log.info("%s=%s", f.name.upper(), shown)
    if config.proxy_auth_token == "default_token":
        log.warning("PROXY_AUTH_TOKEN is the built-in default; set your own token.")
    if not config.has_credentials:
        log.warning("Neither NOTION_COOKIE nor COOKIE_FILE is set; startup will fail.")
    log.info("WorkingDir=%s", Path.cwd())
    log.info("====================================")
