"""pong0 defaults (endpoints, headers, markers, timeouts, paths).

Centralizes static defaults so the workflow modules have no embedded magic
strings. Callers can inject their own PipelineConfig to override any of them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)

# Endpoints
BASE_URL = "https://ping0.cc"
SCRIPT_PATH_HINT = "/static/js/"
LOOKUP_PATH = "/ip/"
DEFAULT_SITE_TITLE = "Ping0.cc"

# Challenge globals on the entry page, and the cookie names the script sets
NONCE_GLOBAL = "x1"
DIFFICULTY_GLOBAL = "difficulty"
SESSION_KEY_COOKIE = "js1key"
PROOF_TOKEN_COOKIE = "pow"

# Headers
HDR_USER_AGENT = "User-Agent"
HDR_ACCEPT = "Accept"
HDR_ACCEPT_LANGUAGE = "Accept-Language"
HDR_COOKIE = "Cookie"
HDR_REFERER = "Referer"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
QUERY_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/98.0.4758.102 Safari/537.36"
)
NAVIGATOR_VENDOR = "Google Inc."
ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8"

BROWSER_HEADERS: Dict[str, str] = {
    HDR_USER_AGENT: USER_AGENT,
    HDR_ACCEPT: "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    HDR_ACCEPT_LANGUAGE: ACCEPT_LANGUAGE,
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}

QUERY_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8"
)

# Paths
SCRIPT_CACHE_FILENAME = "raw.js"

# Timeouts (seconds)
HTTP_TIMEOUT = 10.0
SANDBOX_TIMEOUT = 15.0
SANDBOX_BACKUP_TIMEOUT = 20.0
TEARDOWN_TIMEOUT = 5.0

# Record attribution
ATTRIBUTION_URL = "https://linux.do/u/amna"

# Error-page phrases, checked in order. The code names an error class in
# pong0.workflows.errors.
ERROR_PAGE_MARKERS: Tuple[Tuple[Tuple[str, ...], str, str], ...] = (
    (("访问频率过高",), "rate_limited", "Too many requests, please try again later"),
    (("系统发生错误",), "server_error", "Site reported an internal system error, please try again later"),
    (("无法访问",), "unavailable", "Site is unreachable, it may be under maintenance"),
    (("查询不到此IP",), "not_found", "No information for this IP, it may be invalid or private"),
    (("访问被拒绝",), "forbidden", "Access denied, the challenge cookies may have expired"),
    (("robots", "机器人"), "bot_detected", "Request was identified as a robot or crawler, please try again later"),
)
SYSTEM_ERROR_MARKER = "系统发生错误"
ERROR_SUBMISSION_ARTIFACT = "错误提交"
LONGITUDE_LABEL = "经度"
LATITUDE_LABEL = "纬度"

EXCERPT_LIMIT = 150
SHORT_PAGE_CHARS = 1000


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    return raw.strip() if raw and raw.strip() else default


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class PipelineConfig:
    """Knobs shared by every stage of the acquisition and query pipeline."""

    base_url: str = BASE_URL
    http_timeout: float = HTTP_TIMEOUT
    sandbox_timeout: float = SANDBOX_TIMEOUT
    sandbox_backup_timeout: float = SANDBOX_BACKUP_TIMEOUT
    teardown_timeout: float = TEARDOWN_TIMEOUT
    script_cache_path: Path = field(default_factory=lambda: Path.cwd() / SCRIPT_CACHE_FILENAME)
    user_agent: str = USER_AGENT
    query_user_agent: str = QUERY_USER_AGENT
    accept_language: str = ACCEPT_LANGUAGE
    headless: bool = True
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.http_timeout <= 0:
            raise ValueError("http_timeout must be positive")
        if self.sandbox_timeout <= 0:
            raise ValueError("sandbox_timeout must be positive")
        if self.sandbox_backup_timeout <= self.sandbox_timeout:
            raise ValueError("sandbox_backup_timeout must exceed sandbox_timeout")
        if self.teardown_timeout <= 0:
            raise ValueError("teardown_timeout must be positive")

    @property
    def root_url(self) -> str:
        return self.base_url.rstrip("/") + "/"

    def browser_headers(self) -> Dict[str, str]:
        headers = dict(BROWSER_HEADERS)
        headers[HDR_USER_AGENT] = self.user_agent
        headers[HDR_ACCEPT_LANGUAGE] = self.accept_language
        return headers

    def query_headers(self, cookie: str) -> Dict[str, str]:
        return {
            HDR_USER_AGENT: self.query_user_agent,
            HDR_COOKIE: cookie,
            HDR_ACCEPT: QUERY_ACCEPT,
            HDR_ACCEPT_LANGUAGE: self.accept_language,
            HDR_REFERER: self.base_url.rstrip("/"),
        }

    @classmethod
    def from_env(cls, *, verbose: bool = False, dotenv_path: Optional[Path] = None) -> "PipelineConfig":
        """Build a config from PONG0_* environment variables (after .env).

        A backup timeout that does not exceed the primary one is pushed out to
        keep the default lead. Any other invalid value raises
        :class:`InvalidConfiguration`.
        """

        load_dotenv(dotenv_path=dotenv_path, override=False)
        cache_path = os.getenv("PONG0_SCRIPT_CACHE_PATH")
        sandbox_timeout = _env_float("PONG0_SANDBOX_TIMEOUT", SANDBOX_TIMEOUT)
        backup_timeout = _env_float("PONG0_SANDBOX_BACKUP_TIMEOUT", SANDBOX_BACKUP_TIMEOUT)
        if backup_timeout <= sandbox_timeout:
            clamped = sandbox_timeout + (SANDBOX_BACKUP_TIMEOUT - SANDBOX_TIMEOUT)
            logger.warning(
                "Backup sandbox timeout %gs does not exceed the primary %gs; using %gs",
                backup_timeout,
                sandbox_timeout,
                clamped,
            )
            backup_timeout = clamped
        try:
            return cls(
                base_url=_env_str("PONG0_BASE_URL", BASE_URL),
                http_timeout=_env_float("PONG0_HTTP_TIMEOUT", HTTP_TIMEOUT),
                sandbox_timeout=sandbox_timeout,
                sandbox_backup_timeout=backup_timeout,
                script_cache_path=Path(cache_path) if cache_path else Path.cwd() / SCRIPT_CACHE_FILENAME,
                headless=_env_bool("PONG0_HEADLESS", "1"),
                verbose=verbose,
            )
        except ValueError as exc:
            raise InvalidConfiguration(f"Invalid configuration: {exc}") from exc


def api_key_from_env() -> Optional[str]:
    load_dotenv(override=False)
    raw = os.getenv("PONG0_API_KEY", "")
    return raw.strip() or None
