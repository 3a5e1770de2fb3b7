"""Challenge parameter discovery from the service entry page."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import aiohttp
from bs4 import BeautifulSoup

from .errors import MissingParameters
from .pong0_config import DIFFICULTY_GLOBAL, NONCE_GLOBAL, SCRIPT_PATH_HINT, PipelineConfig
from .web_fetch import ensure_ok, fetch_once

logger = logging.getLogger(__name__)


def _global_pattern(name: str) -> "re.Pattern[str]":
    return re.compile(rf"window\.{re.escape(name)}\s*=\s*['\"]([^'\"]+)['\"]")


_NONCE_RE = _global_pattern(NONCE_GLOBAL)
_DIFFICULTY_RE = _global_pattern(DIFFICULTY_GLOBAL)


@dataclass(frozen=True)
class ChallengeParameters:
    nonce: str
    difficulty: str
    script_url: str


def parse_challenge_parameters(html: str, base_url: str) -> ChallengeParameters:
    """Extract the nonce, difficulty and challenge script URL from ``html``.

    Relative script references are resolved against ``base_url``. Raises
    :class:`MissingParameters` unless all three values are found.
    """

    soup = BeautifulSoup(html or "", "lxml")
    nonce = ""
    difficulty = ""
    script_src: Optional[str] = None

    marker = f"window.{NONCE_GLOBAL}"
    for script in soup.find_all("script"):
        content = script.string or script.get_text() or ""
        if content and marker in content:
            match = _NONCE_RE.search(content)
            if match:
                nonce = match.group(1)
            match = _DIFFICULTY_RE.search(content)
            if match:
                difficulty = match.group(1)
        src = script.get("src")
        if src and SCRIPT_PATH_HINT in src:
            # Last reference wins, matching the page's load order.
            script_src = src

    script_url = urljoin(base_url.rstrip("/") + "/", script_src) if script_src else ""

    missing = [
        name
        for name, value in (("nonce", nonce), ("difficulty", difficulty), ("script_url", script_url))
        if not value
    ]
    if missing:
        raise MissingParameters(
            "Unable to extract challenge parameters from the entry page (missing: "
            + ", ".join(missing)
            + ")"
        )
    return ChallengeParameters(nonce=nonce, difficulty=difficulty, script_url=script_url)


async def resolve_challenge_parameters(
    session: aiohttp.ClientSession,
    config: PipelineConfig,
) -> ChallengeParameters:
    """Fetch the service root and return its challenge parameters."""

    logger.debug("Fetching entry page %s", config.root_url)
    result = ensure_ok(
        await fetch_once(
            session,
            config.root_url,
            timeout=config.http_timeout,
            headers=config.browser_headers(),
        )
    )
    logger.debug("Received %d characters of entry page", len(result.text))
    params = parse_challenge_parameters(result.text, config.base_url)
    logger.debug(
        "Challenge parameters: nonce=%s difficulty=%s script=%s",
        params.nonce,
        params.difficulty,
        params.script_url,
    )
    return params


__all__ = ["ChallengeParameters", "parse_challenge_parameters", "resolve_challenge_parameters"]
