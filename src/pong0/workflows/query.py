"""Credentialed lookup of one address and extraction of its report page."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

import aiohttp

from .errors import IncompleteCredentials
from .extract_utils import NormalizedRecord, parse_ip_page
from .pong0_config import LOOKUP_PATH, PipelineConfig
from .sandbox import Credentials
from .web_fetch import ensure_ok, fetch_once

logger = logging.getLogger(__name__)


def build_query_url(base_url: str, target: Optional[str]) -> str:
    """Service root for an empty target, else the path-encoded lookup URL."""

    root = base_url.rstrip("/")
    target = (target or "").strip()
    if not target:
        return root
    return f"{root}{LOOKUP_PATH}{quote(target, safe='')}"


async def query_ip_info(
    session: aiohttp.ClientSession,
    credentials: Credentials,
    target: Optional[str],
    config: PipelineConfig,
) -> NormalizedRecord:
    if not credentials.complete:
        raise IncompleteCredentials("Challenge credentials are incomplete, unable to query")

    url = build_query_url(config.base_url, target)
    logger.debug("Querying %s", url)
    result = ensure_ok(
        await fetch_once(
            session,
            url,
            timeout=config.http_timeout,
            headers=config.query_headers(credentials.cookie_header()),
        )
    )
    logger.debug("Received %d characters of report page", len(result.text))
    record = parse_ip_page(result.text)
    logger.debug("Extracted record for %s", record.ip)
    return record


__all__ = ["build_query_url", "query_ip_info"]
