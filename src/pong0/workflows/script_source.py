"""Durable cache for the vendor challenge script."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import aiohttp

from .errors import ClassifiedError, ScriptUnavailable
from .pong0_config import PipelineConfig
from .web_fetch import ensure_ok, fetch_once

logger = logging.getLogger(__name__)

ScriptOrigin = Literal["cached", "downloaded"]


def format_size(num_chars: int) -> str:
    if num_chars >= 1024 * 1024:
        return f"{num_chars / (1024 * 1024):.2f} MB"
    return f"{num_chars / 1024:.2f} KB"


@dataclass(frozen=True)
class ChallengeScript:
    text: str
    origin: ScriptOrigin
    path: Optional[Path] = None
    url: Optional[str] = None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()

    def summary(self) -> Dict[str, Any]:
        return {
            "origin": self.origin,
            "path": str(self.path) if self.path else None,
            "url": self.url,
            "chars": len(self.text),
            "size": format_size(len(self.text)),
            "sha256": self.sha256,
        }


class ScriptSource:
    """Serve the challenge script from disk, downloading when absent or forced."""

    def __init__(self, cache_path: Path, config: Optional[PipelineConfig] = None) -> None:
        self.cache_path = Path(cache_path)
        self.config = config or PipelineConfig(script_cache_path=self.cache_path)

    def has_cached_copy(self) -> bool:
        return self.cache_path.is_file()

    def read_cached(self) -> ChallengeScript:
        text = self.cache_path.read_text(encoding="utf-8")
        logger.debug("Loaded cached challenge script %s (%s)", self.cache_path, format_size(len(text)))
        return ChallengeScript(text=text, origin="cached", path=self.cache_path)

    def store(self, text: str) -> None:
        """Overwrite the durable copy wholesale via a temp file + rename."""

        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.cache_path.name}.", suffix=".tmp", dir=str(self.cache_path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_name, self.cache_path)
        except BaseException:
            try:
                os.remove(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def download(self, session: aiohttp.ClientSession, script_url: str) -> ChallengeScript:
        logger.debug("Downloading challenge script from %s", script_url)
        result = ensure_ok(
            await fetch_once(
                session,
                script_url,
                timeout=self.config.http_timeout,
                headers=self.config.browser_headers(),
            )
        )
        text = result.text
        self.store(text)
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        logger.debug(
            "Saved challenge script (%s, sha256=%s) to %s",
            format_size(len(text)),
            digest[:12],
            self.cache_path,
        )
        return ChallengeScript(text=text, origin="downloaded", path=self.cache_path, url=script_url)

    def _read_cached_or_none(self) -> Optional[ChallengeScript]:
        if not self.has_cached_copy():
            return None
        try:
            return self.read_cached()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cached challenge script %s is unreadable (%s)", self.cache_path, exc)
            return None

    async def acquire(
        self,
        session: aiohttp.ClientSession,
        script_url: str,
        force_refresh: bool = False,
    ) -> ChallengeScript:
        """Return the challenge script.

        ``force_refresh`` always downloads and overwrites the durable copy. An
        unreadable durable copy is treated as missing. A failed download falls
        back to a readable durable copy when one exists, otherwise
        :class:`ScriptUnavailable` is raised.
        """

        if not force_refresh:
            cached = self._read_cached_or_none()
            if cached is not None:
                return cached
            logger.debug("No usable cached challenge script at %s, downloading", self.cache_path)
        else:
            logger.debug("Force refresh requested, re-downloading %s", script_url)

        try:
            return await self.download(session, script_url)
        except (ClassifiedError, OSError) as exc:
            message = exc.message if isinstance(exc, ClassifiedError) else str(exc)
            fallback = self._read_cached_or_none() if force_refresh else None
            if fallback is not None:
                logger.warning("Challenge script download failed (%s); using cached copy", message)
                return fallback
            status = exc.status if isinstance(exc, ClassifiedError) else None
            raise ScriptUnavailable(f"Failed to download the challenge script: {message}", status) from exc


__all__ = ["ChallengeScript", "ScriptOrigin", "ScriptSource", "format_size"]
