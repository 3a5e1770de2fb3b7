"""Challenge acquisition and query pipeline.

``run_pipeline`` chains the four stages: entry-page parameters, challenge
script, sandboxed credential acquisition and the credentialed lookup. Every
failure surfaces as a :class:`~pong0.workflows.errors.ClassifiedError`.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from .workflows.challenge_params import resolve_challenge_parameters
from .workflows.errors import ClassifiedError, IncompleteCredentials, ScriptUnavailable, error_payload
from .workflows.extract_utils import NormalizedRecord
from .workflows.pong0_config import PipelineConfig
from .workflows.query import query_ip_info
from .workflows.sandbox import ChallengeSandbox
from .workflows.script_source import ScriptSource, format_size
from .workflows.web_fetch import new_session

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
    # aiohttp and asyncio chatter drowns the stage log in debug mode
    for name in ("asyncio", "aiohttp"):
        logging.getLogger(name).setLevel(logging.WARNING)


def format_elapsed(ms: float) -> str:
    if ms < 1000:
        return f"{ms:.2f}ms"
    return f"{ms / 1000:.2f}s"


class StageClock:
    """Times named pipeline stages; reported at INFO when verbose."""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose
        self.started = time.perf_counter()
        self.stages: Dict[str, float] = {}

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            self.stages[name] = elapsed
            self._log("Stage %s finished in %s", name, format_elapsed(elapsed))

    def total(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def report_total(self) -> None:
        self._log("Total time: %s", format_elapsed(self.total()))

    def _log(self, message: str, *args: object) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, message, *args)


def _resolve_config(config: Optional[PipelineConfig], verbose: bool) -> PipelineConfig:
    if config is None:
        return PipelineConfig.from_env(verbose=verbose)
    if verbose and not config.verbose:
        return dataclasses.replace(config, verbose=True)
    return config


async def run_pipeline(
    target: str = "",
    force_refresh: bool = False,
    verbose: bool = False,
    *,
    config: Optional[PipelineConfig] = None,
    sandbox: Optional[ChallengeSandbox] = None,
) -> NormalizedRecord:
    """Look up ``target`` (or the caller's own address when empty).

    Raises :class:`ClassifiedError` on every failure; an unsolved challenge
    surfaces as :class:`IncompleteCredentials`. Nothing is retried.
    """

    config = _resolve_config(config, verbose)
    sandbox = sandbox or ChallengeSandbox(config)
    clock = StageClock(config.verbose)
    source = ScriptSource(config.script_cache_path, config)
    logger.log(
        logging.INFO if config.verbose else logging.DEBUG,
        "Querying IP: %s",
        target or "local address",
    )

    async with new_session() as session:
        with clock.stage("parameters"):
            params = await resolve_challenge_parameters(session, config)
            script = await source.acquire(session, params.script_url, force_refresh=force_refresh)

        with clock.stage("credentials"):
            credentials = await sandbox.solve(params, script)
        if not credentials.complete:
            raise IncompleteCredentials("Failed to obtain the challenge cookies")

        with clock.stage("query"):
            record = await query_ip_info(session, credentials, target, config)

    clock.report_total()
    return record


async def refresh_script(
    verbose: bool = False,
    *,
    config: Optional[PipelineConfig] = None,
) -> Dict[str, Any]:
    """Re-download the challenge script and return a summary of the new copy."""

    config = _resolve_config(config, verbose)
    source = ScriptSource(config.script_cache_path, config)
    async with new_session() as session:
        params = await resolve_challenge_parameters(session, config)
        try:
            script = await source.download(session, params.script_url)
        except ClassifiedError as exc:
            raise ScriptUnavailable(f"Failed to refresh the challenge script: {exc.message}", exc.status) from exc
        except OSError as exc:
            raise ScriptUnavailable(f"Failed to store the challenge script: {exc}") from exc
    logger.log(
        logging.INFO if config.verbose else logging.DEBUG,
        "Challenge script refreshed, size: %s",
        format_size(len(script.text)),
    )
    return script.summary()


def run_pipeline_sync(
    target: str = "",
    force_refresh: bool = False,
    verbose: bool = False,
    *,
    config: Optional[PipelineConfig] = None,
) -> NormalizedRecord:
    """Blocking wrapper; each call owns a fresh event loop."""

    return asyncio.run(run_pipeline(target, force_refresh, verbose, config=config))


__all__ = [
    "configure_logging",
    "error_payload",
    "format_elapsed",
    "refresh_script",
    "run_pipeline",
    "run_pipeline_sync",
    "StageClock",
]
