"""Sandboxed execution of the challenge script.

The engine runs the patched vendor script inside a disposable document
environment and watches its cookie writes. Three sources race to settle one
outcome:

* the credential store observer, once both required cookies were written;
* the primary timer, which tears the environment down and then settles empty;
* the backup timer, which settles empty even if that teardown stalls.

Only the first settlement counts. :meth:`ChallengeSandbox.solve` never
raises for challenge failures; an unsolved challenge yields empty
:class:`Credentials`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Mapping, Optional, Set, TypeVar

from .challenge_params import ChallengeParameters
from .pong0_config import (
    DIFFICULTY_GLOBAL,
    NONCE_GLOBAL,
    PROOF_TOKEN_COOKIE,
    SESSION_KEY_COOKIE,
    PipelineConfig,
)
from .script_patch import PatchReport, patch_script
from .script_source import ChallengeScript, format_size

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOURCE_CREDENTIALS = "credentials"
SOURCE_PRIMARY_TIMEOUT = "primary_timeout"
SOURCE_BACKUP_TIMEOUT = "backup_timeout"
SOURCE_ENVIRONMENT_ERROR = "environment_error"


@dataclass(frozen=True)
class Credentials:
    session_key: Optional[str] = None
    proof_token: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.session_key) and bool(self.proof_token)

    def cookie_header(self) -> str:
        return f"{SESSION_KEY_COOKIE}={self.session_key}; {PROOF_TOKEN_COOKIE}={self.proof_token}"


class SettleOnce(Generic[T]):
    """Single-resolution gate: the first :meth:`settle` wins, later calls are no-ops."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._future: "asyncio.Future[T]" = self._loop.create_future()
        self.source: Optional[str] = None
        self.rejected: int = 0

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, value: T, source: str) -> bool:
        if self._future.done():
            self.rejected += 1
            logger.debug("Ignoring %s after outcome already settled by %s", source, self.source)
            return False
        self.source = source
        self._future.set_result(value)
        return True

    async def wait(self) -> T:
        return await self._future


StoreObserver = Callable[["CredentialStore"], None]


class CredentialStore:
    """Cookie jar standing in for ``document.cookie``.

    Every accepted write is recorded and then reported to ``observer``.
    """

    required = (SESSION_KEY_COOKIE, PROOF_TOKEN_COOKIE)

    def __init__(self, observer: Optional[StoreObserver] = None) -> None:
        self._values: Dict[str, str] = {}
        self._observer = observer
        self.writes = 0

    def write(self, cookie_string: str) -> bool:
        pair = (cookie_string or "").split(";", 1)[0]
        name, sep, value = pair.partition("=")
        name = name.strip()
        value = value.strip()
        if not sep or not name or not value:
            return False
        self._values[name] = value
        self.writes += 1
        logger.debug("Cookie set: %s=%s", name, value)
        if self._observer is not None:
            self._observer(self)
        return True

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def render(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self._values.items())

    @property
    def complete(self) -> bool:
        return all(self._values.get(name) for name in self.required)

    def credentials(self) -> Credentials:
        if not self.complete:
            return Credentials()
        return Credentials(
            session_key=self._values[SESSION_KEY_COOKIE],
            proof_token=self._values[PROOF_TOKEN_COOKIE],
        )


@dataclass
class SandboxHooks:
    on_cookie: Callable[[str], object]
    on_error: Callable[[str], None]
    on_console: Callable[[str], None]


class SandboxEnvironment:
    """Disposable document environment that hosts one challenge run.

    Implementations route ``document.cookie`` writes to ``hooks.on_cookie``,
    report uncaught script errors through ``hooks.on_error`` and sandboxed
    console output through ``hooks.on_console``.
    """

    async def open(self, hooks: SandboxHooks) -> None:
        raise NotImplementedError

    async def set_globals(self, bindings: Mapping[str, str]) -> None:
        raise NotImplementedError

    async def execute(self, source: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


EnvironmentFactory = Callable[[PipelineConfig], SandboxEnvironment]


def _default_environment_factory(config: PipelineConfig) -> SandboxEnvironment:
    from .browser_env import PlaywrightEnvironment

    return PlaywrightEnvironment(config)


@dataclass
class SandboxOutcome:
    source: Optional[str]
    elapsed_ms: int
    cookie_writes: int
    patch: Optional[PatchReport] = None
    late_settlements: int = 0


class _Teardown:
    """Close the environment exactly once, whoever asks first."""

    def __init__(self, env: SandboxEnvironment) -> None:
        self._env = env
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self) -> "asyncio.Task[None]":
        if self._task is None:
            self._task = asyncio.ensure_future(self._env.close())
        return self._task

    async def finish(self, timeout: float) -> bool:
        task = self.start()
        if not task.done():
            await asyncio.wait({task}, timeout=max(0.0, timeout))
        if not task.done():
            task.cancel()
            logger.warning("Sandbox teardown stalled; abandoning the environment")
            return False
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Sandbox teardown raised: %s", task.exception())
        return True


class ChallengeSandbox:
    """Solve the challenge inside a sandbox and return the credential pair."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        environment_factory: Optional[EnvironmentFactory] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self._environment_factory = environment_factory or _default_environment_factory
        self.last_outcome: Optional[SandboxOutcome] = None

    @property
    def verbose(self) -> bool:
        return self.config.verbose

    def _log(self, message: str, *args: object) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, message, *args)

    def _on_script_error(self, message: str) -> None:
        # Probes of partially stubbed features (canvas, WebGL) fail routinely.
        lowered = (message or "").lower()
        if "canvas" in lowered or "webgl" in lowered:
            return
        self._log("Caught script error, continuing: %s", message)

    def _on_console(self, message: str) -> None:
        self._log("[sandbox console] %s", message)

    def _report_patch(self, report: PatchReport) -> None:
        applied = {name: count for name, count in report.applied.items() if count}
        self._log("Patched challenge script (rule set v%s): %s", report.version, applied or "no matches")
        if report.residual:
            level = logging.WARNING if self.verbose else logging.DEBUG
            logger.log(
                level,
                "Challenge script still contains unpatched side-effecting calls: %s",
                ", ".join(report.residual),
            )

    async def _run(
        self,
        env: SandboxEnvironment,
        hooks: SandboxHooks,
        params: ChallengeParameters,
        source: str,
    ) -> None:
        await env.open(hooks)
        await env.set_globals({NONCE_GLOBAL: params.nonce, DIFFICULTY_GLOBAL: params.difficulty})
        self._log("Running challenge script")
        await env.execute(source)

    async def solve(
        self,
        params: ChallengeParameters,
        script: ChallengeScript,
        timeout: Optional[float] = None,
    ) -> Credentials:
        """Run ``script`` with ``params`` injected; empty credentials on timeout.

        ``timeout`` overrides the primary budget; the backup timer keeps its
        configured lead over the primary one.
        """

        primary_delay = self.config.sandbox_timeout if timeout is None else timeout
        backup_delay = primary_delay + (self.config.sandbox_backup_timeout - self.config.sandbox_timeout)

        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        gate: SettleOnce[Credentials] = SettleOnce(loop)

        def observe(store: CredentialStore) -> None:
            if store.complete and gate.settle(store.credentials(), SOURCE_CREDENTIALS):
                self._log("Obtained all required cookies after %dms", int((time.perf_counter() - started) * 1000))

        store = CredentialStore(observer=observe)
        report = patch_script(script.text)
        self._log("Loaded challenge script, size: %s", format_size(len(script.text)))
        self._report_patch(report)

        env = self._environment_factory(self.config)
        teardown = _Teardown(env)
        hooks = SandboxHooks(on_cookie=store.write, on_error=self._on_script_error, on_console=self._on_console)
        background: Set["asyncio.Future[None]"] = set()

        async def expire() -> None:
            try:
                await teardown.start()
            except Exception as exc:
                logger.debug("Sandbox teardown after timeout raised: %s", exc)
            gate.settle(Credentials(), SOURCE_PRIMARY_TIMEOUT)

        def on_primary_timeout() -> None:
            if gate.settled:
                return
            self._log("Timed out waiting for cookies")
            background.add(asyncio.ensure_future(expire()))

        def on_backup_timeout() -> None:
            if gate.settle(Credentials(), SOURCE_BACKUP_TIMEOUT):
                self._log("Backup timeout fired")

        def on_runner_done(task: "asyncio.Task[None]") -> None:
            if task.cancelled():
                return
            exc = task.exception()
            if exc is None:
                return
            if gate.settled or teardown.started:
                logger.debug("Sandbox run ended after settlement: %s", exc)
                return
            logger.error("Sandbox environment failed: %s", exc)
            gate.settle(Credentials(), SOURCE_ENVIRONMENT_ERROR)

        primary = loop.call_later(primary_delay, on_primary_timeout)
        backup = loop.call_later(backup_delay, on_backup_timeout)
        runner = asyncio.ensure_future(self._run(env, hooks, params, report.text))
        runner.add_done_callback(on_runner_done)

        try:
            credentials = await gate.wait()
        finally:
            primary.cancel()
            backup.cancel()
            if not runner.done():
                runner.cancel()
                await asyncio.wait({runner}, timeout=self.config.teardown_timeout)
            grace = 0.0 if gate.source == SOURCE_BACKUP_TIMEOUT else self.config.teardown_timeout
            await teardown.finish(grace)
            for task in background:
                if not task.done():
                    task.cancel()

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self.last_outcome = SandboxOutcome(
            source=gate.source,
            elapsed_ms=elapsed_ms,
            cookie_writes=store.writes,
            patch=report,
            late_settlements=gate.rejected,
        )
        if credentials.complete:
            self._log("%s=%s, %s=%s", SESSION_KEY_COOKIE, credentials.session_key, PROOF_TOKEN_COOKIE, credentials.proof_token)
        self._log("Challenge finished via %s in %dms", gate.source, elapsed_ms)
        return credentials


async def solve_challenge(
    params: ChallengeParameters,
    script: ChallengeScript,
    config: Optional[PipelineConfig] = None,
    environment_factory: Optional[EnvironmentFactory] = None,
    timeout: Optional[float] = None,
) -> Credentials:
    return await ChallengeSandbox(config, environment_factory).solve(params, script, timeout)


__all__ = [
    "Credentials",
    "CredentialStore",
    "SettleOnce",
    "SandboxHooks",
    "SandboxEnvironment",
    "SandboxOutcome",
    "ChallengeSandbox",
    "solve_challenge",
    "SOURCE_CREDENTIALS",
    "SOURCE_PRIMARY_TIMEOUT",
    "SOURCE_BACKUP_TIMEOUT",
    "SOURCE_ENVIRONMENT_ERROR",
]
