import asyncio
import logging
from pathlib import Path

import pytest

from pong0 import pipeline
from pong0.workflows import challenge_params, query, script_source
from pong0.workflows.errors import IncompleteCredentials, MissingParameters, ScriptUnavailable
from pong0.workflows.pong0_config import PipelineConfig
from pong0.workflows.sandbox import ChallengeSandbox, SandboxEnvironment
from pong0.workflows.web_fetch import FetchResult

ENTRY_PAGE = "<script>window.x1 = 'abc'; window.difficulty = '5';</script><script src='/static/js/c.js'></script>"
SCRIPT_TEXT = "document.cookie = 'js1key=' + x1; document.cookie = 'pow=' + difficulty;"
REPORT_PAGE = '<html><head><script>window.ip = "1.1.1.1"; window.loc = "Example City";</script></head></html>'


class CookieEnvironment(SandboxEnvironment):
    def __init__(self, cookies):
        self.cookies = cookies
        self.bindings = {}

    async def open(self, hooks) -> None:
        self.hooks = hooks

    async def set_globals(self, bindings) -> None:
        self.bindings = dict(bindings)

    async def execute(self, source: str) -> None:
        for cookie in self.cookies:
            self.hooks.on_cookie(cookie)
        await asyncio.sleep(3600)

    async def close(self) -> None:
        return None


def _config(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig(
        script_cache_path=tmp_path / "raw.js",
        sandbox_timeout=0.1,
        sandbox_backup_timeout=0.3,
        teardown_timeout=0.1,
    )


def _install_service(monkeypatch, *, entry=ENTRY_PAGE, script_status=200, report=REPORT_PAGE):
    requests = []

    def responder(status, text):
        async def fake_fetch_once(session, url, *, timeout, headers=None):
            requests.append(url)
            return FetchResult(url=url, status=status, content_type="text/html", text=text, fetched_at="now")

        return fake_fetch_once

    monkeypatch.setattr(challenge_params, "fetch_once", responder(200, entry))
    monkeypatch.setattr(script_source, "fetch_once", responder(script_status, SCRIPT_TEXT))
    monkeypatch.setattr(query, "fetch_once", responder(200, report))
    return requests


def _sandbox(config, cookies=("js1key=K1", "pow=P1")):
    return ChallengeSandbox(config, environment_factory=lambda cfg: CookieEnvironment(list(cookies)))


def test_pipeline_end_to_end(tmp_path: Path, monkeypatch) -> None:
    requests = _install_service(monkeypatch)
    config = _config(tmp_path)

    record = asyncio.run(pipeline.run_pipeline("1.1.1.1", config=config, sandbox=_sandbox(config)))

    assert record.to_dict()["ip"] == "1.1.1.1"
    assert record.ip_location == "Example City"
    assert requests == [
        "https://ping0.cc/",
        "https://ping0.cc/static/js/c.js",
        "https://ping0.cc/ip/1.1.1.1",
    ]
    assert (tmp_path / "raw.js").read_text(encoding="utf-8") == SCRIPT_TEXT


def test_pipeline_reuses_cached_script(tmp_path: Path, monkeypatch) -> None:
    requests = _install_service(monkeypatch)
    config = _config(tmp_path)
    (tmp_path / "raw.js").write_text(SCRIPT_TEXT, encoding="utf-8")

    asyncio.run(pipeline.run_pipeline("", config=config, sandbox=_sandbox(config)))

    assert requests == ["https://ping0.cc/", "https://ping0.cc"]


def test_unsolved_challenge_is_incomplete_credentials(tmp_path: Path, monkeypatch) -> None:
    requests = _install_service(monkeypatch)
    config = _config(tmp_path)

    with pytest.raises(IncompleteCredentials):
        asyncio.run(pipeline.run_pipeline("1.1.1.1", config=config, sandbox=_sandbox(config, cookies=["js1key=K1"])))

    assert "https://ping0.cc/ip/1.1.1.1" not in requests


def test_missing_parameters_stop_the_pipeline(tmp_path: Path, monkeypatch) -> None:
    requests = _install_service(monkeypatch, entry="<html>maintenance</html>")
    config = _config(tmp_path)

    with pytest.raises(MissingParameters):
        asyncio.run(pipeline.run_pipeline("1.1.1.1", config=config, sandbox=_sandbox(config)))

    assert requests == ["https://ping0.cc/"]


def test_refresh_script_reports_summary(tmp_path: Path, monkeypatch) -> None:
    _install_service(monkeypatch)
    config = _config(tmp_path)
    (tmp_path / "raw.js").write_text("old", encoding="utf-8")

    summary = asyncio.run(pipeline.refresh_script(config=config))

    assert summary["origin"] == "downloaded"
    assert summary["url"] == "https://ping0.cc/static/js/c.js"
    assert summary["chars"] == len(SCRIPT_TEXT)
    assert (tmp_path / "raw.js").read_text(encoding="utf-8") == SCRIPT_TEXT


def test_refresh_script_does_not_fall_back_to_cache(tmp_path: Path, monkeypatch) -> None:
    _install_service(monkeypatch, script_status=404)
    config = _config(tmp_path)
    (tmp_path / "raw.js").write_text("old", encoding="utf-8")

    with pytest.raises(ScriptUnavailable) as excinfo:
        asyncio.run(pipeline.refresh_script(config=config))

    assert excinfo.value.status == 404
    assert (tmp_path / "raw.js").read_text(encoding="utf-8") == "old"


def test_pipeline_recovers_from_unreadable_cached_script(tmp_path: Path, monkeypatch) -> None:
    requests = _install_service(monkeypatch)
    config = _config(tmp_path)
    (tmp_path / "raw.js").write_bytes(b"\xff\xfe\x00garbage\x80")

    record = asyncio.run(pipeline.run_pipeline("1.1.1.1", config=config, sandbox=_sandbox(config)))

    assert record.ip == "1.1.1.1"
    assert "https://ping0.cc/static/js/c.js" in requests
    assert (tmp_path / "raw.js").read_text(encoding="utf-8") == SCRIPT_TEXT


def test_unreadable_cached_script_without_download_is_script_unavailable(tmp_path: Path, monkeypatch) -> None:
    _install_service(monkeypatch, script_status=503)
    config = _config(tmp_path)
    (tmp_path / "raw.js").write_bytes(b"\xff\xfe\x00garbage\x80")

    with pytest.raises(ScriptUnavailable) as excinfo:
        asyncio.run(pipeline.run_pipeline("1.1.1.1", config=config, sandbox=_sandbox(config)))

    assert excinfo.value.status == 503


def test_verbose_pipeline_logs_stage_timings(tmp_path: Path, monkeypatch, caplog) -> None:
    _install_service(monkeypatch)
    config = _config(tmp_path)

    with caplog.at_level(logging.INFO, logger="pong0"):
        asyncio.run(pipeline.run_pipeline("1.1.1.1", verbose=True, config=config, sandbox=_sandbox(config)))

    messages = [record.getMessage() for record in caplog.records]
    for stage in ("parameters", "credentials", "query"):
        assert any(message.startswith(f"Stage {stage} finished in ") for message in messages)
    assert any(message.startswith("Total time: ") for message in messages)


def test_format_elapsed() -> None:
    assert pipeline.format_elapsed(123.456) == "123.46ms"
    assert pipeline.format_elapsed(1234.5) == "1.23s"
