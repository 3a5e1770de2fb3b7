import asyncio
import json
import logging
from pathlib import Path

import pytest

from pong0.workflows import browser_env
from pong0.workflows.browser_env import FIXED_DATA_URL, PlaywrightEnvironment
from pong0.workflows.challenge_params import ChallengeParameters
from pong0.workflows.pong0_config import NAVIGATOR_VENDOR, PipelineConfig
from pong0.workflows.sandbox import SOURCE_CREDENTIALS, ChallengeSandbox, Credentials
from pong0.workflows.script_source import ChallengeScript

CHALLENGE_SCRIPT = """
setTimeout(() => { location.href = '/elsewhere'; }, 50);
window.open('https://example.com/popup');
setTimeout(() => {
  const canvas = document.createElement('canvas');
  const pixel = canvas.getContext('2d').getImageData(0, 0, 1, 1).data[0];
  const fixed = canvas.toDataURL() === __DATA_URL__;
  const pinned = navigator.webdriver === false
    && navigator.userAgent === __USER_AGENT__
    && navigator.vendor === __VENDOR__;
  document.cookie = 'js1key=' + window.x1 + '; path=/';
  document.cookie = 'pow=' + window.difficulty + '.' + pixel + '.' + pinned + '.' + fixed;
  window.location.reload();
}, 500);
"""


@pytest.fixture(scope="module")
def chromium() -> None:
    if browser_env.async_playwright is None:
        pytest.skip("playwright is not installed")

    async def launch() -> None:
        async with browser_env.async_playwright() as pw:
            browser = await pw.chromium.launch(headless=True)
            await browser.close()

    try:
        asyncio.run(launch())
    except Exception as exc:
        pytest.skip(f"chromium is not launchable: {exc}")


def test_playwright_sandbox_yields_credentials_and_blocks_navigation(
    chromium, tmp_path: Path, monkeypatch, caplog
) -> None:
    created = []

    class RecordingEnvironment(PlaywrightEnvironment):
        def __init__(self, config: PipelineConfig) -> None:
            super().__init__(config)
            created.append(self)

    # the default factory resolves the environment class at call time
    monkeypatch.setattr(browser_env, "PlaywrightEnvironment", RecordingEnvironment)
    caplog.set_level(logging.DEBUG, logger="pong0.workflows.sandbox")

    config = PipelineConfig(
        http_timeout=15.0,
        sandbox_timeout=20.0,
        sandbox_backup_timeout=25.0,
        script_cache_path=tmp_path / "raw.js",
    )
    source = (
        CHALLENGE_SCRIPT.replace("__DATA_URL__", json.dumps(FIXED_DATA_URL))
        .replace("__USER_AGENT__", json.dumps(config.user_agent))
        .replace("__VENDOR__", json.dumps(NAVIGATOR_VENDOR))
    )
    params = ChallengeParameters(nonce="abc123", difficulty="5", script_url="https://ping0.cc/static/js/c.js")
    sandbox = ChallengeSandbox(config)

    credentials = asyncio.run(sandbox.solve(params, ChallengeScript(text=source, origin="cached")))

    assert credentials == Credentials(session_key="abc123", proof_token="5.255.true.true")
    assert sandbox.last_outcome.source == SOURCE_CREDENTIALS
    assert "location_href_assign" in sandbox.last_outcome.patch.residual
    assert len(created) == 1
    assert created[0].blocked_navigations >= 1
    assert any("blocked window.open" in record.getMessage() for record in caplog.records)
