"""Playwright-backed sandbox environment for the challenge script.

A headless Chromium page is pinned to the service origin with a blank
document served locally, so the script sees the origin it expects without
loading the real page. Init scripts pin the navigator identity, stub the
drawing-surface APIs with fixed pixel data and route ``document.cookie``
writes back to Python.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from .pong0_config import NAVIGATOR_VENDOR, PipelineConfig
from .sandbox import SandboxEnvironment, SandboxHooks

logger = logging.getLogger(__name__)

try:  # Playwright is optional at import time; doctor reports when missing
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore

COOKIE_BINDING = "__pong0CookieWrite"

BLANK_DOCUMENT = "<!DOCTYPE html><html><head></head><body></body></html>"

# 1x1 white PNG
FIXED_DATA_URL = (
    "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

_INIT_SCRIPT_TEMPLATE = r"""
(() => {
  const pin = (target, name, value) => {
    try {
      Object.defineProperty(target, name, { get: () => value, configurable: true });
    } catch (e) {}
  };
  pin(Navigator.prototype, 'webdriver', false);
  pin(Navigator.prototype, 'userAgent', __USER_AGENT__);
  pin(Navigator.prototype, 'vendor', __VENDOR__);

  const fixedPixels = (w, h) => {
    const data = new Uint8ClampedArray(Math.max(1, (w || 1) * (h || 1)) * 4);
    data.fill(255);
    return data;
  };

  const context2d = (canvas) => {
    const ctx = {
      canvas,
      fillStyle: '#000000',
      strokeStyle: '#000000',
      font: '10px sans-serif',
      lineWidth: 1,
      textBaseline: 'alphabetic',
      globalCompositeOperation: 'source-over',
      getImageData: (x, y, w, h) => ({ data: fixedPixels(w, h), width: w || 1, height: h || 1 }),
      createImageData: (w, h) => ({ data: new Uint8ClampedArray((w * h * 4) || 4), width: w || 1, height: h || 1 }),
      putImageData: () => {},
      drawImage: () => {},
      fillRect: () => {},
      clearRect: () => {},
      strokeRect: () => {},
      fillText: () => {},
      strokeText: () => {},
      save: () => {},
      restore: () => {},
      translate: () => {},
      rotate: () => {},
      scale: () => {},
      setTransform: () => {},
      measureText: () => ({ width: 0 }),
      isPointInPath: () => false,
      getContextAttributes: () => ({
        alpha: true,
        antialias: true,
        depth: true,
        failIfMajorPerformanceCaveat: false,
        powerPreference: 'default',
        premultipliedAlpha: true,
        preserveDrawingBuffer: false,
        stencil: true,
      }),
    };
    for (const name of ['beginPath', 'closePath', 'moveTo', 'lineTo', 'stroke', 'fill', 'arc', 'rect', 'quadraticCurveTo', 'bezierCurveTo']) {
      ctx[name] = () => ctx;
    }
    ctx.createLinearGradient = () => ({ addColorStop: () => {} });
    ctx.createRadialGradient = () => ({ addColorStop: () => {} });
    return ctx;
  };

  const context3d = (canvas) => ({
    canvas,
    drawingBufferWidth: canvas.width || 300,
    drawingBufferHeight: canvas.height || 150,
    getParameter: () => 'pong0',
    getExtension: () => null,
    getSupportedExtensions: () => [],
    getContextAttributes: () => ({ antialias: true, depth: true, stencil: false }),
    getShaderPrecisionFormat: () => ({ rangeMin: 127, rangeMax: 127, precision: 23 }),
    readPixels: (x, y, w, h, format, type, pixels) => { if (pixels && pixels.fill) pixels.fill(255); },
  });

  HTMLCanvasElement.prototype.getContext = function (type) {
    const kind = String(type || '2d').toLowerCase();
    if (kind === 'webgl' || kind === 'experimental-webgl' || kind === 'webgl2') {
      return context3d(this);
    }
    return context2d(this);
  };
  HTMLCanvasElement.prototype.toDataURL = function () { return __DATA_URL__; };
  HTMLCanvasElement.prototype.toBlob = function (callback) {
    if (callback) callback(new Blob([''], { type: 'image/png' }));
  };

  const jar = {};
  Object.defineProperty(Document.prototype, 'cookie', {
    configurable: true,
    get() {
      return Object.entries(jar).map(([k, v]) => `${k}=${v}`).join('; ');
    },
    set(value) {
      const raw = String(value);
      const pair = raw.split(';')[0];
      const idx = pair.indexOf('=');
      if (idx > 0) {
        const key = pair.slice(0, idx).trim();
        const val = pair.slice(idx + 1).trim();
        if (key && val) jar[key] = val;
      }
      try { window.__BINDING__(raw); } catch (e) {}
    },
  });

  window.open = function () { console.log('[sandbox] blocked window.open'); return null; };
  window.addEventListener('error', (event) => { event.preventDefault(); return true; });
})();
"""


def build_init_script(user_agent: str, vendor: str = NAVIGATOR_VENDOR) -> str:
    return (
        _INIT_SCRIPT_TEMPLATE.replace("__USER_AGENT__", json.dumps(user_agent))
        .replace("__VENDOR__", json.dumps(vendor))
        .replace("__DATA_URL__", json.dumps(FIXED_DATA_URL))
        .replace("__BINDING__", COOKIE_BINDING)
    )


class PlaywrightEnvironment(SandboxEnvironment):
    """One headless Chromium context per challenge run."""

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._document_served = False
        self.blocked_navigations = 0

    async def open(self, hooks: SandboxHooks) -> None:
        if async_playwright is None:
            raise RuntimeError(
                "Playwright is not installed; run `pip install playwright` and `playwright install chromium`"
            )
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
        self._context = await self._browser.new_context(
            user_agent=self.config.user_agent,
            locale="zh-CN",
            viewport={"width": 1920, "height": 1080},
            java_script_enabled=True,
            extra_http_headers={"Accept-Language": self.config.accept_language},
        )
        page = await self._context.new_page()
        self._page = page

        page.on("pageerror", lambda err: hooks.on_error(getattr(err, "message", None) or str(err)))
        page.on("console", lambda msg: hooks.on_console(msg.text))
        await page.expose_function(COOKIE_BINDING, hooks.on_cookie)
        await page.add_init_script(build_init_script(self.config.user_agent))
        await page.route("**/*", self._route)

        await page.goto(
            self.config.root_url,
            wait_until="domcontentloaded",
            timeout=int(self.config.http_timeout * 1000),
        )

    async def _route(self, route: Any) -> None:
        request = route.request
        if request.resource_type != "document":
            await route.continue_()
            return
        if not self._document_served:
            self._document_served = True
            await route.fulfill(status=200, content_type="text/html; charset=utf-8", body=BLANK_DOCUMENT)
            return
        self.blocked_navigations += 1
        logger.debug("Blocked sandbox navigation to %s", request.url)
        # ERR_ABORTED leaves the current document in place instead of an error page
        await route.abort("aborted")

    async def set_globals(self, bindings: Mapping[str, str]) -> None:
        await self._page.evaluate(
            "(bindings) => { for (const [k, v] of Object.entries(bindings)) { window[k] = v; } }",
            dict(bindings),
        )

    async def execute(self, source: str) -> None:
        await self._page.add_script_tag(content=source)

    async def close(self) -> None:
        for name in ("_context", "_browser"):
            handle = getattr(self, name)
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception as exc:
                logger.debug("Closing sandbox %s failed: %s", name.strip("_"), exc)
            setattr(self, name, None)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as exc:
                logger.debug("Stopping playwright failed: %s", exc)
            self._playwright = None
        self._page = None


__all__ = ["PlaywrightEnvironment", "build_init_script", "COOKIE_BINDING", "BLANK_DOCUMENT", "FIXED_DATA_URL"]
