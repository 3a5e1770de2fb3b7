"""Environment diagnostics for ``pong0 doctor``."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .pong0_config import PipelineConfig, api_key_from_env


def mask_api_key(value: str, keep: int = 4) -> str:
    """Show only the edges of the bearer key; short keys are fully masked."""

    raw = (value or "").strip()
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _check_playwright_available() -> bool:
    from . import browser_env

    return getattr(browser_env, "async_playwright", None) is not None


def _cache_location_writable(path: Path) -> bool:
    # The cache file is replaced via a temp file in its directory.
    directory = path.parent
    return directory.is_dir() and os.access(directory, os.W_OK)


def build_doctor_report(*, config: Optional[PipelineConfig] = None) -> Dict[str, Any]:
    config = config or PipelineConfig.from_env()
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = value
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    playwright_ok = _check_playwright_available()
    add_check(
        "playwright",
        playwright_ok,
        detail="Challenge sandbox available" if playwright_ok else "Challenge sandbox unavailable",
        remedy="Install Playwright and run `playwright install --with-deps chromium`.",
        level="warn",
    )

    cache_path = Path(config.script_cache_path)
    add_check(
        "PONG0_SCRIPT_CACHE_PATH",
        _cache_location_writable(cache_path),
        detail=str(cache_path),
        remedy="Create the cache directory or set PONG0_SCRIPT_CACHE_PATH to a writable location.",
        level="warn",
    )
    cached = cache_path.is_file()
    add_check(
        "challenge_script",
        cached,
        detail="Cached challenge script present" if cached else "No cached challenge script; first run downloads it",
        remedy="Run `pong0 refresh` to download the challenge script ahead of time.",
        level="info",
    )

    add_check("PONG0_BASE_URL", True, detail=config.base_url, level="info")
    add_check(
        "timeouts",
        True,
        detail=(
            f"http={config.http_timeout:g}s sandbox={config.sandbox_timeout:g}s "
            f"backup={config.sandbox_backup_timeout:g}s"
        ),
        level="info",
    )

    api_key = api_key_from_env()
    add_check(
        "PONG0_API_KEY",
        bool(api_key),
        detail="Bearer auth enabled for `pong0 serve`" if api_key else "Bearer auth disabled for `pong0 serve`",
        remedy="Set PONG0_API_KEY (or pass --key) to require a bearer token.",
        level="info",
        value=mask_api_key(api_key) if api_key else None,
    )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = [f"pong0 doctor ({report.get('generated_at')})", ""]
    for check in report.get("checks", []):
        value = check.get("value")
        suffix = f" [{value}]" if value else ""
        lines.append(f"{check['status']:>7}  {check['name']}{suffix} ({check.get('level', 'info')})")
        if check.get("detail"):
            lines.append(f"         {check['detail']}")
        if check.get("remedy") and check["status"] != "ok":
            lines.append(f"         fix: {check['remedy']}")
    lines.append("")
    lines.append("ok" if report.get("ok") else "problems found")
    return "\n".join(lines) + "\n"
