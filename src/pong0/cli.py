from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict, Optional

import typer

from . import __version__
from .pipeline import configure_logging, error_payload, refresh_script, run_pipeline
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.errors import InvalidConfiguration
from .workflows.pong0_config import PipelineConfig, api_key_from_env
from .workflows.script_source import format_size

app = typer.Typer(add_completion=False, no_args_is_help=False)

BANNER_RULE = "-------------------------------------"


def _emit_json(payload: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def _banner(title: str) -> None:
    typer.echo(BANNER_RULE, err=True)
    typer.echo(title, err=True)
    typer.echo(BANNER_RULE, err=True)


def _load_config(verbose: bool) -> PipelineConfig:
    try:
        return PipelineConfig.from_env(verbose=verbose)
    except InvalidConfiguration as exc:
        _emit_json(error_payload(exc))
        raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pong0 {__version__}")
        raise typer.Exit(code=0)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", "-v", callback=_version_callback, is_eager=True, help="Show the version and exit."
    ),
) -> None:
    """Look up IP information behind the ping0 challenge."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=0)


@app.command("query")
def query_cmd(
    ip: Optional[str] = typer.Option(None, "--ip", "-i", help="Address to look up (default: your own)."),
    raw: bool = typer.Option(False, "--raw", "-r", help="Force a fresh download of the challenge script."),
    all_: bool = typer.Option(False, "--all", "-a", help="Show detailed progress and stage timings."),
) -> None:
    """Run the pipeline once and print the record as JSON."""
    configure_logging(all_)
    config = _load_config(all_)
    if all_:
        _banner("pong0")
    try:
        record = asyncio.run(run_pipeline(ip or "", raw, all_, config=config))
    except Exception as exc:
        if all_:
            typer.echo(f"error: {exc}", err=True)
        _emit_json(error_payload(exc))
        raise typer.Exit(code=1)
    _emit_json(record.to_dict())


@app.command("refresh")
def refresh_cmd(
    all_: bool = typer.Option(False, "--all", "-a", help="Show detailed progress."),
) -> None:
    """Re-download the challenge script without running a query."""
    configure_logging(all_)
    config = _load_config(all_)
    typer.echo("Updating the challenge script...", err=True)
    try:
        summary = asyncio.run(refresh_script(all_, config=config))
    except Exception as exc:
        typer.echo(f"Challenge script update failed: {exc}", err=True)
        _emit_json(error_payload(exc))
        raise typer.Exit(code=1)
    typer.echo(f"{config.script_cache_path.name} updated, {format_size(summary['chars'])}")


@app.command("serve")
def serve_cmd(
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on."),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Require this bearer token (default: PONG0_API_KEY)."),
    raw: bool = typer.Option(False, "--raw", "-r", help="Refresh the challenge script once at start-up."),
    all_: bool = typer.Option(False, "--all", "-a", help="Log every request and stage timings."),
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind."),
) -> None:
    """Serve GET|POST /query over HTTP."""
    from .server import create_app

    configure_logging(all_)
    config = _load_config(all_)
    api_key = key or api_key_from_env()
    if raw:
        try:
            asyncio.run(refresh_script(all_, config=config))
        except Exception as exc:
            typer.echo(f"Failed to refresh the challenge script: {exc}", err=True)
            raise typer.Exit(code=1)

    flask_app = create_app(config, api_key=api_key, verbose=all_)
    if all_:
        _banner("pong0 API server")
    typer.echo(f"API server listening on http://localhost:{port}", err=True)
    typer.echo(f"- Query your own IP: GET http://localhost:{port}/query", err=True)
    typer.echo(f"- Query a given IP: GET http://localhost:{port}/query?ip=1.1.1.1", err=True)
    if api_key:
        typer.echo("- Bearer auth enabled: send 'Authorization: Bearer YOUR_API_KEY'", err=True)
    try:
        flask_app.run(host=host, port=port, debug=False, use_reloader=False)
    except OSError as exc:
        typer.echo(f"Failed to start the API server on port {port}: {exc}", err=True)
        raise typer.Exit(code=1)


@app.command("doctor")
def doctor_cmd() -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


if __name__ == "__main__":
    app()
