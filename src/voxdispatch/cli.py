"""Command line interface for the voxdispatch transcription core."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer

from .catalog import ProviderCatalog
from .config import config_from_env
from .cost import CostCalculator, estimate_processing_time_ms
from .errors import DispatchError, error_payload
from .logging_utils import _make_json_safe, configure_logging
from .media import MediaProber, file_format
from .models import SelectionCriteria
from .selector import ProviderSelector
from .service import create_service

app = typer.Typer(help="Dispatch media files to speech-to-text providers.")


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(_make_json_safe(payload), indent=2))


def _fail(exc: BaseException) -> None:
    typer.secho(json.dumps(error_payload(exc), indent=2), fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def _load_catalog(catalog_path: Path | None) -> ProviderCatalog:
    if catalog_path is None:
        return ProviderCatalog.default()
    try:
        return ProviderCatalog.from_file(catalog_path)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Catalog '{catalog_path}' could not be loaded: {exc}") from exc


def _parse_options(values: list[str] | None) -> dict[str, Any]:
    options: dict[str, Any] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Options must look like key=value, got '{item}'")
        try:
            options[key] = json.loads(raw)
        except json.JSONDecodeError:
            options[key] = raw
    return options


@app.command()
def providers(
    catalog_path: Path | None = typer.Option(
        None, "--catalog", help="JSON catalog overriding the built-in providers."
    ),
):
    """List the configured providers."""

    catalog = _load_catalog(catalog_path)
    _echo_json([descriptor.model_dump(mode="json") for descriptor in catalog.all()])


@app.command()
def probe(
    input: Path = typer.Argument(..., exists=True, readable=True, help="Media file to inspect"),
):
    """Print duration, codec and format metadata for a media file."""

    config = config_from_env()
    try:
        info = MediaProber(config.ffprobe_bin).probe(input)
    except DispatchError as exc:
        _fail(exc)
    _echo_json(info.model_dump(mode="json"))


@app.command()
def estimate(
    input: Path = typer.Argument(..., exists=True, readable=True, help="Media file to quote"),
    provider: str | None = typer.Option(None, help="Quote this provider instead of selecting one."),
    catalog_path: Path | None = typer.Option(None, "--catalog", help="JSON catalog override."),
):
    """Select a provider for INPUT and quote its cost."""

    catalog = _load_catalog(catalog_path)
    config = config_from_env()
    try:
        info = MediaProber(config.ffprobe_bin).probe(input)
        name = provider or ProviderSelector(catalog).select(
            file_format(input), info.size_bytes, info.duration_seconds
        )
        quote = CostCalculator(catalog).quote(info.duration_seconds, name)
    except DispatchError as exc:
        _fail(exc)
    payload = quote.model_dump(mode="json")
    payload["duration_seconds"] = info.duration_seconds
    payload["estimated_processing_time_ms"] = estimate_processing_time_ms(
        info.duration_seconds, catalog.get(name)
    )
    _echo_json(payload)


async def _transcribe(
    input: Path,
    provider: str | None,
    options: dict[str, Any],
    overrides: dict[str, Any],
    exclude: list[str],
    timeout: float | None,
) -> dict[str, Any]:
    config = config_from_env(**overrides)
    criteria = SelectionCriteria(exclude=frozenset(exclude)) if exclude else None
    async with create_service(config) as service:
        handle = await service.submit(input, provider, options, criteria=criteria)
        report = await service.wait_for(handle.request_id, timeout=timeout)
    return report.model_dump(mode="json")


@app.command()
def transcribe(
    input: Path = typer.Argument(..., exists=True, readable=True, help="Media file to transcribe"),
    provider: str | None = typer.Option(None, help="Force a provider instead of auto selection."),
    option: list[str] | None = typer.Option(
        None, "--option", "-o", help="Provider option as key=value (repeatable)."
    ),
    exclude: list[str] | None = typer.Option(
        None, "--exclude", help="Provider to leave out of auto selection (repeatable)."
    ),
    catalog_path: Path | None = typer.Option(None, "--catalog", help="JSON catalog override."),
    jobs_dir: Path | None = typer.Option(None, help="Persist the queue in this directory."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Disable the result cache."),
    timeout: float | None = typer.Option(None, help="Give up waiting after this many seconds."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log job progress."),
):
    """Submit INPUT, wait for the job to finish and print its status report."""

    configure_logging(logging.INFO if verbose else logging.WARNING)
    overrides: dict[str, Any] = {
        "catalog_path": catalog_path,
        "jobs_dir": jobs_dir,
        "enable_caching": False if no_cache else None,
    }
    try:
        report = asyncio.run(
            _transcribe(input, provider, _parse_options(option), overrides, exclude or [], timeout)
        )
    except DispatchError as exc:
        _fail(exc)
    except TimeoutError as exc:
        typer.secho(f"No result within {timeout}s", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc

    _echo_json(report)
    if report["status"] != "completed":
        raise typer.Exit(code=1)


def main() -> None:
    """Console script entry point for the voxdispatch CLI."""
    app()


if __name__ == "__main__":  # pragma: no cover
    app()
