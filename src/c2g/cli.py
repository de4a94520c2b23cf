"""CLI entrypoint for c2g.

Commands
- sync:            reconcile the Canvas feed into Google Calendar and Google Tasks
- status:          show record counts, known collections and the last run
- create-calendar: create (or adopt) the owner's destination calendar
- reset:           delete every item c2g created for the owner (requires --yes)

Notes
- Configuration precedence: CLI > ENV (C2G__) > YAML file, see config loader.
- When env C2G_DEV_SCAFFOLD=1 is set, `sync` prints the resolved plan and exits 0
  (useful for unit tests).
- Exit codes follow the orchestrator: 0 success, 2 partial, 3 fatal.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import typer

from .config import AppConfig, load_config
from .errors import C2GError
from .logging import setup_logging
from .sync.orchestrator import EXIT_FATAL, Orchestrator
from .sync.report import CombinedReport

app = typer.Typer(
    add_completion=False, help="Canvas calendar feed → Google Calendar / Tasks sync"
)


def _cli_overrides_from_args(
    *,
    owner: str | None = None,
    dry_run: bool | None = None,
    honor_excluded: bool | None = None,
    verbose: bool = False,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    sync_over: dict[str, Any] = {}
    if dry_run is not None:
        sync_over["dry_run"] = dry_run
    if honor_excluded is not None:
        sync_over["honor_excluded_courses"] = honor_excluded
    if sync_over:
        overrides["sync"] = sync_over

    if owner:
        overrides.setdefault("runtime", {})["owner_id"] = owner

    if verbose:
        overrides.setdefault("logging", {})["level"] = "DEBUG"

    return overrides


def _load(config: Path | None, overrides: dict[str, Any]) -> AppConfig:
    try:
        cfg = load_config(file_path=str(config) if config else None, cli_overrides=overrides)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_FATAL) from exc
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


def _echo_report(report: CombinedReport, *, as_json: bool, label: str) -> None:
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True, default=str))
        return
    agg = report.aggregate()
    typer.echo(
        f"c2g {label} summary: "
        f"created={agg['created']} updated={agg['updated']} deleted={agg['deleted']} "
        f"unchanged={agg['unchanged']} errors={agg['errors']}"
    )
    for dest, outcome in (("calendar", report.calendar), ("tasks", report.tasks)):
        for err in outcome.errors:
            where = err.uid or err.collection or "-"
            typer.echo(f"  {dest} error [{where}]: {err.message}", err=True)


_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Path to YAML config file.", show_default=False
)
_OWNER_OPTION = typer.Option(
    None, "--owner", help="Owner id (overrides runtime.owner_id).", show_default=False
)
_VERBOSE_OPTION = typer.Option(
    False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
)


@app.command(help="Reconcile the Canvas feed into Google Calendar and Google Tasks.")
def sync(
    config: Path | None = _CONFIG_OPTION,
    owner: str | None = _OWNER_OPTION,
    feed_url: str | None = typer.Option(
        None,
        "--feed-url",
        help="Canvas calendar feed URL; stored for the owner on a real run.",
        show_default=False,
    ),
    dry_run: bool | None = typer.Option(
        None,
        "--dry-run/--no-dry-run",
        help="Compute and report decisions without writing anything.",
        show_default=False,
    ),
    honor_excluded: bool | None = typer.Option(
        None,
        "--honor-excluded/--no-honor-excluded",
        help="Let excluded course lists veto routing.",
        show_default=False,
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the full report as JSON."),
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    overrides = _cli_overrides_from_args(
        owner=owner, dry_run=dry_run, honor_excluded=honor_excluded, verbose=verbose
    )
    cfg = _load(config, overrides)

    # Unit-test/dev scaffold path (no orchestrator execution)
    if os.getenv("C2G_DEV_SCAFFOLD", "").lower() in {"1", "true", "yes"}:
        typer.echo("c2g sync scaffold")
        typer.echo(f"  owner: {cfg.runtime.owner_id} | calendar: {cfg.google.calendar_name}")
        typer.echo(
            f"  dry_run: {cfg.sync.dry_run} | honor_excluded: {cfg.sync.honor_excluded_courses}"
            f" | max_concurrency: {cfg.sync.max_concurrency}"
        )
        typer.echo(
            f"  calendar courses: {cfg.policy.calendar.included_courses}"
            f" | task courses: {cfg.policy.tasks.included_courses}"
            f" | grouping: {cfg.policy.tasks.grouping}"
        )
        typer.echo(f"  feed url: {'(given)' if feed_url or cfg.feed.url else '(stored/none)'}")
        typer.echo(f"  config file: {config or '(none)'}")
        raise typer.Exit(code=0)

    exit_code, report = Orchestrator(cfg).run(cfg.runtime.owner_id, feed_url=feed_url)
    _echo_report(report, as_json=as_json, label="sync")
    raise typer.Exit(code=exit_code)


@app.command(help="Show record counts, collections and the last run.")
def status(
    config: Path | None = _CONFIG_OPTION,
    owner: str | None = _OWNER_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(owner=owner, verbose=verbose))
    info = Orchestrator(cfg).status(cfg.runtime.owner_id)
    typer.echo(json.dumps(info, indent=2, sort_keys=True, default=str))
    raise typer.Exit(code=0)


@app.command("create-calendar", help="Create (or adopt) the destination Google calendar.")
def create_calendar(
    config: Path | None = _CONFIG_OPTION,
    owner: str | None = _OWNER_OPTION,
    name: str | None = typer.Option(
        None, "--name", help="Calendar name (default: google.calendar_name).", show_default=False
    ),
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(owner=owner, verbose=verbose))
    try:
        collection, created = Orchestrator(cfg).create_calendar(cfg.runtime.owner_id, name)
    except (C2GError, ValueError) as exc:
        typer.echo(f"create-calendar failed: {exc}", err=True)
        raise typer.Exit(code=EXIT_FATAL) from exc
    verb = "created" if created else "registered existing"
    typer.echo(f"c2g {verb} calendar '{collection.name}' ({collection.external_id})")
    raise typer.Exit(code=0)


@app.command(help="Delete every item c2g created for the owner; user items are kept.")
def reset(
    config: Path | None = _CONFIG_OPTION,
    owner: str | None = _OWNER_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Proceed without confirmation."),
    as_json: bool = typer.Option(False, "--json", help="Print the full report as JSON."),
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(owner=owner, verbose=verbose))
    if not yes:
        typer.echo("Reset deletes every item c2g created for this owner. Use --yes to proceed.")
        raise typer.Exit(code=0)
    exit_code, report = Orchestrator(cfg).reset(cfg.runtime.owner_id)
    _echo_report(report, as_json=as_json, label="reset")
    raise typer.Exit(code=exit_code)


if __name__ == "__main__":  # pragma: no cover
    app()
