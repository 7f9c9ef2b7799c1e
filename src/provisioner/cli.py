"""M365 lab provisioner CLI (m365lab).

Usage:
    m365lab validate lab.xlsx                 # Load and map only
    m365lab plan lab.xlsx --domain contoso.com
    m365lab apply lab.xlsx --workers 4 --report run.json
    m365lab teardown lab.xlsx                 # Remove everything in the workbook
"""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config import AuthMode, Config, ConfigurationError, ReconciliationMode
from .credentials import CredentialPolicyError
from .main import (
    EXIT_CONFIG_ERROR,
    EXIT_FAILED,
    EXIT_OK,
    ProvisionResult,
    install_cancel_handler,
    map_input,
    provision,
    setup_logging,
)
from .records import RecordLoadError
from .reporting import render_json, render_text, write_report

OUTPUT_FORMATS = ("text", "json")


def config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that needs a Config."""
    options = [
        click.argument(
            "input_file",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
        ),
        click.option("--sheet", "sheets", multiple=True, help="Workbook sheet to read (repeatable)"),
        click.option("--domain", help="Tenant mail domain [env: M365LAB_DOMAIN]"),
        click.option("--default-owner", help="Owner for rows without one [env: M365LAB_DEFAULT_OWNER]"),
        click.option("--tenant", help="SharePoint host prefix [env: M365LAB_TENANT]"),
        click.option(
            "--auth",
            "auth_mode",
            type=click.Choice([m.value for m in AuthMode]),
            help="Credential type [env: M365LAB_AUTH_MODE]",
        ),
        click.option("--workers", "max_workers", type=int, help="Parallel intents [env: MAX_WORKERS]"),
        click.option(
            "--poll-attempts",
            "poll_max_attempts",
            type=int,
            help="Verification attempts after create [env: POLL_MAX_ATTEMPTS]",
        ),
        click.option(
            "--poll-delay",
            "poll_delay_seconds",
            type=float,
            help="Seconds between attempts [env: POLL_DELAY_SECONDS]",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def output_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option(
        "--report",
        "report_path",
        type=click.Path(dir_okay=False, path_type=Path),
        help="Write a JSON run report to this file",
    )(func)
    func = click.option(
        "--output",
        "output_format",
        type=click.Choice(OUTPUT_FORMATS),
        default="text",
        show_default=True,
        help="Result format on stdout",
    )(func)
    return func


def load_config(**overrides: Any) -> Config:
    """Config from the environment with CLI overrides applied.

    Exits with code 2 on validation errors.
    """
    if overrides.get("auth_mode") is not None:
        overrides["auth_mode"] = AuthMode(overrides["auth_mode"])
    try:
        return Config.from_env(**overrides)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)


def run_provision(
    config: Config,
    input_file: Path,
    *,
    command: str,
    sheets: tuple[str, ...],
    output_format: str,
    report_path: Path | None,
    teardown: bool = False,
    mode: ReconciliationMode | None = None,
) -> None:
    """Run the pipeline, print the result and exit with its code."""
    cancel_event = threading.Event()
    install_cancel_handler(cancel_event)

    try:
        outcome: ProvisionResult = provision(
            config,
            input_file,
            command=command,
            sheets=sheets or None,
            teardown=teardown,
            mode=mode,
            cancel_event=cancel_event,
        )
    except RecordLoadError as e:
        raise click.ClickException(str(e)) from e
    except CredentialPolicyError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    if output_format == "json":
        click.echo(render_json(outcome.result, outcome.report))
    else:
        click.echo(render_text(outcome.result, outcome.report))

    if report_path is not None:
        write_report(outcome.result, report_path, outcome.report)

    sys.exit(outcome.exit_code)


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="m365lab")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="text",
    show_default=True,
    help="Log output format (logs go to stderr)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(log_format: str, verbose: bool) -> None:
    """M365 lab provisioner.

    Reads users, groups, teams, channels and sites from a workbook and
    converges a Microsoft 365 tenant toward it.

    \b
    Quick start:
        az login
        m365lab plan lab.xlsx --domain contoso.onmicrosoft.com
        m365lab apply lab.xlsx --domain contoso.onmicrosoft.com
    """
    setup_logging(log_format, logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--sheet", "sheets", multiple=True, help="Workbook sheet to read (repeatable)")
@click.option("--domain", help="Tenant mail domain [env: M365LAB_DOMAIN]")
@click.option("--default-owner", help="Owner for rows without one [env: M365LAB_DEFAULT_OWNER]")
def validate(
    input_file: Path,
    sheets: tuple[str, ...],
    domain: str | None,
    default_owner: str | None,
) -> None:
    """Load and map INPUT_FILE without touching the tenant."""
    config = load_config(domain=domain, default_owner=default_owner)
    try:
        mapping = map_input(config, input_file, sheets=sheets or None)
    except RecordLoadError as e:
        raise click.ClickException(str(e)) from e

    for intent in mapping.intents:
        click.echo(
            f"{intent.type.value:<20} {intent.desired_state.value:<8} {intent.key}"
            f"  ({intent.source})"
        )
    for error in mapping.errors:
        click.echo(f"SKIPPED {error}", err=True)

    click.echo(f"{len(mapping.intents)} intent(s), {mapping.skipped} skipped record(s)")
    sys.exit(EXIT_FAILED if mapping.skipped else EXIT_OK)


@cli.command()
@config_options
@output_options
def plan(
    input_file: Path,
    sheets: tuple[str, ...],
    output_format: str,
    report_path: Path | None,
    **overrides: Any,
) -> None:
    """Show what apply would change (existence checks only)."""
    config = load_config(**overrides)
    run_provision(
        config,
        input_file,
        command="plan",
        sheets=sheets,
        output_format=output_format,
        report_path=report_path,
        mode=ReconciliationMode.OBSERVE,
    )


@cli.command()
@config_options
@output_options
def apply(
    input_file: Path,
    sheets: tuple[str, ...],
    output_format: str,
    report_path: Path | None,
    **overrides: Any,
) -> None:
    """Create and remove resources to match INPUT_FILE."""
    config = load_config(**overrides)
    run_provision(
        config,
        input_file,
        command="apply",
        sheets=sheets,
        output_format=output_format,
        report_path=report_path,
        mode=ReconciliationMode.ENFORCE,
    )


@cli.command()
@config_options
@output_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def teardown(
    input_file: Path,
    sheets: tuple[str, ...],
    output_format: str,
    report_path: Path | None,
    yes: bool,
    **overrides: Any,
) -> None:
    """Remove every resource listed in INPUT_FILE, dependents first."""
    config = load_config(**overrides)
    if not yes:
        click.confirm(
            f"Remove every resource in {input_file.name} from {config.domain}?",
            abort=True,
        )
    run_provision(
        config,
        input_file,
        command="teardown",
        sheets=sheets,
        output_format=output_format,
        report_path=report_path,
        teardown=True,
        mode=ReconciliationMode.ENFORCE,
    )


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
