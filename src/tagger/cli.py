"""Defender device tagger CLI (dtag).

Runbook entry points for tagging Defender machines and cleaning up stale
Intune devices. Secrets are never accepted on the command line; they come
from the secret store selected by SECRET_SOURCE.

Usage:
    dtag tag-subscription --subscriptions "sub-a,sub-b" --tag AVD
    dtag tag-inactive --tag Inactive30 --days-inactive 30 --max-days-inactive 90
    dtag remove-stale --days-inactive 180 --os Windows --what-if
    dtag remove-stale --days-inactive 180 --remove --confirm
"""

from __future__ import annotations

import sys
from collections.abc import Callable

import click

from .config import (
    DEFAULT_MAX_DAYS_INACTIVE,
    Config,
    ConfigurationError,
    LogFormat,
    RunMode,
    parse_subscription_list,
    validate_tag,
)
from .filters import InactivityCriteria
from .main import (
    RunReport,
    run_inactivity_tagging,
    run_stale_removal,
    run_subscription_tagging,
    setup_logging,
)
from .removal import RemovalCriteria


def _load_config(log_format: str | None) -> Config:
    config = Config.from_env()
    setup_logging(LogFormat(log_format) if log_format else config.log_format)
    return config


def _execute(run: Callable[[], RunReport]) -> None:
    """Run a runbook, print its summary and exit with its code."""
    try:
        report = run()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    # Completed runs report on stdout even when batches failed
    click.echo(report.summary, err=report.fatal)
    sys.exit(report.exit_code)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="dtag")
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    default=None,
    help="Log rendering (default: LOG_FORMAT or json)",
)
@click.pass_context
def cli(ctx: click.Context, log_format: str | None) -> None:
    """Defender device tagger (dtag).

    \b
    Endpoint and secret-store settings come from the environment:
        SECRET_SOURCE, KEY_VAULT_URL, DEFENDER_API_URL, GRAPH_API_URL, ...
    """
    ctx.ensure_object(dict)
    ctx.obj["log_format"] = log_format


# =============================================================================
# Tagging Commands
# =============================================================================


@cli.command("tag-subscription")
@click.option(
    "--subscriptions",
    "-s",
    required=True,
    help="Comma-separated Azure subscription IDs",
)
@click.option("--tag", "-t", "tag_name", required=True, help="Tag to apply")
@click.option("--what-if", is_flag=True, help="Report matching devices without tagging")
@click.pass_context
def tag_subscription(ctx: click.Context, subscriptions: str, tag_name: str, what_if: bool) -> None:
    """Tag Defender machines running in the given subscriptions."""

    def run() -> RunReport:
        config = _load_config(ctx.obj["log_format"])
        return run_subscription_tagging(
            config,
            parse_subscription_list(subscriptions),
            validate_tag(tag_name),
            RunMode.WHAT_IF if what_if else RunMode.APPLY,
        )

    _execute(run)


@cli.command("tag-inactive")
@click.option("--tag", "-t", "tag_name", required=True, help="Tag to apply")
@click.option(
    "--days-inactive",
    type=int,
    default=0,
    show_default=True,
    help="Minimum days since last seen (0 disables the lower bound)",
)
@click.option(
    "--max-days-inactive",
    type=int,
    default=DEFAULT_MAX_DAYS_INACTIVE,
    show_default=True,
    help="Maximum days since last seen",
)
@click.option(
    "--include-stale",
    is_flag=True,
    help="Include devices with no last-seen data or inactive for over a year",
)
@click.option("--what-if", is_flag=True, help="Report matching devices without tagging")
@click.pass_context
def tag_inactive(
    ctx: click.Context,
    tag_name: str,
    days_inactive: int,
    max_days_inactive: int,
    include_stale: bool,
    what_if: bool,
) -> None:
    """Tag Inactive Defender machines within a last-seen window."""

    def run() -> RunReport:
        config = _load_config(ctx.obj["log_format"])
        criteria = InactivityCriteria(
            min_days=days_inactive,
            max_days=max_days_inactive,
            include_stale=include_stale,
        )
        return run_inactivity_tagging(
            config,
            criteria,
            validate_tag(tag_name),
            RunMode.WHAT_IF if what_if else RunMode.APPLY,
        )

    _execute(run)


# =============================================================================
# Removal Command
# =============================================================================


@cli.command("remove-stale")
@click.option(
    "--days-inactive",
    type=int,
    required=True,
    help="Remove devices that have not synced for this many days",
)
@click.option(
    "--os",
    "operating_systems",
    multiple=True,
    help="Only remove devices on this platform (repeatable)",
)
@click.option(
    "--what-if/--remove",
    "what_if",
    default=True,
    help="Report only (default) or delete devices",
)
@click.option("--confirm", is_flag=True, help="Required together with --remove")
@click.pass_context
def remove_stale(
    ctx: click.Context,
    days_inactive: int,
    operating_systems: tuple[str, ...],
    what_if: bool,
    confirm: bool,
) -> None:
    """Remove Intune managed devices that stopped syncing."""

    def run() -> RunReport:
        config = _load_config(ctx.obj["log_format"])
        criteria = RemovalCriteria(
            days_inactive=days_inactive,
            operating_systems=tuple(operating_systems),
        )
        return run_stale_removal(
            config,
            criteria,
            RunMode.WHAT_IF if what_if else RunMode.APPLY,
            confirm=confirm,
        )

    _execute(run)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
