"""
tablestorage Command-Line Interface

Runs the sample scenarios and inspects the resolved configuration.
"""

import sys
import json
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import click
from pydantic import ValidationError

from tablestorage import __version__
from tablestorage.client import TableServiceClient
from tablestorage.core.config_manager import ConfigManager, TableStorageConfig, redact
from tablestorage.core.logging_config import setup_logging_from_config
from tablestorage.exceptions import TableStorageError
from tablestorage.samples.advanced import run_advanced_sample
from tablestorage.samples.basic import run_basic_sample


def _load_config(
    config: Optional[Path],
    log_level: Optional[str],
    backend: Optional[str],
    transport: Optional[str],
) -> TableStorageConfig:
    overrides: Dict[str, Any] = {}
    if log_level:
        overrides["logging"] = {"level": log_level.upper()}
    if backend:
        overrides["backend"] = backend.lower()
    if transport:
        overrides["transport"] = transport.lower()
    try:
        return ConfigManager().load(config_file=str(config) if config else None, cli_overrides=overrides)
    except (ValidationError, ValueError) as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(2)


_config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
_backend_option = click.option(
    "--backend",
    type=click.Choice(["classic", "cosmos"], case_sensitive=False),
    help="Service kind (detected from the endpoint by default)",
)
_transport_option = click.option(
    "--transport",
    type=click.Choice(["memory", "azure"], case_sensitive=False),
    help="Talk to the in-process emulator or the real service",
)


@click.group()
@click.version_option(version=__version__, prog_name="tablestorage")
@click.pass_context
def cli(ctx):
    """
    tablestorage - table storage client samples

    Runs the getting-started scenarios against the in-process emulator or a
    real storage account.
    """
    ctx.ensure_object(dict)


@cli.command()
@click.argument(
    "scenario",
    type=click.Choice(["basic", "advanced", "all"], case_sensitive=False),
    default="all",
)
@_config_option
@_backend_option
@_transport_option
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (overrides the configuration)",
)
def run(scenario: str, config: Optional[Path], backend: Optional[str], transport: Optional[str], log_level: Optional[str]):
    """
    Run sample scenarios.

    Examples:
        tablestorage run
        tablestorage run advanced --backend cosmos
        tablestorage run basic --transport azure --config account.yaml
    """
    settings = _load_config(config, log_level, backend, transport)
    setup_logging_from_config(settings.logging)
    logger = logging.getLogger("tablestorage.cli")

    click.echo(f"tablestorage v{__version__}: running {scenario} sample(s)")

    try:
        summary = asyncio.run(_run_samples(scenario.lower(), settings))
    except TableStorageError as e:
        logger.error(f"Sample failed: {e.message}")
        click.echo(f"[ERROR] {e.kind.value}: {e.message}", err=True)
        sys.exit(1)

    for line in summary:
        click.echo(line)


async def _run_samples(scenario: str, settings: TableStorageConfig) -> list:
    summary = []
    async with TableServiceClient.from_config(settings) as service:
        if scenario in ("basic", "all"):
            basic = await run_basic_sample(service, settings.samples)
            summary.append(
                f"[OK] basic: read back {basic.read_back} and deleted={basic.deleted}"
            )
        if scenario in ("advanced", "all"):
            advanced = await run_advanced_sample(service, settings.samples)
            summary.append(
                f"[OK] advanced: batch of {advanced.batch_size}, range of {len(advanced.range_row_keys)} "
                f"in segments {advanced.range_segment_sizes}, partition scan of {advanced.partition_scan_count}"
            )
            if advanced.skipped:
                summary.append(f"     skipped: {', '.join(advanced.skipped)}")
    return summary


@cli.command()
@_config_option
@_backend_option
@_transport_option
def config(config: Optional[Path], backend: Optional[str], transport: Optional[str]):
    """
    Show the resolved configuration (secrets redacted).

    Displays the configuration after applying file, environment and CLI sources.
    """
    settings = _load_config(config, None, backend, transport)
    resolved = redact(settings)
    resolved["backend"] = settings.backend_type.value
    click.echo(json.dumps(resolved, indent=2))


@cli.command()
def version():
    """Show tablestorage version."""
    click.echo(f"tablestorage version {__version__}")


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
