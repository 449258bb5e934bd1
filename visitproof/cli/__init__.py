"""
visitproof/cli/__init__.py

VisitProof CLI — root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    visitproof = "visitproof.cli:cli"

Configuration comes from --config (or VISITPROOF_CONFIG) plus the
VISITPROOF_* environment variables. The runtime is built lazily by the
first command that needs it, so `--help` works without secrets.

Exit codes:
    0  success
    1  negative result (invalid token, nothing to requeue)
    2  error (configuration, store)
"""

import logging
from pathlib import Path
from typing import Optional

import click

from visitproof.cli.common import CliState
from visitproof.cli.queue import dlq_group, queue_group
from visitproof.cli.token import token_group


@click.group()
@click.version_option(package_name="visitproof")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    metavar="PATH",
    help="YAML config file (default: $VISITPROOF_CONFIG).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_level: str) -> None:
    """
    VisitProof — visit verification and settlement operations.

    \b
    Commands:
      token    Issue and check proof tokens.
      queue    Inspect and drain the settlement queue.
      dlq      List, requeue and purge dead-lettered jobs.

    \b
    Quick start:
      visitproof token issue gangnam m1
      visitproof token verify 'ZZIK|gangnam|m1|...'
      visitproof queue stats
      visitproof dlq list --limit 20
    """
    logging.basicConfig(
        level=  getattr(logging, log_level.upper()),
        format= "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.obj is None:
        ctx.obj = CliState(config_path)


cli.add_command(token_group)
cli.add_command(queue_group)
cli.add_command(dlq_group)
