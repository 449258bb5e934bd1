"""
Shared CLI plumbing: lazy runtime construction and output helpers.
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click

from visitproof.config import VisitProofConfig
from visitproof.core.exceptions import VisitProofError
from visitproof.runtime.context import RuntimeContext


class CliState:
    """Carried on ctx.obj; builds the runtime on first use."""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        runtime:     Optional[RuntimeContext] = None,
    ) -> None:
        self.config_path = config_path
        self._runtime    = runtime

    @property
    def runtime(self) -> RuntimeContext:
        if self._runtime is None:
            try:
                config = VisitProofConfig.load(self.config_path)
                self._runtime = RuntimeContext.from_config(config)
            except (VisitProofError, ValueError) as e:
                emit_error(str(e))
                sys.exit(2)
        return self._runtime


def emit_error(msg: str, fmt: str = "human") -> None:
    """Emit an error in the requested format. Never raises."""
    if fmt == "json":
        click.echo(json.dumps({"error": msg}))
    else:
        click.echo(f"ERROR: {msg}", err=True)


def emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


pass_state = click.make_pass_decorator(CliState)
