"""
visitproof queue / visitproof dlq — settlement queue operations.

Usage:
    visitproof queue stats
    visitproof queue consume [--limit N]     drain one batch through the worker
    visitproof dlq list [--limit N] [--offset K]
    visitproof dlq requeue <index>           index as shown by `dlq list`
    visitproof dlq purge --yes

Output is JSON. The queue only persists across invocations with a
sqlite:/// store DSN.
"""

import sys

import click

from visitproof.cli.common import CliState, emit_error, emit_json, pass_state


# ── queue ─────────────────────────────────────────────────────

@click.group(name="queue")
def queue_group() -> None:
    """Inspect and drain the settlement queue."""


@queue_group.command(name="stats")
@pass_state
def stats_command(state: CliState) -> None:
    """Ready, delayed and dead-lettered job counts."""
    emit_json(state.runtime.queue.stats())


@queue_group.command(name="consume")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Batch size.")
@pass_state
def consume_command(state: CliState, limit) -> None:
    """Run one worker batch and print each job outcome."""
    outcomes = state.runtime.worker.run_once(limit=limit)
    emit_json({
        "processed": len(outcomes),
        "results": [
            {
                "jobId":     o.job_id,
                "missionId": o.mission_id,
                "status":    o.status.value,
                "attempts":  o.attempts,
                "retryAt":   o.retry_at_ms,
                "error":     o.error,
            }
            for o in outcomes
        ],
    })


# ── dlq ───────────────────────────────────────────────────────

@click.group(name="dlq")
def dlq_group() -> None:
    """List, requeue and purge dead-lettered jobs."""


@dlq_group.command(name="list")
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@pass_state
def list_command(state: CliState, limit: int, offset: int) -> None:
    """Dead letters, most recent first."""
    entries = state.runtime.queue.list_dlq(limit, offset)
    emit_json([
        {"index": offset + i, **dead.to_dict()}
        for i, dead in enumerate(entries)
    ])


@dlq_group.command(name="requeue")
@click.argument("index", type=click.IntRange(min=0))
@pass_state
def requeue_command(state: CliState, index: int) -> None:
    """Move dead letter INDEX back to the ready queue with attempts reset."""
    if not state.runtime.queue.requeue_from_dlq(index):
        emit_error(f"No dead letter at index {index}, or its key is already pending")
        sys.exit(1)
    emit_json({"requeued": index})


@dlq_group.command(name="purge")
@click.option("--yes", is_flag=True, default=False, help="Confirm deletion.")
@pass_state
def purge_command(state: CliState, yes: bool) -> None:
    """Delete every dead letter."""
    if not yes:
        emit_error("Refusing to purge without --yes")
        sys.exit(2)
    emit_json({"purged": state.runtime.queue.purge_dlq()})
