"""
visitproof token — issue and check proof tokens.

Usage:
    visitproof token issue <place_id> <mission_id>
    visitproof token verify <token>                 exit 0 valid, 1 invalid
    visitproof token verify <token> --format json
"""

import sys

import click

from visitproof.cli.common import CliState, emit_error, emit_json, pass_state
from visitproof.core.clock import iso_timestamp


_FORMAT_OPTION = click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
)


@click.group(name="token")
def token_group() -> None:
    """Issue and check proof tokens."""


@token_group.command(name="issue")
@click.argument("place_id")
@click.argument("mission_id")
@_FORMAT_OPTION
@pass_state
def issue_command(state: CliState, place_id: str, mission_id: str, fmt: str) -> None:
    """Issue a signed token for PLACE_ID and MISSION_ID."""
    signer = state.runtime.signer
    try:
        token = signer.issue(place_id, mission_id)
    except ValueError as e:
        emit_error(str(e), fmt)
        sys.exit(2)

    if fmt == "json":
        emit_json({
            "token":     token.serialize(),
            "placeId":   token.place_id,
            "missionId": token.mission_id,
            "issuedAt":  iso_timestamp(token.issued_at_ms),
            "expiresAt": iso_timestamp(token.issued_at_ms + signer.validity_ms),
        })
    else:
        click.echo(token.serialize())


@token_group.command(name="verify")
@click.argument("raw")
@_FORMAT_OPTION
@pass_state
def verify_command(state: CliState, raw: str, fmt: str) -> None:
    """Check format, expiry and signature of RAW."""
    runtime = state.runtime
    check = runtime.signer.check(
        raw, require_signature=runtime.config.qr.require_signature
    )

    if fmt == "json":
        data = {"valid": check.valid}
        if check.reason is not None:
            data["reason"] = check.reason.value
        if check.token is not None:
            data["placeId"]   = check.token.place_id
            data["missionId"] = check.token.mission_id
        emit_json(data)
    elif check.valid:
        click.echo(f"valid  place={check.token.place_id}  mission={check.token.mission_id}")
    else:
        click.echo(f"invalid  reason={check.reason.value}")

    sys.exit(0 if check.valid else 1)
