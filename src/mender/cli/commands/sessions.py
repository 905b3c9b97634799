"""mender sessions -- list recorded sessions."""

from __future__ import annotations

import click

from mender.cli.formatting import format_sessions


@click.command()
@click.option("-n", "--limit", default=20, type=int, help="Maximum number of sessions to show.")
@click.pass_context
def sessions(ctx: click.Context, limit: int) -> None:
    """List sessions, most recent last."""
    from mender.cli import _history_session

    with _history_session(ctx) as (store, console):
        found = store.list_sessions()
        format_sessions(found[-limit:] if limit > 0 else found, console)
