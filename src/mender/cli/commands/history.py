"""mender history -- show one recorded session."""

from __future__ import annotations

import click

from mender.cli.formatting import format_error, format_session_detail


@click.command()
@click.argument("session_id")
@click.pass_context
def history(ctx: click.Context, session_id: str) -> None:
    """Show a session's status history, attempts and outcome."""
    from mender.cli import _history_session

    with _history_session(ctx) as (store, console):
        info = store.get_session(session_id)
        if info is None:
            format_error(f"Session not found: {session_id}", console)
            raise SystemExit(1)
        format_session_detail(
            info,
            store.get_attempts(session_id),
            store.get_summary(session_id),
            console,
        )
