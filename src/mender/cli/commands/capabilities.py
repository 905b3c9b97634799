"""mender capabilities -- list the actions offered to the oracle."""

from __future__ import annotations

from pathlib import Path

import click

from mender.cli.formatting import format_capabilities, format_error, get_console


@click.command()
@click.option("--format", "fmt", type=click.Choice(["table", "openai", "anthropic"]), default="table")
def capabilities(fmt: str) -> None:
    """Show the default capabilities and their parameters."""
    import json

    from mender.build import BuildRunner
    from mender.capabilities.defaults import default_registry

    console = get_console()
    try:
        registry = default_registry(Path.cwd(), BuildRunner("true"))
        if fmt == "table":
            format_capabilities(registry, console)
        else:
            click.echo(json.dumps(registry.as_tools(fmt), indent=2))
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None
