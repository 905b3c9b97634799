"""mender repair -- build a workspace and let the oracle fix it."""

from __future__ import annotations

from pathlib import Path

import click

from mender.cli.formatting import format_error, format_event, format_result, get_console


@click.command()
@click.argument("workspace", type=click.Path(file_okay=False, path_type=Path))
@click.option("--artifact", default=None, help="Main source file, relative to WORKSPACE.")
@click.option("--build-cmd", default=None, help="Build command, run in WORKSPACE.")
@click.option("--max-attempts", default=None, type=click.IntRange(min=1), help="Build/fix cycles.")
@click.option(
    "--max-tool-turns", default=None, type=click.IntRange(min=1), help="Oracle turns per fix."
)
@click.option("--model", default=None, help="Oracle model name.")
@click.option("--timeout", "build_timeout", default=None, type=float, help="Build timeout (s).")
@click.option("--describe", default=None, help="Generate the artifact from this description first.")
@click.option("--no-span-repair", is_flag=True, help="Only use the tool exchange.")
@click.pass_context
def repair(
    ctx: click.Context,
    workspace: Path,
    artifact: str | None,
    build_cmd: str | None,
    max_attempts: int | None,
    max_tool_turns: int | None,
    model: str | None,
    build_timeout: float | None,
    describe: str | None,
    no_span_repair: bool,
) -> None:
    """Repair the project in WORKSPACE until it builds."""
    from mender.cli import _open_history
    from mender.config import MenderConfig
    from mender.session import RepairSession, build_oracle

    console = get_console()
    try:
        config = MenderConfig.from_env(
            artifact_path=artifact,
            build_command=build_cmd,
            max_attempts=max_attempts,
            max_tool_turns=max_tool_turns,
            model=model,
            build_timeout=build_timeout,
            span_repair=False if no_span_repair else None,
            history_dir=ctx.obj.get("history_dir"),
            history_url=ctx.obj.get("history_url"),
        )
        if not config.build_command:
            raise click.UsageError("no build command: pass --build-cmd or set MENDER_BUILD_COMMAND")
        if describe is None and not (workspace / config.artifact_path).is_file():
            raise click.UsageError(
                f"{workspace / config.artifact_path} does not exist; pass --describe to generate it"
            )

        workspace.mkdir(parents=True, exist_ok=True)
        store = _open_history(ctx)
        try:
            session = RepairSession(
                build_oracle(config),
                workspace,
                config.artifact_path,
                history=store,
                config=config,
            )
            result = session.run(describe, on_event=lambda event: format_event(event, console))
        finally:
            store.close()
    except (SystemExit, click.UsageError):
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None

    format_result(result, console)
    if not result.succeeded:
        raise SystemExit(1)
