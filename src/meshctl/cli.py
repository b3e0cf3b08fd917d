"""Typer-powered command line interface for ``meshctl``.

``meshctl setup`` is the main entry point: it updates the agent binary,
reconciles the systemd service and then follows the service journal. The
remaining commands inspect state without changing it.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import get_version
from .config import AppConfig, ConfigError, load_config
from .credentials import ConsolePrompter, PresetPrompter, Prompter
from .errors import SetupError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import InstallStatus, WorkflowResult
from .providers import SystemdError
from .workflow import SetupWorkflow

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to meshctl's YAML config file.",
)

EMAIL_OPTION = typer.Option(
    None,
    "--email",
    envvar="BLOCKMESH_EMAIL",
    help="Account email (skips the email prompts).",
)
PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    envvar="BLOCKMESH_PASSWORD",
    help="Account password (skips the password prompts).",
)
NO_FOLLOW_OPTION = typer.Option(
    False,
    "--no-follow",
    help="Exit after the service starts instead of following its logs.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Resolve versions and credentials without installing or touching the service.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Install, update and supervise the BlockMesh CLI agent.

        Run ``meshctl setup`` to fetch the latest release, configure the
        systemd service with your account credentials and follow its logs.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    workflow: SetupWorkflow


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        workflow=SetupWorkflow.from_config(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the meshctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log each step to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"meshctl {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _configure_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=ExitCode.FAILURE)
    raise typer.Exit(code=ExitCode.FAILURE)


def _setup_error(op: OperationScope, exc: SetupError) -> NoReturn:
    _command_error(
        op,
        f"{exc.stage} failed: {exc}",
        errors=[f"{exc.kind.value}: {exc}"],
    )


def _build_prompter(email: str | None, password: str | None) -> Prompter:
    prompter: Prompter = ConsolePrompter()
    if email is not None or password is not None:
        prompter = PresetPrompter(fallback=prompter, email=email, password=password)
    return prompter


def _render_result(result: WorkflowResult) -> None:
    install = result.install
    if install.status is InstallStatus.SKIPPED:
        console.print(f"You are already using the latest version: [bold]{result.version}[/bold].")
    elif result.dry_run:
        console.print(
            "[yellow]Dry run[/yellow]: "
            f"version '{result.version}' would be installed at {install.path}"
        )
    else:
        console.print(f"[green]Installed version '{result.version}' at {install.path}.[/green]")

    if result.dry_run:
        console.print(
            "[yellow]Dry run[/yellow]: service unit would be rewritten and restarted "
            f"(currently {result.previous_state.value})."
        )
    else:
        console.print("[green]Blockmesh service is now running.[/green]")


def _follow_logs(runtime: RuntimeContext) -> None:
    console.print("Service logs:")
    stream = runtime.workflow.follow()
    try:
        for line in stream:
            console.print(line, markup=False, highlight=False)
    except SystemdError as exc:
        err_console.print(f"[red]Failed to follow service logs: {exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    except KeyboardInterrupt:
        raise typer.Exit(code=ExitCode.OK) from None
    finally:
        # Stops journalctl when following is interrupted.
        close = getattr(stream, "close", None)
        if close is not None:
            close()


@app.command()
def setup(
    ctx: typer.Context,
    email: str | None = EMAIL_OPTION,
    password: str | None = PASSWORD_OPTION,
    no_follow: bool = NO_FOLLOW_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Install or update the agent, reconfigure its service and follow its logs."""
    runtime = _get_runtime(ctx)
    args = {
        "email": email,
        "password": password,
        "no_follow": no_follow,
        "dry_run": dry_run,
    }
    with runtime.logger.operation(
        "setup",
        args=args,
        target={"kind": "service", "name": runtime.config.service_name},
    ) as op:
        try:
            result = runtime.workflow.run(
                _build_prompter(email, password),
                dry_run=dry_run,
                op=op,
            )
        except SetupError as exc:
            _setup_error(op, exc)

        _render_result(result)
        op.success(
            "Dry run complete." if dry_run else "Service reconciled.",
            changed=0 if dry_run else (2 if result.install.changed else 1),
            context={
                "version": result.version,
                "install": result.install.status.value,
                "previous_state": result.previous_state.value,
            },
        )

    if dry_run or no_follow:
        return
    _follow_logs(runtime)


@app.command("check-updates")
def check_updates(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Compare the installed version with the latest release."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "check-updates",
        args={"json": json_output},
        target={"kind": "release"},
    ) as op:
        try:
            installed, latest = runtime.workflow.check_updates()
        except SetupError as exc:
            _setup_error(op, exc)

        up_to_date = installed is not None and installed == latest
        payload = {
            "installed": installed,
            "latest": latest,
            "up_to_date": up_to_date,
        }
        if json_output:
            console.print_json(data=payload)
        elif up_to_date:
            console.print(f"You are already using the latest version: {latest}.")
        else:
            console.print(
                f"Update available: {installed or 'not installed'} -> [bold]{latest}[/bold]"
            )
        op.success("Checked for updates.", changed=0, context=payload)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the installed version and the state of the service."""
    runtime = _get_runtime(ctx)
    workflow = runtime.workflow
    with runtime.logger.operation(
        "status",
        target={"kind": "service", "name": runtime.config.service_name},
    ) as op:
        try:
            snapshot = workflow.service.inspect()
        except SetupError as exc:
            _setup_error(op, exc)

        installed = workflow.installer.installed_version()
        table = Table(title="meshctl status")
        table.add_column("Field")
        table.add_column("Value")
        table.add_row("Installed version", installed or "not installed")
        table.add_row("Install root", str(runtime.config.install_root))
        table.add_row("Service", workflow.service.systemd.unit_name())
        table.add_row("Unit file", str(workflow.service.systemd.unit_path()))
        table.add_row("State", snapshot.state.value)
        table.add_row("Email", snapshot.environment.get("EMAIL", "-"))
        console.print(table)
        op.success(
            "Reported status.",
            changed=0,
            context={"installed": installed, "state": snapshot.state.value},
        )


@app.command()
def logs(ctx: typer.Context) -> None:
    """Follow the service journal until interrupted."""
    runtime = _get_runtime(ctx)
    _follow_logs(runtime)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the resolved configuration."""
    runtime = _get_runtime(ctx)
    payload = runtime.config.to_dict()
    if json_output:
        console.print_json(data=payload)
        return
    table = Table(title="meshctl configuration")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in _flatten(payload):
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


def _flatten(payload: dict[str, object], prefix: str = "") -> list[tuple[str, object]]:
    rows: list[tuple[str, object]] = []
    for key, value in payload.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(_flatten(value, prefix=f"{name}."))
        else:
            rows.append((name, value))
    return rows


def main() -> None:
    """Console script entry point."""
    app()
