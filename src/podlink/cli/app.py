"""
Root Typer application for the podlink CLI.

Commands:
    run        Run a workload in a Pod with local stdio attached
    validate   Validate a session document
    manifest   Print the Pod manifest a session would submit
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from pathlib import Path

import typer
import yaml
from rich.markup import escape

from podlink.cli.utils import (
    console,
    copy_output,
    copy_stdin,
    err_console,
    parse_env,
    print_config_error,
    print_session_error,
)
from podlink.config import Config, load_config
from podlink.core.errors import ConfigValidationError, PodFailed, SessionCancelled, SessionError
from podlink.kube import SessionCoordinator, Workload, build_pod_manifest
from podlink.logging import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_ERROR = 1
EXIT_CANCELLED = 130

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_LOG_FORMATS = ("console", "json")

app = typer.Typer(
    name="podlink",
    help="podlink — run one workload as a Kubernetes Pod and attach to its stdio.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version / global options ─────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("podlink")
        except PackageNotFoundError:
            from podlink import __version__ as v
        typer.echo(f"podlink {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json"),
) -> None:
    """podlink CLI — launch, validate and inspect Pod sessions."""
    if log_level is not None and log_level.upper() not in _LOG_LEVELS:
        raise typer.BadParameter(f"expected one of {', '.join(_LOG_LEVELS)}", param_hint="--log-level")
    if log_format is not None and log_format.lower() not in _LOG_FORMATS:
        raise typer.BadParameter(f"expected one of {', '.join(_LOG_FORMATS)}", param_hint="--log-format")
    configure_logging(level=log_level, format=log_format, force=True)


# ── Helpers ──────────────────────────────────────────────────────────────


def _load(config_path: Path) -> Config:
    try:
        return load_config(config_path)
    except ConfigValidationError as exc:
        print_config_error(exc)
        raise typer.Exit(code=EXIT_ERROR) from exc


def _workload(image: str, args: list[str] | None, command: list[str] | None, env: list[str] | None, workdir: str | None) -> Workload:
    return Workload(
        image=image,
        command=command or None,
        args=args or None,
        env=parse_env(env),
        working_dir=workdir,
    )


def make_coordinator(config: Config) -> SessionCoordinator:
    """Build the coordinator for ``podlink run`` (replaced in tests)."""
    return SessionCoordinator(config)


async def _run_session(config: Config, workload: Workload, *, forward_stdin: bool) -> int:
    coordinator = make_coordinator(config)
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, coordinator.cancel)
        loop.add_signal_handler(signal.SIGTERM, coordinator.cancel)

    stdin_task: asyncio.Task | None = None
    try:
        channel = await coordinator.run(workload)
        if forward_stdin:
            stdin_task = asyncio.create_task(copy_stdin(typer.get_binary_stream("stdin"), channel))
        else:
            await channel.close_write()
        await asyncio.gather(
            copy_output(channel.read, typer.get_binary_stream("stdout")),
            copy_output(channel.read_stderr, typer.get_binary_stream("stderr")),
        )
        result = await coordinator.wait()
        logger.info("cli.run_finished", pod=result.pod, exit_code=result.exit_code)
        return 0
    except PodFailed as exc:
        print_session_error(exc)
        return exc.exit_code or EXIT_ERROR
    except SessionCancelled as exc:
        err_console.print(f"[yellow]Cancelled[/yellow]: {escape(exc.message)}")
        return EXIT_CANCELLED
    except SessionError as exc:
        print_session_error(exc)
        return EXIT_ERROR
    finally:
        if stdin_task is not None and not stdin_task.done():
            stdin_task.cancel()
            await asyncio.wait({stdin_task})
        await coordinator.close()
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("run")
def run_command(
    config_path: Path = typer.Argument(..., metavar="CONFIG", help="Session document (YAML or JSON)"),
    image: str = typer.Argument(..., help="Image of the plugin container"),
    args: list[str] | None = typer.Argument(None, help="Arguments for the workload"),
    command: list[str] | None = typer.Option(None, "--command", "-c", help="Entrypoint override (repeat per element)"),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="NAME=VALUE environment variable"),
    workdir: str | None = typer.Option(None, "--workdir", "-w", help="Working directory in the container"),
    stdin: bool = typer.Option(True, "--stdin/--no-stdin", help="Forward local stdin to the container"),
) -> None:
    """Run a workload in a Pod, attach local stdio, delete the Pod afterwards."""
    config = _load(config_path)
    workload = _workload(image, args, command, env, workdir)
    code = asyncio.run(_run_session(config, workload, forward_stdin=stdin))
    raise typer.Exit(code=code)


@app.command("validate")
def validate_command(
    config_path: Path = typer.Argument(..., metavar="CONFIG", help="Session document (YAML or JSON)"),
    as_json: bool = typer.Option(False, "--json", help="Print the normalized document as JSON"),
) -> None:
    """Validate a session document and print it normalized, secrets masked."""
    config = _load(config_path)
    data = config.redacted()
    if as_json:
        console.print_json(json.dumps(data))
        return

    from rich.table import Table

    connection = config.connection
    table = Table(title=str(config_path))
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Host", connection.host + connection.path)
    table.add_row("Auth", connection.auth_strategy)
    table.add_row("TLS", "insecure" if connection.insecure else ("custom CA" if connection.cacert else "system CA"))
    table.add_row("Throttle", f"{connection.qps:g} qps, burst {connection.burst}")
    table.add_row("Namespace", config.pod.metadata.namespace)
    table.add_row("Pod name", config.pod.metadata.name or f"{config.pod.metadata.generate_name or 'podlink-'}*")
    table.add_row("Plugin container", config.pod.spec.plugin_container.name)
    table.add_row("Init containers", str(len(config.pod.spec.init_containers)))
    table.add_row("Sidecars", str(len(config.pod.spec.containers)))
    table.add_row("Volumes", ", ".join(f"{v.name} ({v.source_type})" for v in config.pod.spec.volumes) or "-")
    table.add_row(
        "Timeouts",
        f"http {config.timeouts.http:g}s, startup {config.timeouts.startup:g}s, delete {config.timeouts.delete_grace:g}s",
    )
    console.print(table)
    console.print("[green]✓[/green] configuration is valid")


@app.command("manifest")
def manifest_command(
    config_path: Path = typer.Argument(..., metavar="CONFIG", help="Session document (YAML or JSON)"),
    image: str = typer.Argument(..., help="Image of the plugin container"),
    args: list[str] | None = typer.Argument(None, help="Arguments for the workload"),
    command: list[str] | None = typer.Option(None, "--command", "-c", help="Entrypoint override (repeat per element)"),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="NAME=VALUE environment variable"),
    workdir: str | None = typer.Option(None, "--workdir", "-w", help="Working directory in the container"),
    format: str = typer.Option("yaml", "--format", "-f", help="Output format: yaml, json"),
) -> None:
    """Print the Pod manifest a session would submit."""
    if format not in ("yaml", "json"):
        raise typer.BadParameter("expected yaml or json", param_hint="--format")
    config = _load(config_path)
    body = build_pod_manifest(config.pod, _workload(image, args, command, env, workdir))
    if format == "json":
        typer.echo(json.dumps(body, indent=2))
    else:
        typer.echo(yaml.safe_dump(body, sort_keys=False), nl=False)
