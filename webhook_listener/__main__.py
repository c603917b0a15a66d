"""Entry point: python -m webhook_listener."""

from __future__ import annotations

import asyncio
import logging
import signal
import socket
import sys
from pathlib import Path
from typing import NoReturn

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from webhook_listener.config import ListenerConfig, load_config
from webhook_listener.errors import ConfigError
from webhook_listener.infra.activation import claim_listener
from webhook_listener.infra.units import (
    DEFAULT_SOCKET_PATH,
    SERVICE_NAME,
    find_binary,
    generate_service_unit,
    generate_socket_unit,
)
from webhook_listener.logging_config import resolve_level, setup_logging
from webhook_listener.webhook.dispatcher import CommandDispatcher
from webhook_listener.webhook.loop import ConnectionLoop
from webhook_listener.webhook.server import WebhookServer

logger = logging.getLogger(__name__)

_console = Console()
_err_console = Console(stderr=True)

_VALUE_OPTIONS = frozenset({"--log-dir", "--socket-path", "--user", "--group"})
_FLAG_OPTIONS = frozenset({"-v", "--verbose", "-h", "--help"})


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _split_args(args: list[str]) -> tuple[list[str], dict[str, str], set[str]]:
    """Split argv into positionals, ``--option value`` pairs and flags."""
    positionals: list[str] = []
    options: dict[str, str] = {}
    flags: set[str] = set()
    it = iter(args)
    for arg in it:
        if arg in _VALUE_OPTIONS:
            value = next(it, None)
            if value is None:
                _usage_error(f"Option {arg} requires a value")
            options[arg] = value
        elif arg in _FLAG_OPTIONS:
            flags.add(arg)
        elif arg.startswith("-"):
            _usage_error(f"Unknown option: {arg}")
        else:
            positionals.append(arg)
    return positionals, options, flags


def _usage_error(message: str) -> NoReturn:
    _err_console.print(f"[bold red]{escape(message)}[/bold red]")
    _err_console.print(
        f"Usage: {SERVICE_NAME} [check|units] <path/to/config.json> [-v]", markup=False
    )
    sys.exit(1)


def _load_or_exit(config_path: Path) -> ListenerConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        _err_console.print(f"[bold red]Error reading configuration:[/bold red] {escape(str(exc))}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Daemon lifecycle
# ---------------------------------------------------------------------------


async def run_listener(config: ListenerConfig, listener: socket.socket) -> None:
    """Serve webhooks on *listener* until idle timeout, then wait for running commands.

    The idle timeout does not end serving while dispatched commands are still
    running, so requests queued behind a slow command are still answered.
    """
    dispatcher = CommandDispatcher(output=config.command_output)
    app = WebhookServer(config, dispatcher).build_app()
    loop = ConnectionLoop(
        listener,
        app,
        max_idle_time=config.max_idle_time,
        busy=lambda: dispatcher.pending > 0,
    )
    try:
        await loop.serve()
    finally:
        await dispatcher.drain()
        listener.close()
        logger.info("Listener stopped after %d connection(s)", loop.accepted)


def _serve(config_path: Path, *, verbose: bool, log_dir: Path | None) -> None:
    """Load config, take the activation socket and run the event loop."""
    setup_logging(verbose=verbose, log_dir=log_dir)
    config = _load_or_exit(config_path)
    if not verbose:
        config_level = resolve_level(config.log_level)
        if config_level != logging.INFO:
            setup_logging(level=config_level, log_dir=log_dir)

    listener = claim_listener()

    loop = asyncio.new_event_loop()
    task = loop.create_task(run_listener(config, listener))
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)

    try:
        loop.run_until_complete(task)
    except asyncio.CancelledError:
        logger.info("Shutting down on signal")
    finally:
        loop.close()


# ---------------------------------------------------------------------------
# Helper commands
# ---------------------------------------------------------------------------


def _cmd_check(config_path: Path) -> None:
    """Validate the configuration and print the command table."""
    config = _load_or_exit(config_path)

    table = Table(title="Command rules", show_lines=False)
    table.add_column("Event", style="bold green")
    table.add_column("Command", style="cyan")
    table.add_column("Arguments")
    for rule in config.commands:
        table.add_row(escape(rule.event), escape(rule.command), escape(" ".join(rule.args)))
    _console.print(table)

    idle = f"{config.max_idle_time:g}s" if config.max_idle_time is not None else "never"
    lines = [
        f"Secret:         {len(config.secret_bytes)} bytes",
        f"Idle shutdown:  {idle}",
        f"Max body:       {config.max_body_bytes} bytes",
        f"Command output: {config.command_output}",
    ]
    _console.print(Panel("\n".join(lines), title="[bold]Configuration OK[/bold]", border_style="green"))


def _cmd_units(config_path: Path, options: dict[str, str]) -> None:
    """Print a systemd socket/service unit pair for *config_path*."""
    _load_or_exit(config_path)
    socket_unit = generate_socket_unit(options.get("--socket-path", DEFAULT_SOCKET_PATH))
    service_unit = generate_service_unit(
        find_binary(),
        config_path.resolve(),
        user=options.get("--user"),
        group=options.get("--group"),
    )
    for suffix, unit in (("socket", socket_unit), ("service", service_unit)):
        _console.print(
            f"# {SERVICE_NAME}.{suffix}\n{unit}", markup=False, highlight=False, soft_wrap=True
        )


def _print_usage() -> None:
    """Print commands and options."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold green", min_width=34)
    table.add_column()
    table.add_row(f"{SERVICE_NAME} <config.json>", "Serve webhooks on the socket passed by systemd")
    table.add_row(f"{SERVICE_NAME} check <config.json>", "Validate the configuration")
    table.add_row(f"{SERVICE_NAME} units <config.json>", "Print systemd socket and service units")
    table.add_row("-v, --verbose", "Verbose logging output")
    table.add_row("--log-dir DIR", "Also write a rotating log file to DIR")
    table.add_row("--socket-path PATH", f"Socket path for 'units' (default {DEFAULT_SOCKET_PATH})")
    table.add_row("--user USER, --group GROUP", "Service identity for 'units'")
    _console.print(Panel(table, title="[bold]Commands[/bold]", border_style="blue", padding=(1, 0)))


_SUBCOMMANDS = frozenset({"check", "units"})


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = sys.argv[1:] if argv is None else argv
    positionals, options, flags = _split_args(args)

    if flags & {"-h", "--help"} or positionals[:1] == ["help"]:
        _print_usage()
        return

    command = positionals[0] if positionals and positionals[0] in _SUBCOMMANDS else None
    paths = positionals[1:] if command else positionals
    if len(paths) != 1:
        _usage_error(f"Too {'few' if len(paths) < 1 else 'many'} command line arguments")
    config_path = Path(paths[0])

    if command == "check":
        _cmd_check(config_path)
    elif command == "units":
        _cmd_units(config_path, options)
    else:
        log_dir = options.get("--log-dir")
        _serve(
            config_path,
            verbose=bool(flags & {"-v", "--verbose"}),
            log_dir=Path(log_dir) if log_dir else None,
        )


if __name__ == "__main__":
    main()
