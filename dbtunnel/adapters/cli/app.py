"""
Main CLI application
"""
import signal
import threading
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer
from rich.markup import escape
from rich.table import Table

from ...core.exceptions import TunnelError, TunnelSetupError, TeardownError
from ...core.logging import setup_logging, get_logger, get_stdout_console, get_stderr_console
from ...core.utils import resolve_socks_proxy
from ...domain.tunnel import ConfigResolver, ForwardingPlan, KnownHostsStore, TunnelOrchestrator
from ..config.loader import ConfigLoader

logger = get_logger(__name__)
stdout_console = get_stdout_console()
stderr_console = get_stderr_console()

app = typer.Typer(
    name="dbtunnel",
    add_completion=False,
    help="Forward a local port to a private database over SSH or Session Manager",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def main(
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Log file path",
    ),
):
    """
    dbtunnel - private database port forwarding

    Use subcommands to perform different operations:
    - plan: Show how the configuration resolves
    - up: Open the tunnel and keep it running until interrupted
    """
    try:
        setup_logging(level=log_level, log_file=log_file)
    except ValueError as e:
        _fail("Configuration Error", e)


def _load_config(config_file: Optional[Path], endpoint: Optional[str]) -> Dict[str, Any]:
    loader = ConfigLoader()
    return loader.load(toml_path=config_file, cli_overrides={"endpoint": endpoint})


def _plan_table(plan: ForwardingPlan) -> Table:
    table = Table(title="Forwarding Plan", show_header=True, header_style="bold cyan")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    for key, value in plan.to_dict().items():
        if value is not None and value != "":
            table.add_row(key, str(value))
    return table


def _fail(prefix: str, error: Exception) -> NoReturn:
    stderr_console.print(f"[red]{prefix}:[/red] {escape(str(error))}", highlight=False)
    raise typer.Exit(1)


@app.command("plan")
def plan_command(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file path (TOML)"
    ),
    endpoint: Optional[str] = typer.Option(
        None, "--endpoint", "-e", help="Local endpoint host:port (overrides config)"
    ),
):
    """
    Resolve the configuration and print the forwarding plan

    Examples:
        dbtunnel plan -c tunnel.toml
    """
    try:
        cfg = _load_config(config_file, endpoint)
        plan = ConfigResolver().resolve(cfg)
        proxy = resolve_socks_proxy(cfg.get("proxy"))
    except TunnelError as e:
        _fail("Configuration Error", e)

    if plan is None:
        stdout_console.print("[yellow]No tunnel configured; connect to the endpoint directly[/yellow]")
    else:
        stdout_console.print(_plan_table(plan))
    if proxy:
        stdout_console.print(f"  Database connections use SOCKS proxy [cyan]{proxy}[/cyan]")


@app.command("up")
def up_command(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file path (TOML)"
    ),
    endpoint: Optional[str] = typer.Option(
        None, "--endpoint", "-e", help="Local endpoint host:port (overrides config)"
    ),
    known_hosts: Optional[Path] = typer.Option(
        None, "--known-hosts", help="Trust file (default: ~/.ssh/known_hosts)"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Seconds allowed for dialing and SSH negotiation"
    ),
):
    """
    Open the tunnel and keep it up until Ctrl-C

    Examples:
        dbtunnel up -c tunnel.toml
        dbtunnel up -c tunnel.toml -e 127.0.0.1:13306
    """
    try:
        cfg = _load_config(config_file, endpoint)
        plan = ConfigResolver().resolve(cfg)
    except TunnelError as e:
        _fail("Configuration Error", e)

    if plan is None:
        stderr_console.print("[yellow]No tunnel configured; nothing to do[/yellow]")
        raise typer.Exit(1)

    orchestrator = TunnelOrchestrator(host_keys=KnownHostsStore(known_hosts), timeout=timeout)
    try:
        handle = orchestrator.establish(plan)
    except TunnelSetupError as e:
        logger.debug("Tunnel setup failed", exc_info=True)
        _fail("Tunnel Error", e)

    host, port = handle.local_address
    stdout_console.print(f"[green]✓[/green] Tunnel up ({plan.strategy.value})")
    stdout_console.print(f"  Local: [cyan]{host}:{port}[/cyan] -> [cyan]{plan.db_endpoint}[/cyan]")
    if handle.session_id:
        stdout_console.print(f"  Session: [yellow]{handle.session_id}[/yellow]")
    stdout_console.print("  Press [bold]Ctrl-C[/bold] to close")

    stopped = threading.Event()

    def signal_handler(sig, frame):
        stopped.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    while not stopped.wait(1.0):
        if not handle.is_alive():
            stderr_console.print("[yellow]Tunnel lost[/yellow]")
            break

    stdout_console.print("\n[yellow]Closing tunnel...[/yellow]")
    try:
        handle.teardown()
    except TeardownError as e:
        _fail("Teardown Error", e)
    stdout_console.print("[green]✓[/green] Tunnel closed")


def run():
    """CLI entry point"""
    app()


if __name__ == "__main__":
    run()
