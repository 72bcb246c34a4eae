"""Shared console and logging setup."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

console = Console()


def step(msg: str, out: Console | None = None) -> None:
    (out or console).print(f"[bold blue]▶[/bold blue] {escape(msg)}")


def success(msg: str, out: Console | None = None) -> None:
    (out or console).print(f"[bold green]✓[/bold green] {escape(msg)}")


def warning(msg: str, out: Console | None = None) -> None:
    (out or console).print(f"[bold yellow]![/bold yellow] [yellow]{escape(msg)}[/yellow]")


def error(msg: str, out: Console | None = None) -> None:
    (out or console).print(f"[bold red]✗[/bold red] [red]{escape(msg)}[/red]")


def section(title: str, out: Console | None = None) -> None:
    (out or console).rule(f"[bold]{escape(title)}[/bold]", align="left")


def configure_logging(verbose: bool = False) -> None:
    """Route xiops loggers through rich. DEBUG when verbose, WARNING otherwise."""
    logger = logging.getLogger("xiops")
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=console, show_path=False, markup=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
