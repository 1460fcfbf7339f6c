"""Clean console interface for voidlattice.

Usage:
    from voidlattice.console import console

    with console.spinner("Evolving lattice..."):
        sim.evolve_until(1.0, 0.01)

    console.success("Done", detail="200 steps")
    console.warn("Conservation drift", detail="rel=3.2e-07")
    console.error("Failed", detail=str(err))
    console.info("Device: cpu")
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Optional

from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


class Console:
    """Minimal logging interface with rich output."""

    __slots__ = ('_console', 'quiet')

    def __init__(self, *, quiet: bool = False) -> None:
        self._console = RichConsole()
        self.quiet = quiet

    @contextmanager
    def spinner(self, message: str):
        """Show a spinner while work is in progress."""
        if self.quiet:
            yield
            return
        with self._console.status(f"[bold cyan]{message}", spinner="dots"):
            yield

    def success(self, message: str, *, detail: Optional[str] = None, title: Optional[str] = None) -> None:
        """Green success message."""
        if self.quiet:
            return
        text = Text(message, style="bold green")
        if detail:
            text.append(f"\n{detail}", style="dim")
        if title:
            self._console.print(Panel(text, title=f"[cyan]{title}[/cyan]", border_style="green"))
        else:
            self._console.print(f"[bold green]✓[/bold green] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def warn(self, message: str, *, detail: Optional[str] = None) -> None:
        """Yellow warning message."""
        if self.quiet:
            return
        self._console.print(f"[yellow]⚠[/yellow] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def error(self, message: str, *, detail: Optional[str] = None) -> None:
        """Red error message. Errors are printed even in quiet mode."""
        self._console.print(f"[bold red]✗[/bold red] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def info(self, message: str, *, detail: Optional[str] = None) -> None:
        """Blue info message."""
        if self.quiet:
            return
        self._console.print(f"[blue]•[/blue] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def header(self, title: str, **fields: object) -> None:
        """Show a two-column table of fields under `title`; floats print with 6 significant digits."""
        if self.quiet:
            return
        table = Table(show_header=False, box=None, pad_edge=False)
        table.add_column(style="bold")
        table.add_column(justify="right")
        for k, v in fields.items():
            table.add_row(k.replace("_", " "), _fmt(v))
        self._console.print(Panel(table, title=f"[cyan]{title}[/cyan]", border_style="blue", expand=False))


def _fmt(v: object) -> str:
    return f"{v:.6g}" if isinstance(v, float) else str(v)


console = Console()
