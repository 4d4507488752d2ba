"""Output and logging utilities using Rich for console output.

Provides:
- Colored, formatted console output
- Verbosity level control
- Stage progress lines
- Structured summaries and tables
"""

from enum import IntEnum
from typing import Any, Optional, Sequence

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything, including remote commands


class Console:
    """Centralized console output with Rich integration.

    Features:
    - Color-coded log levels
    - Verbosity control
    - Tables and panels for run summaries
    - Progress spinners for long remote commands
    """

    def __init__(self) -> None:
        self._console = RichConsole(highlight=False)
        self._err_console = RichConsole(stderr=True, highlight=False)
        self.verbosity = Verbosity.NORMAL
        self.no_color = False

    def configure(
        self,
        verbosity: int = 1,
        no_color: bool = False,
    ) -> None:
        """Configure console output settings."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.no_color = no_color
        if no_color:
            self._console = RichConsole(highlight=False, no_color=True)
            self._err_console = RichConsole(stderr=True, highlight=False, no_color=True)

    # Basic output methods
    def info(self, message: str) -> None:
        """Print info message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][INFO][/green] {message}")

    def success(self, message: str) -> None:
        """Print success message (green)."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][OK][/green] {message}")

    def warn(self, message: str) -> None:
        """Print warning message (yellow) to stderr."""
        self._err_console.print(f"[yellow][WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        """Print error message (red) to stderr."""
        self._err_console.print(f"[red][ERROR][/red] {message}")

    def debug(self, message: str) -> None:
        """Print debug message (cyan) - only in debug mode."""
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(f"[cyan][DEBUG][/cyan] {message}")

    def verbose(self, message: str) -> None:
        """Print verbose message (dim) - only in verbose mode."""
        if self.verbosity >= Verbosity.VERBOSE:
            self._console.print(f"[dim]{message}[/dim]")

    def hint(self, message: str) -> None:
        """Print a helpful hint (cyan)."""
        self._err_console.print(f"[cyan]Hint:[/cyan] {message}")

    # Stage progress
    def stage_started(self, name: str, description: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[blue]->[/blue] [bold]{name}[/bold]: {escape(description)}")

    def stage_skipped(self, name: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[dim][SKIP] {name}: already satisfied[/dim]")

    def stage_done(self, name: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][OK][/green] {name}: done")

    def stage_failed(self, name: str, message: str, *, critical: bool) -> None:
        """Report a failed stage; non-critical failures are warnings."""
        if critical:
            self.error(f"{name}: {escape(message)}")
        else:
            self.warn(f"{name}: {escape(message)} (non-critical, continuing)")

    def report_error(
        self,
        message: str,
        details: Sequence[str] = (),
        hint: Optional[str] = None,
    ) -> None:
        """Print an error with its details and hint, all to stderr."""
        self.error(escape(message))
        for detail in details:
            self._err_console.print(f"  [dim]{escape(detail)}[/dim]")
        if hint:
            self.hint(escape(hint))

    # Structured output
    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw message or Rich renderable with formatting."""
        self._console.print(message, **kwargs)

    def rule(self, title: str = "") -> None:
        """Print a horizontal rule."""
        if self.verbosity >= Verbosity.NORMAL:
            self._console.rule(title)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        """Print a formatted table."""
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self._console.print(table)

    def yaml(self, yaml_text: str, title: str = "Configuration") -> None:
        """Print formatted YAML."""
        syntax = Syntax(yaml_text, "yaml", theme="monokai", line_numbers=False)
        self._console.print(Panel(syntax, title=title, border_style="cyan"))

    # Summary output
    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Print a summary panel with key-value pairs."""
        content_lines = []
        for key, value in items.items():
            if isinstance(value, bool):
                value_str = "[green]Yes[/green]" if value else "[red]No[/red]"
            else:
                value_str = str(value)
            content_lines.append(f"[bold]{key}:[/bold] {value_str}")

        content = "\n".join(content_lines)
        self._console.print(Panel(content, title=title, border_style="blue"))

    def operation_summary(
        self,
        operation: str,
        success: bool,
        details: dict[str, Any],
    ) -> None:
        """Print operation result summary."""
        status = "[green]SUCCESS[/green]" if success else "[red]FAILED[/red]"
        title = f"{operation} - {status}"
        border = "green" if success else "red"

        content_lines = []
        for key, value in details.items():
            content_lines.append(f"[bold]{key}:[/bold] {value}")

        content = "\n".join(content_lines)
        self._console.print(Panel(content, title=title, border_style=border))

    def status(self, message: str, spinner: str = "dots") -> Any:
        """Get a status context manager with spinner.

        Args:
            message: Status message to display
            spinner: Spinner animation name (default: dots)

        Returns:
            Rich Status context manager
        """
        return self._console.status(message, spinner=spinner)


# Global console instance
console = Console()
