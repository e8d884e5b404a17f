"""Human-readable progress output for deployments."""
from typing import Iterable, Mapping, Optional, Sequence

import click

BANNER_WIDTH = 40


class Console:
    """Writes phase headers, step markers and tables to stdout.

    Logging goes to stderr through the logging module; this class is the
    operator-facing channel only.
    """

    def __init__(self, color: Optional[bool] = None):
        self.color = color

    def _echo(self, message: str = "", **style) -> None:
        click.secho(message, color=self.color, **style)

    def blank(self) -> None:
        self._echo()

    def line(self, message: str) -> None:
        self._echo(message)

    def banner(self, title: str, fg: str = "blue") -> None:
        inner = BANNER_WIDTH - 2
        self._echo()
        self._echo("╔" + "═" * inner + "╗", fg=fg)
        self._echo("║" + title.center(inner) + "║", fg=fg)
        self._echo("╚" + "═" * inner + "╝", fg=fg)
        self._echo()

    def header(self, title: str) -> None:
        self._echo()
        self._echo("=" * 44, fg="blue")
        self._echo(title, fg="blue")
        self._echo("=" * 44, fg="blue")

    def success(self, message: str) -> None:
        self._echo(f"✓ {message}", fg="green")

    def error(self, message: str) -> None:
        self._echo(f"✗ {message}", fg="red", err=True)

    def warning(self, message: str) -> None:
        self._echo(f"⚠ {message}", fg="yellow")

    def key_values(self, rows: Mapping[str, str], title: Optional[str] = None) -> None:
        """Print a two-column table of keys and values."""
        self.table(["Key", "Value"], [(k, v) for k, v in rows.items()], title=title)

    def table(self, columns: Sequence[str], rows: Iterable[Sequence[str]],
              title: Optional[str] = None) -> None:
        rows = [[str(cell) for cell in row] for row in rows]
        widths = [len(col) for col in columns]
        if not rows:
            widths[0] = max(widths[0], len("(none)"))
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(cell))

        border = "+" + "+".join("-" * (w + 2) for w in widths) + "+"

        def fmt(cells):
            return "|" + "|".join(f" {c.ljust(widths[i])} " for i, c in enumerate(cells)) + "|"

        if title:
            self._echo(title)
        self._echo(border)
        self._echo(fmt(columns), bold=True)
        self._echo(border)
        if not rows:
            self._echo(fmt(["(none)"] + [""] * (len(columns) - 1)))
        for row in rows:
            self._echo(fmt(row))
        self._echo(border)

    def failure(self, message: str, hints: Sequence[str] = ()) -> None:
        """Failure banner followed by remediation commands."""
        self.error("Deployment failed!")
        self.error(message)
        for hint in hints:
            self._echo("", err=True)
            self._echo(hint, err=True)


class NullConsole(Console):
    """Console that discards everything; used by library callers and tests."""

    def _echo(self, message: str = "", **style) -> None:
        pass
