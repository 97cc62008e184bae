"""
Rebuilder Console Interface
============================

Rich-powered console abstraction used for every user-facing line the
rebuilder prints: banner, step headers, status messages, tables, and
echoed external command lines.

Diagnostics go through :mod:`shared.logger`; this module is for the
report the user reads.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

import shlex
from typing import Any, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

_REBUILD_THEME = Theme(
    {
        "rebuild.banner": "bold bright_cyan",
        "rebuild.section": "bold bright_magenta",
        "rebuild.success": "bold green",
        "rebuild.warning": "bold yellow",
        "rebuild.error": "bold red",
        "rebuild.info": "bold bright_blue",
        "rebuild.dim": "dim white",
        "rebuild.command": "bright_white",
    }
)

_TAGLINE = "Managed image disassemble / reassemble round-trip"


class RebuildConsole:
    """Unified console interface for the rebuilder.

    Usage::

        con = RebuildConsole()
        con.banner("1.0.0")
        con.section("Disassembling")
        con.command(["ildasm", "app.exe", "--out", "app.il"])
        con.success("Finished.")
    """

    def __init__(self, *, quiet: bool = False, record: bool = False) -> None:
        """Initialise the console.

        Args:
            quiet:  Suppress all output (library / test mode).
            record: Enable Rich recording so output can be exported.
        """
        self._console = Console(
            theme=_REBUILD_THEME,
            quiet=quiet,
            record=record,
            highlight=False,
        )

    # ------------------------------------------------------------------ #
    #  Banner / headers
    # ------------------------------------------------------------------ #

    def banner(self, version: str) -> None:
        """Print the tool name, tagline and *version* in a panel."""
        subtitle = (
            f"[rebuild.dim]{_TAGLINE}[/rebuild.dim]\n"
            f"[rebuild.dim]Version: {version}[/rebuild.dim]"
        )
        self._console.print(
            Panel(
                Text.from_markup(f"[rebuild.banner]ilrebuild[/rebuild.banner]\n{subtitle}"),
                border_style="bright_cyan",
                expand=False,
            )
        )

    def section(self, title: str) -> None:
        """Print a section rule followed by a blank line."""
        self._console.rule(f"  {title}  ", style="rebuild.section", characters="─")
        self._console.print()

    # ------------------------------------------------------------------ #
    #  Message helpers
    # ------------------------------------------------------------------ #

    def success(self, message: str) -> None:
        self._console.print(f"[rebuild.success][✔][/rebuild.success] {escape(message)}")

    def warning(self, message: str) -> None:
        self._console.print(f"[rebuild.warning][⚠] WARNING:[/rebuild.warning] {escape(message)}")

    def error(self, message: str) -> None:
        self._console.print(f"[rebuild.error][✘] ERROR:[/rebuild.error] {escape(message)}")

    def info(self, message: str) -> None:
        self._console.print(f"[rebuild.info][ℹ][/rebuild.info] {escape(message)}")

    def command(self, argv: Sequence[str]) -> None:
        """Echo an external command line, quoted as a shell would need it."""
        self._console.print()
        self._console.print(Text(shlex.join(argv), style="rebuild.command"))
        self._console.print()

    # ------------------------------------------------------------------ #
    #  Table display
    # ------------------------------------------------------------------ #

    def table(
        self,
        title: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        *,
        styles: Sequence[str] | None = None,
    ) -> None:
        """Render a styled Rich table; each cell is stringified."""
        tbl = Table(
            title=title,
            border_style="bright_cyan",
            header_style="bold bright_magenta",
            padding=(0, 1),
        )
        for idx, col_name in enumerate(columns):
            style = styles[idx] if styles and idx < len(styles) else ""
            tbl.add_column(col_name, style=style)

        for row in rows:
            tbl.add_row(*(str(cell) for cell in row))

        self._console.print(tbl)

    # ------------------------------------------------------------------ #
    #  Utility
    # ------------------------------------------------------------------ #

    def blank(self, count: int = 1) -> None:
        for _ in range(count):
            self._console.print()

    def export_text(self) -> str:
        """Return recorded output as plain text (requires ``record=True``)."""
        return self._console.export_text()
