"""
Rebuilder Console Output
=========================

Rich terminal display for header locate results and completed rebuilds,
built on :class:`shared.console.RebuildConsole`.
"""

from __future__ import annotations

from shared.console import RebuildConsole

from rebuilder.core.models import HeaderInfo, ParseStatus, RebuildResult


_STATUS_STYLES: dict[ParseStatus, str] = {
    ParseStatus.OK: "bold green",
    ParseStatus.NOT_MANAGED: "bold yellow",
    ParseStatus.IO_ERROR: "bold red",
}


class RebuildConsoleOutput:
    """Renders rebuilder results to the terminal."""

    def __init__(self, console: RebuildConsole | None = None) -> None:
        self._con = console or RebuildConsole()

    def display_header(self, header: HeaderInfo) -> None:
        style = _STATUS_STYLES.get(header.status, "")
        rows = [
            ("Status", f"[{style}]{header.status.value}[/{style}]"),
            ("ClrVersion", header.runtime_version or "-"),
            ("Is64Bit", "-" if header.is_64bit is None else header.is_64bit),
            ("Architecture", header.architecture),
        ]
        if header.reason:
            rows.append(("Reason", header.reason))
        self._con.table("Image Header", ["Field", "Value"], rows, styles=["bold", ""])
        self._con.blank()

    def display_result(self, result: RebuildResult) -> None:
        plan = result.plan
        rows = [
            ("Working copy", plan.working_copy),
            ("Intermediate", plan.il_path),
            ("Resource", plan.resource_path if result.used_resource else "-"),
            ("Rebuilt", plan.rebuilt_path),
            ("Output", plan.output_path),
        ]
        self._con.table("Rebuild", ["Item", "Path"], rows, styles=["bold", ""])
        self._con.info(f"Duration: {result.duration_seconds:.2f}s")
        self._con.success("Finished.")
