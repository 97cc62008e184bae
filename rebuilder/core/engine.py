"""
Rebuild Engine
===============

Drives the disassemble / reassemble round-trip of a managed image:

    1. Copy the image into ``<dir>/<name>_il/<name>`` and drop any
       ``.il`` / ``.res`` left there by an earlier run.
    2. Disassemble the copy into ``<name>.il``.
    3. Re-encode the intermediate text as UTF-8 with signature.
    4. Reassemble with the 4.x or legacy assembler, passing the
       architecture options and the ``.res`` side-car when present.
    5. Copy ``<stem>.rb<ext>`` back beside the original image.

Every external tool call blocks until the process exits.  A non-zero
exit status raises :class:`subprocess.CalledProcessError` and a tool
that cannot be started raises :class:`OSError`; the engine does not
catch either, so the pipeline stops at the failing step.
"""

from __future__ import annotations

import codecs
import functools
import locale
import shutil
import subprocess
import time
from pathlib import Path
from typing import IO, Callable, Sequence

from shared.config import RebuildConfig
from shared.console import RebuildConsole
from shared.logger import RebuildLogger

from rebuilder.core.models import (
    EncodingNormalizationError,
    HeaderInfo,
    ImageKind,
    InputNotFoundError,
    NotManagedImageError,
    RebuildPlan,
    RebuildResult,
)
from rebuilder.parsers.clr_header import ClrHeaderLocator


ToolRunner = Callable[[Sequence[str]], None]

# Longest first so UTF-32 LE is not mistaken for UTF-16 LE
_BOMS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def run_tool(argv: Sequence[str], *, stdout: IO[str] | None = None) -> None:
    """Run *argv* and wait for it to exit.

    stdio is inherited unless *stdout* names another stream.
    """
    subprocess.run(list(argv), check=True, stdout=stdout)


def insert_marker(path: Path, marker: str) -> Path:
    """Return *path* with *marker* inserted before its extension."""
    return path.with_name(f"{path.stem}{marker}{path.suffix}")


def detect_encoding(raw: bytes, fallback: str | None = None) -> str:
    """Pick the codec for *raw*: a byte-order mark wins over *fallback*.

    Without a BOM and without *fallback* the locale's preferred encoding
    is used.
    """
    for bom, name in _BOMS:
        if raw.startswith(bom):
            return name
    return fallback or locale.getpreferredencoding(False)


def normalize_encoding(path: Path, source_encoding: str | None = None) -> str:
    """Rewrite the text file at *path* as UTF-8 with signature.

    Returns:
        The name of the codec the file was decoded with.

    Raises:
        EncodingNormalizationError: If the bytes are not valid in the
            chosen codec, or the codec name is unknown.
    """
    raw = path.read_bytes()
    encoding = detect_encoding(raw, source_encoding)
    try:
        text = raw.decode(encoding)
    except (UnicodeDecodeError, LookupError) as exc:
        raise EncodingNormalizationError(path, encoding, str(exc)) from exc
    # utf-8-sig strips a BOM on decode; utf-16/32 consume theirs too
    path.write_bytes(text.encode("utf-8-sig"))
    return encoding


class RebuildEngine:
    """Runs the rebuild pipeline for one managed image at a time.

    Usage::

        engine = RebuildEngine(config=RebuildConfig.load())
        result = engine.run("/path/to/App.exe")
        print(result.output_path)

    Tests pass a fake *runner* to observe the argv lists instead of
    launching real tools.  *tool_stdout* redirects the stdout of the
    default runner, e.g. to keep a JSON report on stdout clean.
    """

    def __init__(
        self,
        config: RebuildConfig | None = None,
        logger: RebuildLogger | None = None,
        console: RebuildConsole | None = None,
        runner: ToolRunner | None = None,
        tool_stdout: IO[str] | None = None,
    ) -> None:
        self._config: RebuildConfig = config or RebuildConfig()
        self._logger: RebuildLogger = logger or RebuildLogger("engine", console_output=False)
        self._console: RebuildConsole = console or RebuildConsole(quiet=True)
        if runner is None:
            runner = run_tool if tool_stdout is None else functools.partial(run_tool, stdout=tool_stdout)
        self._runner: ToolRunner = runner
        self._locator = ClrHeaderLocator(logger=self._logger)

    # ------------------------------------------------------------------ #
    #  Entry points
    # ------------------------------------------------------------------ #

    def inspect(self, image_path: str | Path) -> HeaderInfo:
        """Locate the managed-runtime header of *image_path*.

        Raises:
            InputNotFoundError: If *image_path* is not an existing file.
            NotManagedImageError: If the header cannot be located.
        """
        path = Path(image_path).resolve()
        if not path.is_file():
            raise InputNotFoundError(path)

        with self._logger.operation("locate"):
            header = self._locator.locate_file(path)
        if not header.is_managed_image:
            raise NotManagedImageError(header)
        return header

    def run(self, image_path: str | Path) -> RebuildResult:
        """Inspect *image_path* and rebuild it."""
        header = self.inspect(image_path)
        return self.rebuild(image_path, header)

    def rebuild(self, image_path: str | Path, header: HeaderInfo) -> RebuildResult:
        """Round-trip a validated image through the external toolchain."""
        if not header.is_managed_image or header.runtime_version is None:
            raise NotManagedImageError(header)

        started = time.perf_counter()
        plan = self.plan(image_path)
        self._logger.info("Rebuilding %s", plan.original_path)

        with self._logger.operation("copy"):
            plan.work_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(plan.original_path, plan.working_copy)
            self._logger.debug("Copied image to %s", plan.working_copy)
            for stale in (plan.il_path, plan.resource_path):
                stale.unlink(missing_ok=True)

        self._console.section("Disassembling")
        disassemble = self.disassemble_command(plan)
        with self._logger.operation("disassemble"), self._logger.timed("disassemble"):
            self._invoke(disassemble)

        with self._logger.operation("normalize"):
            encoding = normalize_encoding(
                plan.il_path, self._config.toolchain.source_encoding or None
            )
            self._logger.debug("Re-encoded %s from %s to UTF-8", plan.il_path, encoding)

        self._console.section("Reassembling")
        self._console.info(f"Saving: {plan.rebuilt_path}")
        used_resource = plan.resource_path.is_file()
        assemble = self.assemble_command(plan, header)
        with self._logger.operation("assemble"), self._logger.timed("assemble"):
            self._invoke(assemble)

        with self._logger.operation("publish"):
            shutil.copyfile(plan.rebuilt_path, plan.output_path)
            self._logger.info("Rebuilt image written to %s", plan.output_path)

        return RebuildResult(
            header=header,
            plan=plan,
            disassemble_command=disassemble,
            assemble_command=assemble,
            used_resource=used_resource,
            duration_seconds=time.perf_counter() - started,
        )

    # ------------------------------------------------------------------ #
    #  Planning
    # ------------------------------------------------------------------ #

    def plan(self, image_path: str | Path) -> RebuildPlan:
        """Compute every path the pipeline uses; nothing is touched on disk."""
        toolchain = self._config.toolchain
        original = Path(image_path).resolve()
        work_dir = original.parent / f"{original.name}{toolchain.workdir_suffix}"
        working_copy = work_dir / original.name
        rebuilt = insert_marker(working_copy, toolchain.rebuilt_marker)

        return RebuildPlan(
            original_path=original,
            work_dir=work_dir,
            working_copy=working_copy,
            il_path=working_copy.with_suffix(".il"),
            resource_path=working_copy.with_suffix(".res"),
            rebuilt_path=rebuilt,
            output_path=original.parent / rebuilt.name,
            kind=ImageKind.EXE if original.suffix.lower() == ".exe" else ImageKind.DLL,
        )

    def disassemble_command(self, plan: RebuildPlan) -> list[str]:
        toolchain = self._config.toolchain
        return [
            toolchain.ildasm_path,
            str(plan.working_copy),
            "--out",
            str(plan.il_path),
            *toolchain.ildasm_options,
        ]

    def assemble_command(self, plan: RebuildPlan, header: HeaderInfo) -> list[str]:
        """Build the reassembler argv for *plan*.

        The resource option is only added when the side-car exists at the
        time of the call, since the disassembler is what produces it.
        """
        toolchain = self._config.toolchain
        argv = [
            toolchain.assembler_for(header.runtime_version or ""),
            str(plan.il_path),
            f"--{plan.kind.value}",
            "--output",
            str(plan.rebuilt_path),
        ]
        if plan.resource_path.is_file():
            argv += ["--resource", str(plan.resource_path)]
        argv += toolchain.assembler_options(bool(header.is_64bit))
        return argv

    # ------------------------------------------------------------------ #
    #  Internal
    # ------------------------------------------------------------------ #

    def _invoke(self, argv: list[str]) -> None:
        self._console.command(argv)
        self._logger.debug("Running %s", argv[0], argv=argv)
        self._runner(argv)
