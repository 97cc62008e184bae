"""
Rebuilder CLI
==============

Click-based command-line interface for the managed image round-trip.

Usage::

    # Rebuild App.exe into App.rb.exe
    ilrebuild /path/to/App.exe

    # Only report runtime version and architecture
    ilrebuild /path/to/Lib.dll --check-only

    # Machine-readable output
    ilrebuild /path/to/Lib.dll --check-only --json

    # Explicit configuration file, verbose logging
    ilrebuild /path/to/App.exe --config tools.toml --verbose

Exit codes:
    0   success
    1   input file not found
    3   not a managed image (or the image could not be read)
    4   an external tool failed or could not be started
    5   the disassembler output could not be decoded
    130 interrupted

References:
    - Click documentation: https://click.palletsprojects.com/
"""

from __future__ import annotations

import json
import subprocess
import sys
from typing import Any

import click

from shared.config import RebuildConfig
from shared.console import RebuildConsole
from shared.logger import RebuildLogger

from rebuilder import __version__
from rebuilder.core.engine import RebuildEngine
from rebuilder.core.models import (
    EncodingNormalizationError,
    InputNotFoundError,
    NotManagedImageError,
)
from rebuilder.output.console import RebuildConsoleOutput


EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_NOT_MANAGED = 3
EXIT_TOOL_FAILED = 4
EXIT_BAD_ENCODING = 5
EXIT_INTERRUPTED = 130


def _finish(code: int, pause: bool) -> None:
    if pause:
        click.pause()
    sys.exit(code)


@click.command("ilrebuild")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="TOML configuration file with toolchain paths and options.",
)
@click.option(
    "--check-only",
    is_flag=True,
    default=False,
    help="Only locate the runtime header; do not rebuild.",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Print results as JSON to stdout.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.option(
    "--pause",
    is_flag=True,
    default=False,
    help="Wait for a key press before exiting.",
)
@click.version_option(__version__, prog_name="ilrebuild")
def rebuild_cli(
    path: str,
    config_path: str | None,
    check_only: bool,
    json_output: bool,
    verbose: bool,
    pause: bool,
) -> None:
    """Round-trip a managed PE image through ildasm / ilasm.

    PATH is the .exe or .dll to rebuild.  The rebuilt image is written
    next to it with ``.rb`` inserted before the extension.
    """
    console = RebuildConsole(quiet=json_output)
    config = RebuildConfig.load(config_path)
    settings = config.global_settings
    logger = RebuildLogger(
        "engine",
        log_level="DEBUG" if verbose else settings.log_level,
        log_file=settings.log_file,
        json_logs=settings.log_json,
    )
    engine = RebuildEngine(
        config=config,
        logger=logger,
        console=console,
        tool_stdout=sys.stderr if json_output else None,
    )
    output = RebuildConsoleOutput(console=console)
    report: dict[str, Any] = {}
    console.banner(__version__)

    try:
        header = engine.inspect(path)
        report["header"] = header.model_dump(mode="json")
        output.display_header(header)

        if not check_only:
            result = engine.rebuild(path, header)
            report["result"] = result.model_dump(mode="json")
            output.display_result(result)
    except InputNotFoundError as exc:
        console.error("File doesn't exist.")
        logger.debug("%s", exc)
        _finish(EXIT_NOT_FOUND, pause)
    except NotManagedImageError as exc:
        report["header"] = exc.header.model_dump(mode="json")
        if json_output:
            click.echo(json.dumps(report, indent=2))
        console.error(f"File isn't a valid .NET assembly. ({exc})")
        _finish(EXIT_NOT_MANAGED, pause)
    except EncodingNormalizationError as exc:
        console.error(f"Cannot re-encode {exc.path.name} from {exc.encoding}.")
        logger.error("%s", exc)
        _finish(EXIT_BAD_ENCODING, pause)
    except subprocess.CalledProcessError as exc:
        console.error(f"{exc.cmd[0]} exited with status {exc.returncode}.")
        logger.error("Command failed: %s", exc.cmd)
        _finish(EXIT_TOOL_FAILED, pause)
    except OSError as exc:
        console.error(f"Rebuild failed: {exc}")
        logger.error("%s", exc)
        _finish(EXIT_TOOL_FAILED, pause)
    except KeyboardInterrupt:
        console.warning("Interrupted by user.")
        sys.exit(EXIT_INTERRUPTED)

    if json_output:
        click.echo(json.dumps(report, indent=2))
    _finish(EXIT_OK, pause)


def main() -> None:
    """Entry point for the ``ilrebuild`` console script."""
    rebuild_cli()


if __name__ == "__main__":
    main()
