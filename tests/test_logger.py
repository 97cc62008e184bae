import json
import logging

from shared.console import RebuildConsole
from shared.logger import RebuildLogger


def test_reinstantiation_closes_previous_file_handler(tmp_path):
    RebuildLogger("reopen", console_output=False, log_file=tmp_path / "first.log")
    stdlib_logger = logging.getLogger("ilrebuild.reopen")
    first = stdlib_logger.handlers[0]

    RebuildLogger("reopen", console_output=False, log_file=tmp_path / "second.log")

    assert first.stream is None
    assert first not in stdlib_logger.handlers
    assert len(stdlib_logger.handlers) == 1


def test_json_log_file_carries_operation(tmp_path):
    log_file = tmp_path / "rebuild.log"
    log = RebuildLogger("jsonfile", console_output=False, log_file=log_file, json_logs=True)

    with log.operation("assemble"):
        log.error("Command failed: %s", "ilasm", argv=["ilasm"])
    logging.getLogger("ilrebuild.jsonfile").handlers[0].flush()

    entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert entry["level"] == "ERROR"
    assert entry["message"] == "Command failed: ilasm"
    assert entry["tool_name"] == "jsonfile"
    assert entry["operation"] == "assemble"
    assert entry["extra"] == {"argv": ["ilasm"]}


def test_banner_shows_version():
    console = RebuildConsole(record=True)
    console.banner("9.9.9")
    text = console.export_text()
    assert "ilrebuild" in text
    assert "Version: 9.9.9" in text
