import json
import subprocess

import pytest
from click.testing import CliRunner

import rebuilder.core.engine as engine_module
from rebuilder.cli import (
    EXIT_BAD_ENCODING,
    EXIT_NOT_FOUND,
    EXIT_NOT_MANAGED,
    EXIT_OK,
    EXIT_TOOL_FAILED,
    rebuild_cli,
)


@pytest.fixture
def quiet_config(tmp_path):
    path = tmp_path / "quiet.toml"
    path.write_text(
        '[global]\nlog_level = "ERROR"\n\n'
        '[toolchain]\nildasm_path = "ildasm"\nilasm4x_path = "ilasm4"\nilasm2x_path = "ilasm2"\n',
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def cli():
    return CliRunner()


def test_missing_file(cli, tmp_path, quiet_config):
    result = cli.invoke(rebuild_cli, [str(tmp_path / "missing.exe"), "-c", quiet_config])
    assert result.exit_code == EXIT_NOT_FOUND
    assert "File doesn't exist." in result.output


def test_native_image(cli, write_image, quiet_config):
    image = write_image("Native.exe", clr_rva=0)
    result = cli.invoke(rebuild_cli, [str(image), "-c", quiet_config])
    assert result.exit_code == EXIT_NOT_MANAGED
    assert "isn't a valid .NET assembly" in result.output


def test_check_only_json(cli, write_image, quiet_config, monkeypatch, fake_runner):
    monkeypatch.setattr(engine_module, "run_tool", fake_runner)
    image = write_image("Lib.dll")

    result = cli.invoke(rebuild_cli, [str(image), "-c", quiet_config, "--check-only", "--json"])

    assert result.exit_code == EXIT_OK
    report = json.loads(result.output)
    assert report["header"]["runtime_version"] == "v4.0.30319"
    assert report["header"]["is_64bit"] is True
    assert report["header"]["status"] == "ok"
    assert report["header"]["is_managed_image"] is True
    assert "result" not in report
    assert fake_runner.calls == []


def test_not_managed_json(cli, write_image, quiet_config):
    image = write_image("Native.dll", machine=0x1C0)
    result = cli.invoke(rebuild_cli, [str(image), "-c", quiet_config, "--json"])

    assert result.exit_code == EXIT_NOT_MANAGED
    report = json.loads(result.output)
    assert report["header"]["status"] == "not_managed"


def test_full_rebuild(cli, write_image, quiet_config, monkeypatch, fake_runner):
    monkeypatch.setattr(engine_module, "run_tool", fake_runner)
    image = write_image("App.exe")

    result = cli.invoke(rebuild_cli, [str(image), "-c", quiet_config])

    assert result.exit_code == EXIT_OK, result.output
    assert "ClrVersion" in result.output
    assert "ilrebuild" in result.output
    assert "Finished." in result.output
    assert (image.parent / "App.rb.exe").read_bytes() == b"MZrebuilt"
    assert [call[0] for call in fake_runner.calls] == ["ildasm", "ilasm4"]


def test_full_rebuild_json(cli, write_image, quiet_config, monkeypatch, fake_runner):
    monkeypatch.setattr(engine_module, "run_tool", fake_runner)
    image = write_image("App.exe")

    result = cli.invoke(rebuild_cli, [str(image), "-c", quiet_config, "--json"])

    assert result.exit_code == EXIT_OK
    report = json.loads(result.output)
    assert report["result"]["plan"]["output_path"] == str(image.parent / "App.rb.exe")
    assert report["result"]["assemble_command"][0] == "ilasm4"
    assert len(fake_runner.stdout_targets) == 2
    assert all(target is not None for target in fake_runner.stdout_targets)


def test_tool_failure_exit_code(cli, write_image, quiet_config, monkeypatch):
    def failing(argv):
        raise subprocess.CalledProcessError(5, list(argv))

    monkeypatch.setattr(engine_module, "run_tool", failing)
    result = cli.invoke(rebuild_cli, [str(write_image("App.exe")), "-c", quiet_config])

    assert result.exit_code == EXIT_TOOL_FAILED
    assert "ildasm exited with status 5" in result.output


def test_tool_not_found_exit_code(cli, write_image, quiet_config, monkeypatch):
    def missing(argv):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    monkeypatch.setattr(engine_module, "run_tool", missing)
    result = cli.invoke(rebuild_cli, [str(write_image("App.exe")), "-c", quiet_config])

    assert result.exit_code == EXIT_TOOL_FAILED
    assert "Rebuild failed" in result.output


def test_check_only_prints_banner(cli, write_image, quiet_config):
    result = cli.invoke(rebuild_cli, [str(write_image("Lib.dll")), "-c", quiet_config, "--check-only"])
    assert result.exit_code == EXIT_OK
    assert "ilrebuild" in result.output
    assert "Version:" in result.output


@pytest.mark.parametrize("encoding", ["utf-8", "nope"])
def test_undecodable_intermediate_exit_code(cli, write_image, tmp_path, monkeypatch, make_runner, encoding):
    config = tmp_path / "encoding.toml"
    config.write_text(
        f'[global]\nlog_level = "CRITICAL"\n\n[toolchain]\nsource_encoding = "{encoding}"\n',
        encoding="utf-8",
    )
    runner = make_runner(il_text=".assembly Café {}\r\n".encode("cp1252"))
    monkeypatch.setattr(engine_module, "run_tool", runner)

    result = cli.invoke(rebuild_cli, [str(write_image("App.exe")), "-c", str(config)])

    assert result.exit_code == EXIT_BAD_ENCODING
    assert f"Cannot re-encode App.il from {encoding}." in result.output
    assert not (tmp_path / "App.rb.exe").exists()
