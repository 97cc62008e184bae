"""
Test fixtures for the rebuilder.

Provides a synthetic PE image builder that lays out exactly the fields
the header locator reads, plus a fake external tool runner.
"""
from __future__ import annotations

import io
import struct
import subprocess
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest


PE_OFFSET = 0x80
MACHINE_X86 = 0x14C
MACHINE_X64 = 0x8664

# (virtual_size, virtual_address, raw_size, raw_address)
DEFAULT_SECTIONS = [(0x1000, 0x2000, 0x400, 0x400)]
CLR_HEADER_RVA = 0x2000
METADATA_RVA = 0x2100
V4_VERSION = b"v4.0.30319\x00\x00"


def build_image(
    *,
    machine: int = MACHINE_X64,
    sections: Sequence[tuple[int, int, int, int]] = DEFAULT_SECTIONS,
    clr_rva: int = CLR_HEADER_RVA,
    metadata_rva: int = METADATA_RVA,
    version: bytes = V4_VERSION,
    version_length: Optional[int] = None,
    size: int = 0x800,
) -> bytes:
    """Assemble a minimal PE image around a CLI header and metadata root."""
    data = bytearray(size)
    data[0:2] = b"MZ"
    struct.pack_into("<I", data, 0x3C, PE_OFFSET)
    data[PE_OFFSET:PE_OFFSET + 4] = b"PE\x00\x00"
    struct.pack_into("<HH", data, PE_OFFSET + 4, machine, len(sections))

    is_64bit = machine == MACHINE_X64
    struct.pack_into("<I", data, PE_OFFSET + (0xF8 if is_64bit else 0xE8), clr_rva)

    table = PE_OFFSET + (0x108 if is_64bit else 0xF8)
    for index, (vsize, vaddr, rsize, raddr) in enumerate(sections):
        record = table + index * 40
        data[record:record + 8] = b".text\x00\x00\x00"
        struct.pack_into("<IIII", data, record + 8, vsize, vaddr, rsize, raddr)

    def rva_to_offset(rva: int) -> Optional[int]:
        for vsize, vaddr, rsize, raddr in sections:
            if vaddr <= rva < vaddr + max(vsize, rsize):
                return raddr + rva - vaddr
        return None

    clr_offset = rva_to_offset(clr_rva) if clr_rva else None
    if clr_offset is not None and clr_offset + 12 <= size:
        struct.pack_into("<IHHI", data, clr_offset, 0x48, 2, 5, metadata_rva)

    md_offset = rva_to_offset(metadata_rva) if metadata_rva else None
    if md_offset is not None and md_offset + 16 + len(version) <= size:
        length = len(version) if version_length is None else version_length
        struct.pack_into("<4sHHIi", data, md_offset, b"BSJB", 1, 1, 0, length)
        data[md_offset + 16:md_offset + 16 + len(version)] = version

    return bytes(data)


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    return build_image


@pytest.fixture
def image_stream() -> Callable[..., io.BytesIO]:
    """Return a factory building an in-memory image stream."""
    def _factory(**kwargs) -> io.BytesIO:
        return io.BytesIO(build_image(**kwargs))
    return _factory


@pytest.fixture
def write_image(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory writing an image under ``tmp_path``."""
    def _factory(name: str = "App.exe", **kwargs) -> Path:
        path = tmp_path / name
        path.write_bytes(build_image(**kwargs))
        return path
    return _factory


class FakeToolRunner:
    """Records argv lists and imitates ildasm / ilasm output files."""

    def __init__(
        self,
        il_text: bytes = b".assembly App {}\r\n",
        write_resource: bool = False,
        fail_on: Optional[str] = None,
    ) -> None:
        self.calls: list[list[str]] = []
        self.stdout_targets: list = []
        self.il_text = il_text
        self.write_resource = write_resource
        self.fail_on = fail_on

    def __call__(self, argv: Sequence[str], stdout=None) -> None:
        argv = list(argv)
        self.calls.append(argv)
        self.stdout_targets.append(stdout)
        if self.fail_on is not None and argv[0] == self.fail_on:
            raise subprocess.CalledProcessError(1, argv)

        if "--out" in argv:
            il_path = Path(argv[argv.index("--out") + 1])
            il_path.write_bytes(self.il_text)
            if self.write_resource:
                il_path.with_suffix(".res").write_bytes(b"\x00" * 32)
        elif "--output" in argv:
            Path(argv[argv.index("--output") + 1]).write_bytes(b"MZrebuilt")


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def make_runner() -> type[FakeToolRunner]:
    return FakeToolRunner
