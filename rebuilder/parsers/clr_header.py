"""
Managed-Runtime Header Locator
================================

Manual struct-based walk through a PE/COFF image that recovers the two
facts the rebuild pipeline needs: the runtime version string stored in
the CLI metadata root, and whether the image is PE32 (x86) or PE32+
(x64).

No container-format library (``pefile``, ``lief``, ...) is used.  The
walk only touches the fields required to reach the version string:

    1. ``e_lfanew`` at ``0x3C`` -- offset of the PE signature.
    2. COFF ``Machine`` at ``pe + 0x4``.
    3. COFF ``NumberOfSections`` at ``pe + 0x6``.
    4. Section table at ``pe + 0xF8`` (PE32) or ``pe + 0x108`` (PE32+).
    5. CLI header data directory RVA at ``pe + 0xE8`` / ``pe + 0xF8``.
    6. Metadata RVA at ``cli_header + 0x8``.
    7. Version length at ``metadata_root + 0xC``, followed by the
       version bytes and two bytes of padding.

All integers are little-endian.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - ECMA-335 (6th ed., 2012). Partition II, 25.3.3 (CLI header) and
      24.2.1 (metadata root).
"""

from __future__ import annotations

import os
import struct
from pathlib import Path
from typing import BinaryIO, Sequence

from shared.logger import RebuildLogger

from rebuilder.core.models import (
    HeaderInfo,
    ImageFormatError,
    ParseStatus,
    SectionDescriptor,
    SectionLookupError,
)


# ---------------------------------------------------------------------------
# Layout constants
# ---------------------------------------------------------------------------

PE_POINTER_OFFSET: int = 0x3C

IMAGE_FILE_MACHINE_I386: int = 0x14C
IMAGE_FILE_MACHINE_AMD64: int = 0x8664

# Offsets relative to the PE signature
MACHINE_OFFSET: int = 0x4
NUMBER_OF_SECTIONS_OFFSET: int = 0x6
SECTION_TABLE_OFFSET_32: int = 0xF8
SECTION_TABLE_OFFSET_64: int = 0x108
CLR_DIRECTORY_OFFSET_32: int = 0xE8
CLR_DIRECTORY_OFFSET_64: int = 0xF8

SECTION_HEADER_SIZE: int = 40
SECTION_NAME_SIZE: int = 8

# Offsets inside the CLI header and the metadata root
CLR_METADATA_RVA_OFFSET: int = 0x8
METADATA_VERSION_LENGTH_OFFSET: int = 0xC
VERSION_PADDING: int = 2

_SECTION_FIELDS = struct.Struct("<IIII")


class _TruncatedImageError(ImageFormatError):
    """A read ran past the end of the stream."""


# ---------------------------------------------------------------------------
# Low-level readers
# ---------------------------------------------------------------------------

def _read_at(stream: BinaryIO, offset: int, size: int) -> bytes:
    end = stream.seek(0, os.SEEK_END)
    if offset + size > end:
        raise _TruncatedImageError(
            f"Unexpected end of file reading {size} bytes at 0x{offset:X}"
        )
    stream.seek(offset)
    data = stream.read(size)
    if len(data) != size:
        raise _TruncatedImageError(
            f"Unexpected end of file reading {size} bytes at 0x{offset:X}"
        )
    return data


def _read_u16(stream: BinaryIO, offset: int) -> int:
    return struct.unpack("<H", _read_at(stream, offset, 2))[0]


def _read_u32(stream: BinaryIO, offset: int) -> int:
    return struct.unpack("<I", _read_at(stream, offset, 4))[0]


def _read_i32(stream: BinaryIO, offset: int) -> int:
    return struct.unpack("<i", _read_at(stream, offset, 4))[0]


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def read_pe_info(stream: BinaryIO) -> tuple[int, bool]:
    """Return ``(pe_offset, is_64bit)`` for the image in *stream*.

    Raises:
        ImageFormatError: On a truncated header or an unsupported
            ``Machine`` value.
    """
    pe_offset = _read_u32(stream, PE_POINTER_OFFSET)
    machine = _read_u16(stream, pe_offset + MACHINE_OFFSET)
    if machine not in (IMAGE_FILE_MACHINE_I386, IMAGE_FILE_MACHINE_AMD64):
        raise ImageFormatError(f'Invalid "Machine" in file header: 0x{machine:X}')
    return pe_offset, machine == IMAGE_FILE_MACHINE_AMD64


def read_section_table(
    stream: BinaryIO,
    pe_offset: int,
    is_64bit: bool,
) -> tuple[SectionDescriptor, ...]:
    """Read every section table record into a :class:`SectionDescriptor`.

    The count comes from the COFF header; the table itself is assumed to
    follow a standard-sized optional header.
    """
    count = _read_u16(stream, pe_offset + NUMBER_OF_SECTIONS_OFFSET)
    table = pe_offset + (SECTION_TABLE_OFFSET_64 if is_64bit else SECTION_TABLE_OFFSET_32)

    sections: list[SectionDescriptor] = []
    for index in range(count):
        record = table + index * SECTION_HEADER_SIZE
        virtual_size, virtual_address, raw_size, raw_address = _SECTION_FIELDS.unpack(
            _read_at(stream, record + SECTION_NAME_SIZE, _SECTION_FIELDS.size)
        )
        sections.append(SectionDescriptor(
            virtual_size=virtual_size,
            virtual_address=virtual_address,
            raw_size=raw_size,
            raw_address=raw_address,
        ))
    return tuple(sections)


def find_section(rva: int, sections: Sequence[SectionDescriptor]) -> SectionDescriptor:
    """Return the first section whose virtual range contains *rva*."""
    for section in sections:
        if section.contains(rva):
            return section
    raise SectionLookupError(rva)


def rva_to_offset(rva: int, sections: Sequence[SectionDescriptor]) -> int:
    """Translate a Relative Virtual Address into a file offset.

    Raises:
        SectionLookupError: If no section contains *rva*.
    """
    section = find_section(rva, sections)
    return section.raw_address + (rva - section.virtual_address)


# ---------------------------------------------------------------------------
# Locator
# ---------------------------------------------------------------------------

class ClrHeaderLocator:
    """Extracts the runtime version and architecture of a managed image.

    The locator never raises for malformed input: every structural
    problem is reported as a :class:`HeaderInfo` with
    :attr:`ParseStatus.NOT_MANAGED`, and an ``OSError`` from the stream
    itself as :attr:`ParseStatus.IO_ERROR`.

    Usage::

        locator = ClrHeaderLocator()
        with open(path, "rb") as fh:
            info = locator.locate(fh)
        if info.is_managed_image:
            print(info.runtime_version, info.architecture)
    """

    def __init__(self, logger: RebuildLogger | None = None) -> None:
        self._logger: RebuildLogger = logger or RebuildLogger(
            "parsers.clr_header", console_output=False
        )

    def locate(self, stream: BinaryIO) -> HeaderInfo:
        """Walk the header chain of the image in *stream*."""
        is_64bit: bool | None = None
        try:
            pe_offset, is_64bit = read_pe_info(stream)
            self._logger.debug(
                "PE header at 0x%X, %s image", pe_offset, "PE32+" if is_64bit else "PE32"
            )
            version = self._read_version_string(stream, pe_offset, is_64bit)
        except (ImageFormatError, struct.error) as exc:
            self._logger.warning("Not a managed image: %s", exc)
            return HeaderInfo.failure(str(exc), is_64bit=is_64bit)
        except OSError as exc:
            self._logger.warning("I/O error while reading image: %s", exc)
            return HeaderInfo.failure(
                f"I/O error: {exc}", status=ParseStatus.IO_ERROR, is_64bit=is_64bit
            )

        self._logger.info(
            "Runtime version %s (%s)", version, "x64" if is_64bit else "x86"
        )
        return HeaderInfo.success(version, is_64bit)

    def locate_file(self, path: str | Path) -> HeaderInfo:
        """Open *path* and locate its header; the handle is always closed."""
        try:
            with open(path, "rb") as fh:
                return self.locate(fh)
        except OSError as exc:
            self._logger.warning("Cannot open %s: %s", path, exc)
            return HeaderInfo.failure(f"I/O error: {exc}", status=ParseStatus.IO_ERROR)

    # ------------------------------------------------------------------ #
    #  Internal
    # ------------------------------------------------------------------ #

    def _read_version_string(self, stream: BinaryIO, pe_offset: int, is_64bit: bool) -> str:
        directory = pe_offset + (CLR_DIRECTORY_OFFSET_64 if is_64bit else CLR_DIRECTORY_OFFSET_32)
        clr_rva = _read_u32(stream, directory)
        if clr_rva == 0:
            raise ImageFormatError("Image has no managed-runtime header")

        sections = read_section_table(stream, pe_offset, is_64bit)
        self._logger.debug("Read %d section headers", len(sections))

        clr_offset = rva_to_offset(clr_rva, sections)
        self._logger.debug("CLI header RVA 0x%X -> offset 0x%X", clr_rva, clr_offset)

        metadata_rva = _read_u32(stream, clr_offset + CLR_METADATA_RVA_OFFSET)
        if metadata_rva == 0:
            raise ImageFormatError("Image has no metadata root")

        metadata_offset = rva_to_offset(metadata_rva, sections)
        self._logger.debug("Metadata RVA 0x%X -> offset 0x%X", metadata_rva, metadata_offset)

        length = _read_i32(stream, metadata_offset + METADATA_VERSION_LENGTH_OFFSET)
        size = length - VERSION_PADDING
        if size < 0:
            raise ImageFormatError(f"Invalid version string length: {length}")

        raw = _read_at(stream, metadata_offset + METADATA_VERSION_LENGTH_OFFSET + 4, size)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ImageFormatError(f"Version string is not valid UTF-8: {exc}") from exc


# ---------------------------------------------------------------------------
# Module-level convenience
# ---------------------------------------------------------------------------

def locate_header(stream: BinaryIO) -> HeaderInfo:
    """Locate the managed-runtime header in an open binary stream."""
    return ClrHeaderLocator().locate(stream)


def locate_header_file(path: str | Path) -> HeaderInfo:
    """Locate the managed-runtime header of the file at *path*."""
    return ClrHeaderLocator().locate_file(path)
