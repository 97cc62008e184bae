"""
Rebuilder Data Models
======================

Pydantic-based data models for the header locator and the rebuild
pipeline.  Every model that crosses a component boundary is frozen: it
is built once, handed to the next stage and never mutated.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
    - ECMA-335 (6th ed., 2012). Common Language Infrastructure,
      Partition II, sections 24-25 (CLI header, metadata root).
"""

from __future__ import annotations

import enum
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ParseStatus(str, enum.Enum):
    """Outcome of a header locate run."""
    OK = "ok"
    NOT_MANAGED = "not_managed"
    IO_ERROR = "io_error"


class ImageKind(str, enum.Enum):
    """Reassembler output kind, selected from the image extension."""
    EXE = "exe"
    DLL = "dll"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RebuildError(Exception):
    """Base class for errors raised by the rebuilder itself."""


class ImageFormatError(RebuildError):
    """The container structure does not match what the locator expects."""


class SectionLookupError(ImageFormatError):
    """No section's virtual range contains the requested RVA."""

    def __init__(self, rva: int) -> None:
        super().__init__(f"No section contains RVA 0x{rva:08X}")
        self.rva = rva


class InputNotFoundError(RebuildError):
    """The candidate image path does not exist."""

    def __init__(self, path: str | Path) -> None:
        super().__init__(f"File doesn't exist: {path}")
        self.path = Path(path)


class NotManagedImageError(RebuildError):
    """The candidate image is not a managed-runtime image."""

    def __init__(self, header: HeaderInfo) -> None:
        super().__init__(header.reason or "File isn't a valid managed image.")
        self.header = header


class EncodingNormalizationError(RebuildError):
    """The intermediate text could not be decoded with the chosen codec."""

    def __init__(self, path: str | Path, encoding: str, detail: str) -> None:
        super().__init__(f"Cannot decode {path} as {encoding}: {detail}")
        self.path = Path(path)
        self.encoding = encoding


# ---------------------------------------------------------------------------
# Section table
# ---------------------------------------------------------------------------

class SectionDescriptor(BaseModel):
    """One record of the section table, reduced to its address fields.

    Attributes:
        virtual_size: Size of the section once loaded.
        virtual_address: RVA of the first byte of the section.
        raw_size: Size of the section's data on disk.
        raw_address: File offset of the section's data.
    """
    model_config = ConfigDict(frozen=True)

    virtual_size: int = Field(default=0, ge=0, le=0xFFFFFFFF)
    virtual_address: int = Field(default=0, ge=0, le=0xFFFFFFFF)
    raw_size: int = Field(default=0, ge=0, le=0xFFFFFFFF)
    raw_address: int = Field(default=0, ge=0, le=0xFFFFFFFF)

    @property
    def virtual_end(self) -> int:
        """Exclusive end of the virtual range covered by this section."""
        return self.virtual_address + max(self.virtual_size, self.raw_size)

    def contains(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_end


# ---------------------------------------------------------------------------
# Parse result
# ---------------------------------------------------------------------------

_MAJOR_RE = re.compile(r"^v?(\d+)")


class HeaderInfo(BaseModel):
    """Result of locating the managed-runtime header of an image.

    Attributes:
        status: Classified outcome of the locate run.
        runtime_version: Version string from the metadata root
            (e.g. ``"v4.0.30319"``), ``None`` on failure.
        is_64bit: ``True`` for x64 images, ``False`` for x86 images,
            ``None`` when the machine tag was never read successfully.
        reason: Human-readable explanation for a failed run.
    """
    model_config = ConfigDict(frozen=True)

    status: ParseStatus = ParseStatus.NOT_MANAGED
    runtime_version: Optional[str] = None
    is_64bit: Optional[bool] = None
    reason: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_managed_image(self) -> bool:
        return self.status is ParseStatus.OK

    @computed_field  # type: ignore[prop-decorator]
    @property
    def runtime_major(self) -> Optional[int]:
        """Major runtime version parsed from the version string."""
        if not self.runtime_version:
            return None
        match = _MAJOR_RE.match(self.runtime_version)
        return int(match.group(1)) if match else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def architecture(self) -> str:
        if self.is_64bit is None:
            return "unknown"
        return "x64" if self.is_64bit else "x86"

    @classmethod
    def success(cls, runtime_version: str, is_64bit: bool) -> HeaderInfo:
        return cls(
            status=ParseStatus.OK,
            runtime_version=runtime_version,
            is_64bit=is_64bit,
        )

    @classmethod
    def failure(
        cls,
        reason: str,
        status: ParseStatus = ParseStatus.NOT_MANAGED,
        is_64bit: Optional[bool] = None,
    ) -> HeaderInfo:
        return cls(status=status, reason=reason, is_64bit=is_64bit)


# ---------------------------------------------------------------------------
# Rebuild pipeline
# ---------------------------------------------------------------------------

class RebuildPlan(BaseModel):
    """Every filesystem location the rebuild pipeline touches.

    Attributes:
        original_path: Absolute path of the image supplied by the user.
        work_dir: Isolated working directory, ``<dir>/<name>_il``.
        working_copy: Copy of the image inside :attr:`work_dir`.
        il_path: Intermediate text written by the disassembler.
        resource_path: Optional resource side-car written next to the
            intermediate text.
        rebuilt_path: Reassembler output inside :attr:`work_dir`.
        output_path: Final copy of the rebuilt image beside the original.
        kind: Whether the reassembler builds an EXE or a DLL.
    """
    model_config = ConfigDict(frozen=True)

    original_path: Path
    work_dir: Path
    working_copy: Path
    il_path: Path
    resource_path: Path
    rebuilt_path: Path
    output_path: Path
    kind: ImageKind = ImageKind.DLL


class RebuildResult(BaseModel):
    """Outcome of a completed rebuild."""
    model_config = ConfigDict(frozen=True)

    header: HeaderInfo
    plan: RebuildPlan
    disassemble_command: list[str] = Field(default_factory=list)
    assemble_command: list[str] = Field(default_factory=list)
    used_resource: bool = False
    duration_seconds: float = 0.0

    @property
    def output_path(self) -> Path:
        return self.plan.output_path
