"""
Rebuilder Configuration Management
===================================

Dataclass configuration for the rebuild toolchain with TOML-based
persistence and environment-variable overrides, keeping tool locations
out of the code.

Lookup order for every toolchain field (later wins):

    1. Dataclass defaults.
    2. The ``[toolchain]`` table of the TOML file.
    3. ``ILREBUILD_<FIELD>`` environment variables.

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Mapping, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[no-redef]


_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "config.toml"

ENV_PREFIX: str = "ILREBUILD_"


def _split_options(value: Any) -> list[str]:
    """Accept a TOML array or a shell-style string of options."""
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(item) for item in value]


# ========================== Toolchain ======================================


@dataclass(frozen=False, slots=True)
class ToolchainConfig:
    """External disassembler / reassembler locations and flags.

    The 4.x assembler handles images whose runtime version starts with
    ``v4``; every other runtime goes to the legacy 2.x assembler.
    """

    ildasm_path: str = "ildasm"
    ildasm_options: list[str] = field(default_factory=list)
    ilasm4x_path: str = "ilasm"
    ilasm2x_path: str = "ilasm"
    ilasm_options: list[str] = field(default_factory=list)
    ilasm_options64: list[str] = field(default_factory=lambda: ["--x64"])
    rebuilt_marker: str = ".rb"
    workdir_suffix: str = "_il"
    # Empty means the locale's preferred encoding
    source_encoding: str = ""

    _OPTION_FIELDS = ("ildasm_options", "ilasm_options", "ilasm_options64")

    def __post_init__(self) -> None:
        for name in self._OPTION_FIELDS:
            setattr(self, name, _split_options(getattr(self, name)))

    def assembler_for(self, runtime_version: str) -> str:
        """Return the assembler path for *runtime_version*."""
        return self.ilasm4x_path if runtime_version.startswith("v4") else self.ilasm2x_path

    def assembler_options(self, is_64bit: bool) -> list[str]:
        return list(self.ilasm_options64 if is_64bit else self.ilasm_options)


# =========================== Global Settings ===============================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Logging settings shared by every rebuilder component."""

    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class RebuildConfig:
    """Master configuration aggregating global and toolchain settings.

    Usage:
        >>> config = RebuildConfig.load()                  # default path
        >>> config = RebuildConfig.load("custom.toml")     # explicit path
        >>> config.toolchain.rebuilt_marker
        '.rb'
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)

    # ------------------------------------------------------------------ #
    #  Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> RebuildConfig:
        """Load configuration from TOML and apply environment overrides.

        If *path* is ``None`` the loader looks for ``config.toml`` in the
        project root and falls back to defaults when it is absent.

        Args:
            path: Filesystem path to a TOML configuration file.
            environ: Environment mapping; defaults to :data:`os.environ`.

        Raises:
            FileNotFoundError: If *path* was given explicitly and does
                not exist.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        raw: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "rb") as fh:
                raw = tomllib.load(fh)
        elif path is not None:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        toolchain_data = dict(raw.get("toolchain", {}))
        toolchain_data.update(cls._env_overrides(ToolchainConfig, environ))

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            toolchain=cls._build_section(ToolchainConfig, toolchain_data),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the configuration tree to a plain dictionary."""
        return asdict(self)

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _build_section(cls: type, data: Mapping[str, Any]) -> Any:
        """Instantiate dataclass *cls* from the keys it declares.

        Unknown keys are ignored so newer config files keep working.
        """
        valid_keys = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)

    @staticmethod
    def _env_overrides(cls: type, environ: Mapping[str, str] | None) -> dict[str, str]:
        env = os.environ if environ is None else environ
        overrides: dict[str, str] = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key in env:
                overrides[f.name] = env[key]
        return overrides
