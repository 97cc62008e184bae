"""
Rebuilder -- Managed Image Round-Trip
======================================

Locates the managed-runtime header of a PE image (runtime version and
architecture) and drives an external disassembler / reassembler pair to
produce a rebuilt copy of the image next to the original.

Components:
    - :mod:`rebuilder.parsers.clr_header` -- header locator
    - :mod:`rebuilder.core.engine` -- rebuild pipeline
    - :mod:`rebuilder.cli` -- Click command-line interface
"""

__version__ = "1.0.0"
__all__ = [
    "ClrHeaderLocator",
    "HeaderInfo",
    "RebuildEngine",
    "RebuildResult",
]

from rebuilder.core.engine import RebuildEngine
from rebuilder.core.models import HeaderInfo, RebuildResult
from rebuilder.parsers.clr_header import ClrHeaderLocator
