"""
Rebuilder Shared Module
=======================

Configuration, logging, and console services used by the rebuilder.
"""

from shared.config import RebuildConfig

__all__ = ["RebuildConfig"]
