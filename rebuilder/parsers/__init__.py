"""
Rebuilder Parsers
==================

Binary structure readers.
"""
