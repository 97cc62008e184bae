"""
Rebuilder Core Module
======================

Contains the rebuild engine and data models.
"""
