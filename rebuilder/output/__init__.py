"""
Rebuilder Output
=================

Terminal rendering of results.
"""
