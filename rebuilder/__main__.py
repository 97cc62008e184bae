"""
Rebuilder Module Entry Point
=============================

Allows running the CLI via: python -m rebuilder
"""

from rebuilder.cli import main

if __name__ == "__main__":
    main()
