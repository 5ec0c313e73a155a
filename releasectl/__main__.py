"""
Releasectl main entry point for module execution.

Module: releasectl/__main__.py

Usage:
    python -m releasectl
"""

from .cli import main

if __name__ == "__main__":
    main()
