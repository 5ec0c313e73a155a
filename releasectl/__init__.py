"""
Releasectl - command line interface for the Release Orchestrator.

Module: releasectl
"""

__version__ = "1.0.0"
