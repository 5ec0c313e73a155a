"""
Releasectl Commands Package.

Module: releasectl/commands
"""

from . import approval, audit, change, pipeline

__all__ = ["approval", "audit", "change", "pipeline"]
