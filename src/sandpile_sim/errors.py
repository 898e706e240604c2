"""
Exception types raised by the sandpile engine.

All of them signal configuration or programming errors. The engine never
catches them: continuing after one would silently break grain conservation.
"""

from __future__ import annotations


class SandpileError(Exception):
    """Base class for every error raised by ``sandpile_sim``."""


class ConfigurationError(SandpileError, ValueError):
    """Undefined or unsupported boundary type / toppling method reached a dispatch point."""


class InvariantViolation(SandpileError, ValueError):
    """Index out of range, bad grid geometry or a neighbour-count mismatch."""


class ResourceMissing(SandpileError, RuntimeError):
    """An operation needs a dissipation grid (or primary grid) that was never built."""


__all__ = [
    "SandpileError",
    "ConfigurationError",
    "InvariantViolation",
    "ResourceMissing",
]
