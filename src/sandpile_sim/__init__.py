"""
Sandpile Simulation Library - Self-Organized Criticality

This package provides an abelian-sandpile engine with interchangeable rules:
- SandPile: grain grid plus optional dissipation field, drive/relax cycle
- Toppling: five toppling methods and three sweep strategies
- Grid: square lattice with seven boundary topologies
- Experiment: repeated trials collecting avalanche statistics
"""

from .cell import Cell, Direction
from .errors import ConfigurationError, InvariantViolation, ResourceMissing, SandpileError
from .events import EventCounter
from .experiment import Experiment, ExperimentConfig
from .grid import BoundaryType, Grid
from .multiresolution import Multiresolution
from .sandpile import GridValueType, SandPile
from .toppling import Toppling, TopplingIterator, TopplingMethod
from . import utils

__all__ = [
    # Engine
    "SandPile",
    "Toppling",
    "Grid",
    "Cell",
    # Enumerations
    "GridValueType",
    "TopplingMethod",
    "TopplingIterator",
    "BoundaryType",
    "Direction",
    # Experiments and analysis
    "Experiment",
    "ExperimentConfig",
    "EventCounter",
    "Multiresolution",
    # Errors
    "SandpileError",
    "ConfigurationError",
    "InvariantViolation",
    "ResourceMissing",
    # Utilities
    "utils",
]
