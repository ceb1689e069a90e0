"""Impurity solvers.

All solvers inherit from ImpuritySolverABC to ensure a consistent interface.

Available solvers:
- CTHYB: Continuous-time hybridization-expansion Monte Carlo (with worm sampling)

Usage Example:
    >>> from cthybTensor.manybody.impSolvers import CTHYBSolver, ImpuritySolverABC
    >>> solver = CTHYBSolver({'BETA': 10.0, 'SITES': 1, 'SPINS': 2, 'TIME_LIMIT': 60})
    >>> assert isinstance(solver, ImpuritySolverABC)
    >>> results = solver.solve(hybridization, model=model)

References:
    - Gull et al., Rev. Mod. Phys. 83, 349 (2011)
"""

from .base import ImpuritySolverABC
from .cthyb import CTHYBSolver

__all__ = [
    "ImpuritySolverABC",
    "CTHYBSolver",
]
