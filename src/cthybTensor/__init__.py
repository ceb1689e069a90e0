"""
cthybTensor: PyTorch-based continuous-time hybridization-expansion solver.

A tensor-first CT-HYB quantum Monte Carlo impurity solver with sliding-window
trace evaluation and worm sampling of Green's and correlation functions.
"""

from cthybTensor.core import BaseTensor, SolverParameters

__version__ = "0.0.1"

__all__ = ["BaseTensor", "SolverParameters"]
