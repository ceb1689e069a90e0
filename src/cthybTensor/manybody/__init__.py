"""Many-body collaborators of the CT-HYB core.

This module provides:
- Local impurity Hamiltonian in its eigenbasis (ImpurityModel)
- Hybridization function Δ(τ) of the bath
- Legendre utilities and post-processing into G(τ), G(iωₙ)
- Impurity solvers (CTHYB)

LEVEL 2 of the architecture.
"""

from cthybTensor.manybody.impurity_model import ImpurityModel, fock_creation_operators
from cthybTensor.manybody.hybridization import HybridizationFunction
from cthybTensor.manybody.legendre import LegendreTransformer, legendre_values, sqrt_2l_1
from cthybTensor.manybody.postprocess import (
    tau_mesh,
    matsubara_frequencies,
    legendre_to_tau,
    legendre_to_matsubara,
    two_time_g2_to_tau,
    fidelity_susceptibility,
)

# Impurity solvers (ABC + implementations)
from cthybTensor.manybody.impSolvers import (
    ImpuritySolverABC,
    CTHYBSolver,
)

__all__ = [
    # Model and bath
    "ImpurityModel",
    "fock_creation_operators",
    "HybridizationFunction",
    # Legendre basis
    "LegendreTransformer",
    "legendre_values",
    "sqrt_2l_1",
    # Post-processing
    "tau_mesh",
    "matsubara_frequencies",
    "legendre_to_tau",
    "legendre_to_matsubara",
    "two_time_g2_to_tau",
    "fidelity_susceptibility",
    # Impurity solvers
    "ImpuritySolverABC",
    "CTHYBSolver",
]
