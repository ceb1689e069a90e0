"""Abstract base class for impurity solvers.

All impurity solvers must inherit from ImpuritySolverABC and implement
the required methods. This ensures a consistent interface for drivers
(e.g. a DMFT self-consistency loop) that call the solver.

Supported impurity solvers:
- CTHYB: Continuous-time hybridization-expansion Monte Carlo

References:
    - "Dynamical mean-field theory" - Georges et al., Rev. Mod. Phys. 68, 13 (1996)
    - Gull et al., Rev. Mod. Phys. 83, 349 (2011)
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, TYPE_CHECKING

if TYPE_CHECKING:
    from cthybTensor.manybody.hybridization import HybridizationFunction


class ImpuritySolverABC(ABC):
    """Abstract base class for impurity solvers.

    An impurity solver maps the hybridization function Δ(τ) of the bath
    and the local Hamiltonian to impurity observables:

        G_imp(τ) = 𝒢[Δ, H_loc]

    where 𝒢 represents the impurity solver mapping.
    """

    @abstractmethod
    def solve(
        self,
        hybridization: "HybridizationFunction",
        **kwargs,
    ) -> Dict[str, Any]:
        """Solve the impurity problem.

        Args:
            hybridization: Hybridization function Δ(τ) of the bath
            **kwargs: Solver-specific inputs (e.g., the local model)

        Returns:
            Dictionary of observables; at least 'G_tau' as a BaseTensor with
            labels=['tau', 'orb_i', 'orb_j']

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError("Impurity solvers must implement solve()")

    @property
    @abstractmethod
    def solver_name(self) -> str:
        """Return the name of this solver.

        Used for logging and output identification.

        Returns:
            Solver name string (e.g., 'CTHYB')
        """
        raise NotImplementedError("Impurity solvers must implement solver_name")

    @property
    @abstractmethod
    def supported_orbitals(self) -> int:
        """Return maximum number of orbitals supported.

        Returns:
            -1 for unlimited (supports any number of orbitals)
            0 for single-orbital only
            n for multi-orbital up to n orbitals
        """
        raise NotImplementedError("Impurity solvers must implement supported_orbitals")
