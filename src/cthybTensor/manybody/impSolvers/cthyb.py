"""CT-HYB (continuous-time hybridization expansion) impurity solver.

Samples the expansion of the partition function in the hybridization Δ,

    Z = Σ_n ∫ dτ … Tr[T e^{-βH_loc} c†(τ'₁) c(τ₁) …] · det Δ,

treating the local Hamiltonian exactly (matrix formulation on the Fock
space). The single-particle Green's function is measured in the Legendre
basis, either from the inverse hybridization matrix in Z space or from the
G1 worm; equal-time and two-time correlators come from worm spaces whose
weights are learned by a flat-histogram procedure.

**Key Architecture:**
- Parameters: SolverParameters (or a dict with ALPS-style keys)
- One or more independent walkers, merged by accumulator reduction
- Legendre coefficients post-processed into G(τ) and G(iωₙ)

References:
    - Werner & Millis, PRB 74, 155107 (2006)
    - Boehnke et al., PRB 84, 075145 (2011): Legendre measurement
    - Shinaoka, Nomura, Gull, PRB 90, 155120 (2014): sliding window
    - Gunacker et al., PRB 92, 155102 (2015): worm sampling
"""

from typing import Any, Callable, Dict, Optional, Union

import numpy as np

from cthybTensor.core.types import SolverParameters
from .base import ImpuritySolverABC


class CTHYBSolver(ImpuritySolverABC):
    """CT-HYB impurity solver with worm sampling.

    Attributes:
        params: SolverParameters of the run
        clock: Wall-clock function handed to the walkers
    """

    def __init__(
        self,
        params: Union[SolverParameters, Dict[str, Any]],
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize CT-HYB solver.

        Args:
            params: SolverParameters or dictionary (upper-case keys accepted)
            clock: Optional wall-clock function (default: time.perf_counter)

        Raises:
            TypeError: If params is neither SolverParameters nor a dict
            ValueError: If parameters are invalid
        """
        if isinstance(params, dict):
            params = SolverParameters.from_dict(params)
        if not isinstance(params, SolverParameters):
            raise TypeError(f"params must be SolverParameters or dict, got {type(params).__name__}")
        self.params = params.validate()
        self.clock = clock
        self._results: Optional[Dict[str, Any]] = None

    def solve(
        self,
        hybridization,
        model=None,
        n_walkers: int = 1,
        **kwargs,
    ) -> Dict[str, Any]:
        """Run the Monte Carlo simulation and post-process the results.

        Args:
            hybridization: HybridizationFunction Δ(τ)
            model: ImpurityModel of the local Hamiltonian
            n_walkers: Number of independent walkers (run one after another)
            **kwargs: Passed to the walker (e.g. blocks)

        Returns:
            Dictionary with keys
                'G_l', 'G_l_rotated': Legendre coefficients, shape (L, F, F)
                'G_tau', 'G_iwn', 'G_tau_rotated': BaseTensor
                'n': ⟨n_f⟩, 'order_histogram', 'sign'
                'kLkR', 'k', 'fidelity_susceptibility': expansion-order split χ_F
                'visits', 'volumes', 'space_weights', 'acceptance_rates',
                'timings', 'timings_per_sweep': seconds in local, global and measurement regions
                worm observables ('G1_l', 'G1_tau', 'equal_time_G1', 'equal_time_G2',
                'two_time_G2_l', 'two_time_G2_tau') for enabled worm spaces

        Raises:
            ValueError: If model is missing or n_walkers < 1
        """
        from cthybTensor.ctqmc.walker import HybridizationExpansionWalker, merge_walker_results
        from cthybTensor.manybody.postprocess import (
            fidelity_susceptibility,
            legendre_to_matsubara,
            legendre_to_tau,
            two_time_g2_to_tau,
        )

        if model is None:
            raise ValueError("CTHYBSolver.solve() requires an ImpurityModel (model=...)")
        if n_walkers < 1:
            raise ValueError(f"n_walkers must be positive, got {n_walkers}")

        params = self.params
        seeds = np.random.SeedSequence(params.seed).spawn(n_walkers)
        walkers = []
        for i in range(n_walkers):
            walker = HybridizationExpansionWalker(
                params,
                model,
                hybridization,
                rng=np.random.default_rng(seeds[i]),
                clock=self.clock,
                **kwargs,
            )
            walker.run()
            walkers.append(walker)
        results = merge_walker_results(walkers)

        names = model.flavor_names
        results["G_tau"] = legendre_to_tau(results["G_l"], params.beta, params.n_tau, names)
        results["G_iwn"] = legendre_to_matsubara(results["G_l"], params.beta, params.n_matsubara, names)
        results["G_tau_rotated"] = results["G_tau"].transform_flavors(model.rotation)
        results["fidelity_susceptibility"] = fidelity_susceptibility(results["kLkR"], results["k"])
        if "G1_l" in results:
            results["G1_tau"] = legendre_to_tau(results["G1_l"], params.beta, params.n_tau, names)
        if "two_time_G2_l" in results:
            results["two_time_G2_tau"] = two_time_g2_to_tau(
                results["two_time_G2_l"], params.beta, params.n_tau + 1
            )

        if params.verbose:
            print(f"{self.solver_name}: {results['n_sweeps']} sweeps, sign = {results['sign']:.6g}")
            if not results["flat_histogram_converged"]:
                print("Warning: flat histogram did not converge in all walkers")

        self._results = results
        return results

    @property
    def results(self) -> Optional[Dict[str, Any]]:
        """Results of the last solve() call."""
        return self._results

    @property
    def solver_name(self) -> str:
        return "CTHYB"

    @property
    def supported_orbitals(self) -> int:
        return -1
