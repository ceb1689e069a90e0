"""Post-processing of Legendre coefficients.

    G(τ)   = Σ_l (√(2l+1)/β) P_l(2τ/β − 1) G_l
    G(iωₙ) = Σ_l T_nl G_l
    χ(τ)   = Σ_l (√(2l+1)/β) P_l(2τ/β − 1) χ_l        (bosonic)
    χ_F    = ½ (⟨k_L k_R⟩ − ¼ ⟨k⟩²)                    (fidelity susceptibility)

For bosonic functions x is clipped to (−1 + 1e-8, 1 − 1e-8).

Input coefficients are already normalized by the Monte Carlo sign.
"""

import math
from typing import List, Optional

import torch

from cthybTensor.core.base import BaseTensor
from cthybTensor.manybody.legendre import LegendreTransformer, legendre_values, sqrt_2l_1


def tau_mesh(beta: float, n_tau: int) -> torch.Tensor:
    """τ_i = i β / n_tau, i = 0..n_tau."""
    return torch.linspace(0.0, beta, n_tau + 1, dtype=torch.float64)


def matsubara_frequencies(beta: float, n_matsubara: int) -> torch.Tensor:
    """Fermionic ωₙ = (2n+1)π/β for n = 0..n_matsubara−1."""
    n = torch.arange(n_matsubara, dtype=torch.float64)
    return (2 * n + 1) * math.pi / beta


def _legendre_sum(coefficients: torch.Tensor, beta: float, x: torch.Tensor) -> torch.Tensor:
    n_legendre = coefficients.shape[0]
    P = legendre_values(x, n_legendre).to(coefficients.dtype)             # (n_x, L)
    weights = P * (sqrt_2l_1(n_legendre).to(coefficients.dtype) / beta)
    return torch.tensordot(weights, coefficients, dims=([1], [0]))


def legendre_to_tau(
    G_l: torch.Tensor,
    beta: float,
    n_tau: int,
    flavor_names: Optional[List[str]] = None,
) -> BaseTensor:
    """G(τ) on n_tau + 1 points from Legendre coefficients.

    Args:
        G_l: Coefficients, shape (L, F, F)
        beta: Inverse temperature
        n_tau: Number of τ intervals

    Returns:
        BaseTensor with labels ['tau', 'orb_i', 'orb_j']
    """
    tau = tau_mesh(beta, n_tau)
    x = 2.0 * tau / beta - 1.0
    return BaseTensor(
        tensor=_legendre_sum(G_l, beta, x),
        labels=["tau", "orb_i", "orb_j"],
        mesh=tau,
        flavor_names=flavor_names,
        beta=beta,
    )


def legendre_to_matsubara(
    G_l: torch.Tensor,
    beta: float,
    n_matsubara: int,
    flavor_names: Optional[List[str]] = None,
) -> BaseTensor:
    """G(iωₙ) for n = 0..n_matsubara−1 from Legendre coefficients.

    Args:
        G_l: Coefficients, shape (L, F, F)
        beta: Inverse temperature
        n_matsubara: Number of non-negative frequencies

    Returns:
        BaseTensor with labels ['iwn', 'orb_i', 'orb_j']
    """
    transformer = LegendreTransformer(n_matsubara, G_l.shape[0])
    data = torch.tensordot(transformer.Tnl, G_l.to(torch.complex128), dims=([1], [0]))
    return BaseTensor(
        tensor=data,
        labels=["iwn", "orb_i", "orb_j"],
        mesh=matsubara_frequencies(beta, n_matsubara),
        flavor_names=flavor_names,
        beta=beta,
    )


def two_time_g2_to_tau(chi_l: torch.Tensor, beta: float, n_tau: int) -> BaseTensor:
    """Two-time correlation function χ_abcd(τ) from Legendre coefficients.

    Args:
        chi_l: Coefficients, shape (L, F, F, F, F)
        beta: Inverse temperature
        n_tau: Number of τ points (τ_i = i β / (n_tau − 1))

    Returns:
        BaseTensor with labels ['tau', 'flavor_a', 'flavor_b', 'flavor_c', 'flavor_d']
    """
    if n_tau < 2:
        raise ValueError("n_tau must be at least 2")
    tau = torch.linspace(0.0, beta, n_tau, dtype=torch.float64)
    x = torch.clamp(2.0 * tau / beta - 1.0, -1.0 + 1e-8, 1.0 - 1e-8)
    return BaseTensor(
        tensor=_legendre_sum(chi_l, beta, x),
        labels=["tau", "flavor_a", "flavor_b", "flavor_c", "flavor_d"],
        mesh=tau,
        beta=beta,
    )


def fidelity_susceptibility(kLkR, k):
    """χ_F = ½ (⟨k_L k_R⟩ − ¼ ⟨k⟩²).

    Args:
        kLkR: ⟨k_L k_R⟩, product of the expansion orders in the two halves of [0, β)
        k: ⟨k⟩, total expansion order (number of hybridized operators)
    """
    return 0.5 * (kLkR - 0.25 * k * k)


__all__ = [
    "tau_mesh",
    "matsubara_frequencies",
    "legendre_to_tau",
    "legendre_to_matsubara",
    "two_time_g2_to_tau",
    "fidelity_susceptibility",
]
