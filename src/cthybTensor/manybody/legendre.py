"""Legendre representation of imaginary-time functions.

A fermionic function G(τ) on [0, β] is expanded as

    G(τ) = Σ_l (√(2l+1) / β) P_l(x(τ)) G_l,      x(τ) = 2τ/β - 1,
    G_l  = √(2l+1) ∫₀^β dτ P_l(x(τ)) G(τ),

and its Matsubara transform follows from G(iωₙ) = Σ_l T_nl G_l with

    T_nl = (-1)ⁿ i^{l+1} √(2l+1) j_l((2n+1)π/2).

References:
    - L. Boehnke et al., PRB 84, 075145 (2011)
"""

import math
from typing import Union

import numpy as np
import torch
from numpy.polynomial import legendre as npleg
from scipy.special import spherical_jn


def legendre_values(x: Union[float, np.ndarray, torch.Tensor], n_legendre: int) -> torch.Tensor:
    """P_0(x) … P_{L-1}(x).

    Args:
        x: Scalar or array of points in [-1, 1]
        n_legendre: Number of polynomials L

    Returns:
        Tensor of shape x.shape + (L,) (float64)
    """
    if isinstance(x, torch.Tensor):
        x = x.detach().cpu().numpy()
    x = np.asarray(x, dtype=np.float64)
    values = npleg.legvander(x, n_legendre - 1)
    if x.ndim == 0:
        values = values.reshape(n_legendre)
    return torch.from_numpy(np.ascontiguousarray(values))


def sqrt_2l_1(n_legendre: int) -> torch.Tensor:
    """√(2l+1) for l = 0..L-1."""
    return torch.sqrt(2.0 * torch.arange(n_legendre, dtype=torch.float64) + 1.0)


class LegendreTransformer:
    """Legendre → Matsubara transformation matrix.

    Attributes:
        n_matsubara: Number of non-negative fermionic frequencies
        n_legendre: Number of Legendre coefficients
        Tnl: Complex tensor, shape (n_matsubara, n_legendre)
        sqrt_2l_1: √(2l+1), shape (n_legendre,)
    """

    def __init__(self, n_matsubara: int, n_legendre: int) -> None:
        if n_matsubara < 1 or n_legendre < 1:
            raise ValueError("n_matsubara and n_legendre must be positive")
        self.n_matsubara = n_matsubara
        self.n_legendre = n_legendre
        self.sqrt_2l_1 = sqrt_2l_1(n_legendre)

        n = np.arange(n_matsubara)[:, None]
        l = np.arange(n_legendre)[None, :]
        arg = (2 * n + 1) * math.pi / 2.0
        jl = spherical_jn(l, arg)
        phase = ((-1.0) ** n) * (1j ** (l + 1))
        Tnl = phase * np.sqrt(2 * l + 1) * jl
        self.Tnl = torch.from_numpy(Tnl.astype(np.complex128))

    def compute_legendre(self, x: float) -> torch.Tensor:
        """P_l(x) for l = 0..L-1."""
        return legendre_values(x, self.n_legendre)


__all__ = ["legendre_values", "sqrt_2l_1", "LegendreTransformer"]
