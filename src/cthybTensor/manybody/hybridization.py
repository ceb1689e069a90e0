"""Hybridization function Δ(τ) on a uniform imaginary-time grid.

Integrating out a non-interacting bath coupled to the impurity by
V_{a,k} c†_a b_k + h.c. leaves the effective action

    S_hyb = -∫∫ dτ dτ' Σ_ab c̄_a(τ) Δ_ab(τ-τ') c_b(τ'),

    Δ_ab(τ) = Σ_k V_ak V*_bk e^{-ε_k τ} / (1 + e^{-β ε_k}),   0 < τ < β,

continued antiperiodically, Δ(τ) = -Δ(τ+β) for -β < τ < 0. With this sign
convention Δ_aa(τ) > 0 on (0, β) and the determinant of the hybridization
matrix of a single flavor carries no extra sign.
"""

from typing import List, Sequence

import torch


class HybridizationFunction:
    """
    Tabulated hybridization function with linear interpolation.

    Attributes:
        beta: Inverse temperature
        n_tau: Number of grid intervals (the grid has n_tau + 1 points)
        data: Δ(τ_i) on the grid, shape (n_tau + 1, F, F)
        n_flavors: Number of flavors F
    """

    def __init__(self, beta: float, data: torch.Tensor) -> None:
        """
        Args:
            beta: Inverse temperature
            data: Δ(τ) on τ_i = i β / n_tau, i = 0..n_tau, shape (n_tau + 1, F, F)

        Raises:
            ValueError: If data is not a (n_tau + 1, F, F) tensor
        """
        if data.ndim != 3 or data.shape[1] != data.shape[2]:
            raise ValueError(f"Hybridization data must have shape (n_tau+1, F, F), got {tuple(data.shape)}")
        if data.shape[0] < 2:
            raise ValueError("Hybridization grid needs at least two points")
        self.beta = float(beta)
        self.data = data
        self.n_tau = data.shape[0] - 1
        self.n_flavors = data.shape[1]
        self.dtype = torch.complex128 if data.is_complex() else torch.float64
        self._dtau = self.beta / self.n_tau
        # Slopes for interpolation between neighbouring grid points
        self._slope = (data[1:] - data[:-1]) / self._dtau

    @classmethod
    def from_bath(
        cls,
        beta: float,
        n_tau: int,
        energies: Sequence[float],
        couplings: torch.Tensor,
    ) -> "HybridizationFunction":
        """Δ(τ) of a discrete bath.

        Args:
            beta: Inverse temperature
            n_tau: Number of grid intervals
            energies: Bath energies ε_k, length N_bath
            couplings: V_ak, shape (F, N_bath)

        Returns:
            HybridizationFunction instance
        """
        eps = torch.as_tensor(energies, dtype=torch.float64)
        V = couplings.to(torch.complex128 if couplings.is_complex() else torch.float64)
        if V.ndim != 2 or V.shape[1] != eps.shape[0]:
            raise ValueError("couplings must have shape (F, N_bath)")
        tau = torch.linspace(0.0, beta, n_tau + 1, dtype=torch.float64)
        # Fermi-factor form, written to stay finite for both signs of ε
        pos = eps >= 0
        weight = torch.where(
            pos[None, :],
            torch.exp(-eps[None, :] * tau[:, None]) / (1.0 + torch.exp(-beta * eps.abs()))[None, :],
            torch.exp(eps[None, :] * (beta - tau[:, None])) / (1.0 + torch.exp(-beta * eps.abs()))[None, :],
        )
        weight = weight.to(V.dtype)
        data = torch.einsum("ak,bk,tk->tab", V, V.conj(), weight)
        return cls(beta, data)

    def value(self, flavor1: int, flavor2: int, tau: float) -> float:
        """Δ_{flavor1, flavor2}(τ) for -β < τ < β (antiperiodic)."""
        sign = 1.0
        if tau < 0.0:
            tau += self.beta
            sign = -1.0
        idx = min(int(tau / self._dtau), self.n_tau - 1)
        dx = tau - idx * self._dtau
        return sign * (self.data[idx, flavor1, flavor2] + dx * self._slope[idx, flavor1, flavor2]).item()

    def matrix(self, creators: Sequence, annihilators: Sequence) -> torch.Tensor:
        """Determinant matrix D[i, j] = Δ_{f(c†_i), f(c_j)}(τ_{c†_i} - τ_{c_j}).

        Args:
            creators: Creation operators (rows)
            annihilators: Annihilation operators (columns)

        Returns:
            Tensor of shape (len(creators), len(annihilators))
        """
        n_rows, n_cols = len(creators), len(annihilators)
        if n_rows == 0 or n_cols == 0:
            return torch.zeros((n_rows, n_cols), dtype=self.dtype)
        t_row = torch.tensor([op.time for op in creators], dtype=torch.float64)
        t_col = torch.tensor([op.time for op in annihilators], dtype=torch.float64)
        f_row = torch.tensor([op.flavor for op in creators], dtype=torch.long)
        f_col = torch.tensor([op.flavor for op in annihilators], dtype=torch.long)
        return self.evaluate(f_row[:, None], f_col[None, :], t_row[:, None] - t_col[None, :])

    def evaluate(self, flavor1: torch.Tensor, flavor2: torch.Tensor, tau: torch.Tensor) -> torch.Tensor:
        """Vectorized Δ for broadcastable flavor and time tensors, -β < τ < β."""
        flavor1, flavor2, tau = torch.broadcast_tensors(flavor1, flavor2, tau)
        negative = tau < 0.0
        tau = torch.where(negative, tau + self.beta, tau)
        idx = torch.clamp((tau / self._dtau).long(), 0, self.n_tau - 1)
        dx = tau - idx.to(torch.float64) * self._dtau
        values = self.data[idx, flavor1, flavor2] + dx.to(self.dtype) * self._slope[idx, flavor1, flavor2]
        return torch.where(negative, -values, values)

    def connected_blocks(self, tol: float = 1e-12) -> List[List[int]]:
        """Flavor groups connected by non-zero hybridization (union-find)."""
        parent = list(range(self.n_flavors))

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        max_abs = self.data.abs().amax(dim=0)
        for a in range(self.n_flavors):
            for b in range(self.n_flavors):
                if a != b and max_abs[a, b].item() > tol:
                    ra, rb = find(a), find(b)
                    if ra != rb:
                        parent[ra] = rb
        groups = {}
        for f in range(self.n_flavors):
            groups.setdefault(find(f), []).append(f)
        return sorted(groups.values())

    def tau_mesh(self) -> torch.Tensor:
        return torch.linspace(0.0, self.beta, self.n_tau + 1, dtype=torch.float64)

    def __repr__(self) -> str:
        return f"HybridizationFunction(beta={self.beta}, n_tau={self.n_tau}, n_flavors={self.n_flavors})"
