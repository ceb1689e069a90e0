"""Local impurity Hamiltonian in its eigenbasis.

The hybridization expansion needs, for the local (impurity) Hamiltonian
H_loc on the 2^F dimensional Fock space,

    - its eigenvalues Eₙ (shifted so that min Eₙ = 0),
    - the matrices of c†_f and c_f in the eigenbasis,
    - imaginary-time propagators exp(-τ H_loc) = diag(exp(-τ Eₙ)).

The Fock basis uses one bit per flavor (bit f = occupation of flavor f) and
the Jordan-Wigner sign convention

    c†_f |…n_f=0…⟩ = (-1)^{Σ_{g<f} n_g} |…n_f=1…⟩.

Flavor index: f = spin * sites + site.

References:
    - Werner & Millis, PRB 74, 155107 (2006): matrix formulation of CT-HYB
    - Gull et al., Rev. Mod. Phys. 83, 349 (2011), Sec. III.B
"""

from typing import List, Optional, Sequence

import torch

from cthybTensor.core.scaled import ScaledMatrix
from cthybTensor.core.device import result_dtype


def fock_creation_operators(n_flavors: int) -> List[torch.Tensor]:
    """Jordan-Wigner creation operators c†_f on the 2^F Fock space.

    Args:
        n_flavors: Number of flavors F

    Returns:
        List of F real matrices, shape (2^F, 2^F)
    """
    dim = 1 << n_flavors
    ops = []
    for f in range(n_flavors):
        mat = torch.zeros((dim, dim), dtype=torch.float64)
        for state in range(dim):
            if (state >> f) & 1:
                continue
            n_below = bin(state & ((1 << f) - 1)).count("1")
            mat[state | (1 << f), state] = -1.0 if n_below % 2 else 1.0
        ops.append(mat)
    return ops


class ImpurityModel:
    """Impurity model collaborator of the CT-HYB core.

    Attributes:
        n_flavors: Number of flavors F
        dim: Fock-space dimension 2^F
        eigenvalues: Shifted eigenvalues, shape (dim,)
        ground_state_energy: Energy subtracted from the spectrum
        rotation: Single-particle rotation from the model basis to the
                  original basis, shape (F, F)
        flavor_names: Optional flavor labels
    """

    def __init__(
        self,
        hamiltonian: torch.Tensor,
        n_flavors: int,
        rotation: Optional[torch.Tensor] = None,
        flavor_names: Optional[List[str]] = None,
    ) -> None:
        """Diagonalize a Fock-space Hamiltonian.

        Args:
            hamiltonian: H_loc in the occupation basis, shape (2^F, 2^F)
            n_flavors: Number of flavors F
            rotation: Basis rotation for G in the original basis (default identity)
            flavor_names: Optional flavor labels

        Raises:
            ValueError: If shapes are inconsistent or H is not Hermitian
        """
        dim = 1 << n_flavors
        if hamiltonian.shape != (dim, dim):
            raise ValueError(
                f"Hamiltonian shape {tuple(hamiltonian.shape)} does not match "
                f"2^F = {dim} for F = {n_flavors}"
            )
        if not torch.allclose(hamiltonian, hamiltonian.conj().T, atol=1e-12):
            raise ValueError("Local Hamiltonian must be Hermitian")

        self.n_flavors = n_flavors
        self.dim = dim
        self.flavor_names = flavor_names
        self.dtype = result_dtype(hamiltonian)
        self.rotation = (
            rotation if rotation is not None
            else torch.eye(n_flavors, dtype=torch.complex128)
        )
        if self.rotation.shape != (n_flavors, n_flavors):
            raise ValueError(f"rotation must have shape ({n_flavors}, {n_flavors})")

        H = hamiltonian.to(self.dtype)
        energies, vectors = torch.linalg.eigh(H)
        self.ground_state_energy = energies[0].item()
        self.eigenvalues = (energies - energies[0]).to(torch.float64)
        self.eigenvectors = vectors

        cdag_fock = [op.to(self.dtype) for op in fock_creation_operators(n_flavors)]
        Vh = vectors.conj().T
        self._creation = [Vh @ op @ vectors for op in cdag_fock]
        self._annihilation = [Vh @ op.conj().T @ vectors for op in cdag_fock]
        self._density = [Vh @ (op @ op.conj().T) @ vectors for op in cdag_fock]

    @classmethod
    def hubbard(
        cls,
        sites: int,
        spins: int,
        U: float,
        mu: float = 0.0,
        U_prime: float = 0.0,
        one_body: Optional[torch.Tensor] = None,
        **kwargs,
    ) -> "ImpurityModel":
        """Multi-orbital Hubbard atom.

        H = Σ_ab h_ab c†_a c_b + U Σ_i n_i↑ n_i↓ + U' Σ_{i<j,σσ'} n_iσ n_jσ' − μ Σ_a n_a

        Args:
            sites: Number of orbitals per spin
            spins: 1 or 2
            U: On-site (intra-orbital) interaction
            mu: Chemical potential
            U_prime: Inter-orbital density-density interaction
            one_body: One-body matrix h, shape (F, F) (default zero)

        Returns:
            ImpurityModel instance
        """
        n_flavors = sites * spins
        cdag = fock_creation_operators(n_flavors)
        dtype = torch.float64
        if one_body is not None:
            if one_body.shape != (n_flavors, n_flavors):
                raise ValueError(f"one_body must have shape ({n_flavors}, {n_flavors})")
            dtype = result_dtype(one_body)
        cdag = [op.to(dtype) for op in cdag]
        dim = 1 << n_flavors
        H = torch.zeros((dim, dim), dtype=dtype)
        n_ops = [op @ op.T for op in cdag]

        if one_body is not None:
            h = one_body.to(dtype)
            for a in range(n_flavors):
                for b in range(n_flavors):
                    if h[a, b] != 0:
                        H = H + h[a, b] * (cdag[a] @ cdag[b].T)

        def flavor(spin: int, site: int) -> int:
            return spin * sites + site

        if spins == 2:
            for i in range(sites):
                H = H + U * (n_ops[flavor(0, i)] @ n_ops[flavor(1, i)])
        for i in range(sites):
            for j in range(i + 1, sites):
                for s1 in range(spins):
                    for s2 in range(spins):
                        H = H + U_prime * (n_ops[flavor(s1, i)] @ n_ops[flavor(s2, j)])
        for a in range(n_flavors):
            H = H - mu * n_ops[a]

        return cls(H, n_flavors, **kwargs)

    def operator_matrix(self, kind: int, flavor: int) -> torch.Tensor:
        """Matrix of c†_f (kind=0) or c_f (kind=1) in the eigenbasis."""
        if kind == 0:
            return self._creation[flavor]
        return self._annihilation[flavor]

    def density_matrix(self, flavor: int) -> torch.Tensor:
        """Matrix of n_f in the eigenbasis."""
        return self._density[flavor]

    def propagator(self, tau: float) -> torch.Tensor:
        """Diagonal of exp(-τ H_loc) in the eigenbasis, shape (dim,)."""
        return torch.exp(-tau * self.eigenvalues).to(self.dtype)

    def trace_contribution(
        self,
        operators: Sequence,
        tau_low: float,
        tau_high: float,
    ) -> ScaledMatrix:
        """Time-ordered product over a segment [tau_low, tau_high).

        Returns e^{-(τ_high-τ_k)H} O_k … O_1 e^{-(τ_1-τ_low)H} for the
        operators of the segment given in ascending time order.

        Args:
            operators: Operators with attributes time, kind, flavor
            tau_low: Lower edge of the segment
            tau_high: Upper edge of the segment

        Returns:
            ScaledMatrix with the segment product
        """
        result = ScaledMatrix.identity(self.dim, self.dtype)
        tau_prev = tau_low
        for op in operators:
            result = result.scale_rows(self.propagator(op.time - tau_prev))
            result = ScaledMatrix(self.operator_matrix(int(op.kind), op.flavor) @ result.matrix,
                                  result.exponent)
            tau_prev = op.time
            if result.is_zero():
                return result
        return result.scale_rows(self.propagator(tau_high - tau_prev))

    def partition_function(self, beta: float) -> float:
        """Tr exp(-β H_loc) with the shifted spectrum."""
        return torch.sum(torch.exp(-beta * self.eigenvalues)).item()

    def thermal_density(self, beta: float) -> torch.Tensor:
        """Exact ⟨n_f⟩ of the isolated atom, shape (F,)."""
        weights = torch.exp(-beta * self.eigenvalues)
        Z = torch.sum(weights)
        return torch.stack([
            torch.sum(weights * torch.diagonal(self._density[f]).real.to(torch.float64)) / Z
            for f in range(self.n_flavors)
        ])

    def __repr__(self) -> str:
        return f"ImpurityModel(n_flavors={self.n_flavors}, dim={self.dim}, dtype={self.dtype})"
