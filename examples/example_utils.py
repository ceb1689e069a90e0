"""Shared utilities for cthybTensor examples.

This module provides common functions used across the example and test
scripts to reduce code duplication and ensure consistent behavior.

Key utilities:
- Path setup: Automatic src/ path configuration
- Device management: Consistent device selection with logging
- Model builders: Anderson impurity models with discrete baths
- Configuration builders: Valid operator strings for trace tests
- Fake wall clock for time-driven runs
- Plotting helpers: Consistent figure setup and saving (matplotlib optional)
"""

from pathlib import Path
import sys
from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch

# =============================================================================
# Path Setup (auto-run on import)
# =============================================================================


def setup_project_path() -> None:
    """Add src/ directory to Python path for imports.

    This function runs automatically when example_utils is imported,
    eliminating the need for manual sys.path.insert() calls in examples.
    """
    src_path = Path(__file__).parent.parent / "src"
    if str(src_path) not in sys.path:
        sys.path.insert(0, str(src_path))


# Auto-run path setup on module import
setup_project_path()

from cthybTensor.core import get_device
from cthybTensor.ctqmc import Configuration, annihilator, creator
from cthybTensor.manybody import HybridizationFunction, ImpurityModel

# =============================================================================
# Device Management
# =============================================================================


def get_example_device(description: str = "") -> torch.device:
    """Get device for computation with optional description logging.

    Args:
        description: Optional description to print with device info

    Returns:
        torch.device: 'cuda' if available, else 'cpu'
    """
    device = get_device()
    if description:
        print(f"Using device: {device} - {description}")
    return device

# =============================================================================
# Model Builders
# =============================================================================


def build_single_level_bath(
    beta: float,
    n_flavors: int,
    V: float = 1.0,
    energies: Sequence[float] = (0.0,),
    n_tau: int = 1000,
) -> HybridizationFunction:
    """Flavor-diagonal hybridization with the same bath for every flavor.

    Each flavor couples to its own copy of the bath levels `energies`
    with strength V.

    Args:
        beta: Inverse temperature
        n_flavors: Number of flavors F
        V: Hybridization strength
        energies: Bath energies of one flavor
        n_tau: Number of τ intervals

    Returns:
        HybridizationFunction with shape (n_tau + 1, F, F)
    """
    n_bath = len(energies)
    all_energies = list(energies) * n_flavors
    couplings = torch.zeros((n_flavors, n_flavors * n_bath), dtype=torch.float64)
    for f in range(n_flavors):
        couplings[f, f * n_bath:(f + 1) * n_bath] = V
    return HybridizationFunction.from_bath(beta, n_tau, all_energies, couplings)


def build_mixed_bath(beta: float, n_tau: int = 1000, n_levels: int = 9) -> HybridizationFunction:
    """Two flavors coupled to shared bath levels in [-2, 2] (off-diagonal Δ)."""
    k = torch.arange(n_levels, dtype=torch.float64)
    couplings = 0.5 * torch.stack([torch.cos(k), torch.sin(k + 0.5)])
    energies = torch.linspace(-2.0, 2.0, n_levels, dtype=torch.float64)
    return HybridizationFunction.from_bath(beta, n_tau, energies.tolist(), couplings)


def build_hubbard_atom(U: float = 2.0, mu: Optional[float] = None, sites: int = 1, spins: int = 2) -> ImpurityModel:
    """Hubbard atom, half filling (μ = U/2) unless mu is given."""
    if mu is None:
        mu = 0.5 * U
    return ImpurityModel.hubbard(sites, spins, U, mu=mu)

# =============================================================================
# Configuration Builders
# =============================================================================


def random_segment_operators(
    rng: np.random.Generator,
    beta: float,
    n_flavors: int,
    n_pairs_per_flavor: int,
) -> List:
    """Alternating c†, c per flavor at sorted random times.

    Strings of this form have a non-vanishing trace for density-density
    interactions.
    """
    ops = []
    for f in range(n_flavors):
        times = np.sort(rng.uniform(0.0, beta, 2 * n_pairs_per_flavor))
        for i, t in enumerate(times):
            ops.append(creator(float(t), f) if i % 2 == 0 else annihilator(float(t), f))
    return ops


def build_configuration(beta: float, model, hybridization, operators: Sequence = (), window=None) -> Configuration:
    """Configuration holding the given hybridized operators, rebuilt from scratch."""
    config = Configuration(beta, model, hybridization)
    config.hyb_operators.update(added=operators)
    config.operators.update(added=operators)
    config.rebuild(window)
    return config

# =============================================================================
# Fake Wall Clock
# =============================================================================


class FakeClock:
    """Wall clock advanced by hand (e.g. from a batch callback).

    With tick > 0 every reading also advances the clock by tick seconds.
    """

    def __init__(self, start: float = 0.0, tick: float = 0.0) -> None:
        self.now = start
        self.tick = tick

    def __call__(self) -> float:
        now = self.now
        self.now += self.tick
        return now

    def advance(self, seconds: float = 1.0) -> None:
        self.now += seconds


def advancing_callback(clock: FakeClock, seconds: float = 1.0, log: Optional[list] = None):
    """Batch callback advancing `clock`; optionally logs (n_sweeps, thermalized)."""
    def callback(walker) -> None:
        if log is not None:
            log.append((walker.n_sweeps, walker.thermalized))
        clock.advance(seconds)
    return callback

# =============================================================================
# Reference Results
# =============================================================================


def noninteracting_greens_function(
    tau: torch.Tensor,
    beta: float,
    energies: Sequence[float],
    V: float,
    eps_d: float = 0.0,
) -> torch.Tensor:
    """Exact G(τ) of a level at eps_d hybridized with bath levels `energies`.

    The single-particle Hamiltonian of impurity plus bath has eigenpairs
    (E_m, φ_m), and

        G(τ) = -Σ_m |φ_m(0)|² e^{-E_m τ} / (1 + e^{-β E_m})
    """
    n = len(energies) + 1
    h = torch.zeros((n, n), dtype=torch.float64)
    h[0, 0] = eps_d
    for k, e in enumerate(energies):
        h[k + 1, k + 1] = e
        h[0, k + 1] = h[k + 1, 0] = V
    E, phi = torch.linalg.eigh(h)
    weight = phi[0, :] ** 2
    return -torch.sum(
        weight[None, :] * torch.exp(-E[None, :] * tau[:, None]) / (1.0 + torch.exp(-beta * E))[None, :],
        dim=1,
    )


def atomic_level_legendre(beta: float, eps: float, n_legendre: int, n_quad: int = 200) -> Tuple[torch.Tensor, torch.Tensor]:
    """Legendre coefficients of G(τ) = -e^{-ετ}/(1 + e^{-βε}) by Gauss-Legendre quadrature.

    Returns:
        (G_l of shape (L, 1, 1), quadrature nodes τ)
    """
    x, w = np.polynomial.legendre.leggauss(n_quad)
    tau = 0.5 * beta * (x + 1.0)
    g = -np.exp(-eps * tau) / (1.0 + np.exp(-beta * eps))
    P = np.polynomial.legendre.legvander(x, n_legendre - 1)
    sqrt = np.sqrt(2.0 * np.arange(n_legendre) + 1.0)
    G_l = sqrt * (0.5 * beta) * (P * (w * g)[:, None]).sum(axis=0)
    return torch.from_numpy(G_l).reshape(n_legendre, 1, 1), torch.from_numpy(tau)

# =============================================================================
# Plotting Helpers
# =============================================================================


def setup_example_figure(plot_type: str = 'single', **kwargs) -> tuple:
    """Set up matplotlib figure with standardized sizing.

    Args:
        plot_type: Type of plot ('single' or 'dual')
        **kwargs: Additional arguments (e.g., figsize overrides)

    Returns:
        tuple: (fig, ax) for single panel, (fig, axes) for multi-panel
    """
    import matplotlib.pyplot as plt

    sizes = {'single': (6, 4.5), 'dual': (11, 4.5)}
    figsize = kwargs.get('figsize', sizes.get(plot_type, sizes['single']))
    if plot_type == 'dual':
        return plt.subplots(1, 2, figsize=figsize)
    return plt.subplots(figsize=figsize)


def save_example_figure(fig, filename: str, dpi: int = 150, tight: bool = True) -> None:
    """Save figure with standard settings.

    Args:
        fig: matplotlib Figure object
        filename: Output filename
        dpi: Resolution (default 150)
        tight: Whether to apply tight_layout (default True)
    """
    if tight:
        fig.tight_layout()
    fig.savefig(filename, dpi=dpi, bbox_inches='tight')
    print(f"Saved: {filename}")
