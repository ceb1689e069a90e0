#!/usr/bin/env python3
"""
Test Legendre post-processing:
- Constant G(τ) = -1/2 (only G_0 non-zero), moved to the result device
- Atomic level: G(iωₙ) = 1/(iωₙ - ε) from quadrature coefficients
- Two-time correlator on a bosonic mesh
- LegendreTransformer matrix elements
- Fidelity susceptibility from the expansion-order split at β/2
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import math

import numpy as np
import pytest
import torch

from cthybTensor.core import get_device
from cthybTensor.ctqmc import annihilator, creator
from cthybTensor.ctqmc.measurements import ExpansionOrderSplit
from cthybTensor.manybody import (
    LegendreTransformer,
    fidelity_susceptibility,
    legendre_to_matsubara,
    legendre_to_tau,
    legendre_values,
    matsubara_frequencies,
    tau_mesh,
    two_time_g2_to_tau,
)
from example_utils import (
    atomic_level_legendre,
    build_configuration,
    build_hubbard_atom,
    build_single_level_bath,
)


def test_constant_greens_function():
    """G_0 = -β/2 represents G(τ) = -1/2 and G(iωₙ) = -i/ωₙ."""
    print("=" * 70)
    print("Test 1: Constant Green's Function")
    print("=" * 70)

    beta = 4.0
    G_l = torch.zeros((10, 2, 2), dtype=torch.float64)
    G_l[0, 0, 0] = G_l[0, 1, 1] = -0.5 * beta

    G_tau = legendre_to_tau(G_l, beta, n_tau=100, flavor_names=["up", "dn"])
    print(f"\n{G_tau}")
    assert G_tau.labels == ["tau", "orb_i", "orb_j"]
    assert G_tau.shape == (101, 2, 2)
    assert G_tau.flavor_names == ["up", "dn"]
    assert torch.allclose(G_tau.mesh, tau_mesh(beta, 100))
    assert torch.allclose(G_tau.tensor[:, 0, 0], torch.full((101,), -0.5, dtype=torch.float64))
    assert torch.all(G_tau.tensor[:, 0, 1] == 0)

    G_iwn = legendre_to_matsubara(G_l, beta, n_matsubara=20)
    assert G_iwn.labels == ["iwn", "orb_i", "orb_j"]
    wn = matsubara_frequencies(beta, 20)
    assert math.isclose(wn[0].item(), math.pi / beta)
    expected = -1j / wn.to(torch.complex128)
    assert torch.allclose(G_iwn.tensor[:, 1, 1], expected, atol=1e-12)

    # results move to the post-processing device with labels and mesh intact
    device = get_device()
    moved = G_tau.to(device)
    assert moved.tensor.device.type == device.type
    assert moved.labels == G_tau.labels and moved.flavor_names == ["up", "dn"]
    assert torch.allclose(moved.mesh.cpu(), G_tau.mesh)

    print("\n✅ Constant Green's function test PASSED")


def test_atomic_level():
    """Quadrature coefficients of an atomic level reproduce 1/(iωₙ - ε)."""
    print("\n" + "=" * 70)
    print("Test 2: Atomic Level")
    print("=" * 70)

    beta, eps, n_legendre = 10.0, 0.5, 40
    G_l, _ = atomic_level_legendre(beta, eps, n_legendre)
    print(f"\n|G_l| for l = 0, 10, 20, 39: "
          f"{[f'{abs(G_l[l, 0, 0].item()):.2e}' for l in (0, 10, 20, 39)]}")
    # coefficients of a smooth G(τ) decay faster than any power of l
    assert abs(G_l[-1, 0, 0].item()) < 1e-12

    G_iwn = legendre_to_matsubara(G_l, beta, n_matsubara=50)
    wn = matsubara_frequencies(beta, 50).to(torch.complex128)
    expected = 1.0 / (1j * wn - eps)
    error = torch.max(torch.abs(G_iwn.tensor[:, 0, 0] - expected)).item()
    print(f"max |G(iωₙ) - 1/(iωₙ - ε)| = {error:.2e}")
    assert error < 1e-8

    G_tau = legendre_to_tau(G_l, beta, n_tau=200)
    tau = G_tau.mesh
    exact = -torch.exp(-eps * tau) / (1.0 + math.exp(-beta * eps))
    assert torch.allclose(G_tau.tensor[:, 0, 0], exact, atol=1e-8)
    # G(0⁺) + G(β⁻) = -1
    assert math.isclose((G_tau.tensor[0, 0, 0] + G_tau.tensor[-1, 0, 0]).item(), -1.0, rel_tol=1e-8)

    print("\n✅ Atomic level test PASSED")


def test_two_time_g2_to_tau():
    """χ_0 = β gives χ(τ) = 1 on every τ point, including the clipped edges."""
    print("\n" + "=" * 70)
    print("Test 3: Two-Time Correlator")
    print("=" * 70)

    beta = 3.0
    chi_l = torch.zeros((8, 2, 2, 2, 2), dtype=torch.complex128)
    chi_l[0, 0, 0, 1, 1] = beta
    chi_l[1, 1, 1, 0, 0] = beta

    chi = two_time_g2_to_tau(chi_l, beta, n_tau=31)
    assert chi.labels == ["tau", "flavor_a", "flavor_b", "flavor_c", "flavor_d"]
    assert chi.shape == (31, 2, 2, 2, 2)
    assert math.isclose(chi.mesh[-1].item(), beta)
    assert torch.allclose(chi.tensor[:, 0, 0, 1, 1].real, torch.ones(31, dtype=torch.float64))

    # P_1 term: √3/β · β · x(τ), antisymmetric about β/2
    linear = chi.tensor[:, 1, 1, 0, 0].real
    assert torch.allclose(linear, -linear.flip(0), atol=1e-7)
    assert math.isclose(linear[-1].item(), math.sqrt(3.0), rel_tol=1e-6)

    with pytest.raises(ValueError):
        two_time_g2_to_tau(chi_l, beta, n_tau=1)

    print("\n✅ Two-time correlator test PASSED")


def test_legendre_transformer():
    """T_nl for l = 0 and the Legendre values at the interval ends."""
    print("\n" + "=" * 70)
    print("Test 4: Legendre Transformer")
    print("=" * 70)

    transformer = LegendreTransformer(n_matsubara=5, n_legendre=6)
    assert transformer.Tnl.shape == (5, 6)
    assert transformer.Tnl.dtype == torch.complex128

    # T_n0 = 2i / ((2n+1)π)
    n = np.arange(5)
    expected = 2j / ((2 * n + 1) * math.pi)
    assert np.allclose(transformer.Tnl[:, 0].numpy(), expected, atol=1e-14)
    assert torch.allclose(transformer.sqrt_2l_1 ** 2, 2.0 * torch.arange(6, dtype=torch.float64) + 1.0)

    P = transformer.compute_legendre(1.0)
    assert P.shape == (6,)
    assert torch.allclose(P, torch.ones(6, dtype=torch.float64))
    P = legendre_values(torch.tensor([-1.0, 0.0]), 4)
    assert P.shape == (2, 4)
    assert torch.allclose(P[0], torch.tensor([1.0, -1.0, 1.0, -1.0], dtype=torch.float64))
    assert torch.allclose(P[1], torch.tensor([1.0, 0.0, -0.5, 0.0], dtype=torch.float64))

    with pytest.raises(ValueError):
        LegendreTransformer(0, 5)

    print("\n✅ Legendre transformer test PASSED")


def test_fidelity_susceptibility():
    """⟨k_L k_R⟩ and ⟨k⟩ from operators on both halves of [0, β)."""
    print("\n" + "=" * 70)
    print("Test 5: Fidelity Susceptibility")
    print("=" * 70)

    beta = 5.0
    model = build_hubbard_atom(U=2.0)
    hyb = build_single_level_bath(beta, 2, V=1.0)
    # k_L = 3 (0.3, 0.7, 2.0), k_R = 3 (2.5, 3.0, 4.0); β/2 belongs to the right half
    operators = [creator(0.3, 0), annihilator(0.7, 0), creator(3.0, 0), annihilator(4.0, 0),
                 creator(2.0, 1), annihilator(2.5, 1)]
    config = build_configuration(beta, model, hyb, operators)
    empty = build_configuration(beta, model, hyb)

    split = ExpansionOrderSplit(beta)
    split.measure(config, 1.0)
    split.measure(empty, 1.0)
    other = ExpansionOrderSplit(beta)
    other.measure(config, 1.0)
    split.merge(other)

    averages = split.result(3.0)
    print(f"\n<kL kR> = {averages['kLkR']}, <k> = {averages['k']}")
    assert averages["kLkR"] == pytest.approx(6.0)
    assert averages["k"] == pytest.approx(4.0)
    assert fidelity_susceptibility(averages["kLkR"], averages["k"]) == pytest.approx(1.0)

    # ½ (⟨k_L k_R⟩ − ¼ ⟨k⟩²) vanishes for k_L = k_R = k/2 without fluctuations
    assert fidelity_susceptibility(4.0, 4.0) == pytest.approx(0.0)
    assert fidelity_susceptibility(3.0 + 1.0j, 2.0) == pytest.approx(1.0 + 0.5j)

    print("\n✅ Fidelity susceptibility test PASSED")


def main():
    print("\n" + "=" * 70)
    print("Legendre Post-Processing Tests")
    print("=" * 70)

    test_constant_greens_function()
    test_atomic_level()
    test_two_time_g2_to_tau()
    test_legendre_transformer()
    test_fidelity_susceptibility()

    print("\n" + "=" * 70)
    print("All tests PASSED ✅")
    print("=" * 70)


if __name__ == "__main__":
    main()
