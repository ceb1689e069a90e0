#!/usr/bin/env python3
"""
Test the CT-HYB walker:
- SolverParameters validation and upper-case aliases
- Wall-clock thermalization gate
- Debug run with every worm space and sanity checks after each sweep
- Non-interacting level against the exact G(τ)
- Local, global and measurement timing regions
- Flat histogram over Z and G1 spaces, worm volume and worm G_l
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import numpy as np
import pytest
import torch

from cthybTensor.core import SolverParameters
from cthybTensor.ctqmc import ConfigSpace, HybridizationExpansionWalker, merge_walker_results
from cthybTensor.manybody import ImpurityModel, legendre_to_tau
from example_utils import (
    FakeClock,
    advancing_callback,
    build_hubbard_atom,
    build_mixed_bath,
    build_single_level_bath,
    noninteracting_greens_function,
)


def test_parameters():
    """Upper-case keys, defaults and range checks."""
    print("=" * 70)
    print("Test 1: Solver Parameters")
    print("=" * 70)

    params = SolverParameters.from_dict({
        "BETA": 20.0,
        "SITES": 2,
        "SPINS": 2,
        "N_LEGENDRE_MEASUREMENT": 30,
        "MEASURE_G1": True,
        "TIME_LIMIT": 100.0,
        "unknown_key": 1,
    })
    print(f"\n{params}")
    assert params.beta == 20.0 and params.n_flavors == 4
    assert params.n_legendre_g1 == 30
    assert params.thermalization_time == pytest.approx(25.0)
    assert params.worm_spaces() == ["G1"]
    assert params.validate() is params
    assert SolverParameters.from_dict(params.as_dict()) == params

    bad = [
        {"BETA": -1.0},
        {"N_MEAS": 0},
        {"TIME_LIMIT": 10.0, "THERMALIZATION_TIME": 9.5},
        {"SPINS": 2, "SWAP_VECTOR": [[0, 0]]},
        {"flat_histogram_flatness": 1.0},
    ]
    for d in bad:
        with pytest.raises(ValueError):
            SolverParameters.from_dict(d).validate()

    print("\n✅ Solver parameters test PASSED")


def _walker(clock, beta=5.0, **overrides):
    settings = dict(beta=beta, sites=1, spins=2, n_meas=2, time_limit=5.0,
                    thermalization_time=2.0, verbose=False, seed=7)
    settings.update(overrides)
    params = SolverParameters(**settings)
    model = build_hubbard_atom(U=2.0)
    hyb = build_single_level_bath(beta, 2, V=1.0, energies=[-1.0, 0.5, 1.0])
    return HybridizationExpansionWalker(params, model, hyb, clock=clock)


def test_thermalization_gate():
    """Learning stops and measurements start once THERMALIZATION_TIME has elapsed."""
    print("\n" + "=" * 70)
    print("Test 2: Thermalization Gate")
    print("=" * 70)

    clock = FakeClock()
    log = []
    walker = _walker(clock)
    results = walker.run(advancing_callback(clock, 1.0, log))
    print(f"\nBatches (n_sweeps, thermalized): {log}")

    assert log == [(2, False), (4, False), (6, True), (8, True), (10, True)]
    assert results["n_sweeps"] == 10
    assert results["thermalized"]
    assert results["n_measurements"] == 6
    assert results["visits"] == {"Z_FUNCTION": 6}
    assert walker.flat_histogram.frozen and walker.window_sizes._frozen_size is not None
    assert walker.shift_widths.frozen
    assert results["sign"] == pytest.approx(1.0)
    assert results["G_l"].shape == (walker.params.n_legendre_g1, 2, 2)
    assert set(results["timings"]) == {"local", "global", "measurement"}
    assert set(results["timings_per_sweep"]) == set(results["timings"])
    assert walker.config.sanity_check(walker.window) == []

    print("\n✅ Thermalization gate test PASSED")


def test_collaborator_mismatch():
    """Model and hybridization must agree with BETA and SITES × SPINS."""
    print("\n" + "=" * 70)
    print("Test 3: Collaborator Mismatch")
    print("=" * 70)

    params = SolverParameters(beta=5.0, sites=1, spins=1, verbose=False)
    model = build_hubbard_atom(U=2.0)
    hyb = build_single_level_bath(5.0, 2, V=1.0)
    with pytest.raises(ValueError):
        HybridizationExpansionWalker(params, model, hyb)

    params = SolverParameters(beta=4.0, sites=1, spins=2, verbose=False)
    with pytest.raises(ValueError):
        HybridizationExpansionWalker(params, model, hyb)

    params = SolverParameters(beta=5.0, sites=1, spins=2, verbose=False)
    with pytest.raises(ValueError):
        HybridizationExpansionWalker(params, model, build_single_level_bath(5.0, 1, V=1.0))

    # hybridization grid must match N_TAU_HYB
    params = SolverParameters(beta=5.0, sites=1, spins=2, n_tau_hyb=500, verbose=False)
    with pytest.raises(ValueError):
        HybridizationExpansionWalker(params, model, hyb)

    print("\n✅ Collaborator mismatch test PASSED")


def test_debug_run_all_worm_spaces():
    """Every update keeps the state consistent (checked after each sweep)."""
    print("\n" + "=" * 70)
    print("Test 4: Debug Run With All Worm Spaces")
    print("=" * 70)

    beta = 4.0
    params = SolverParameters(
        beta=beta, sites=1, spins=2, n_meas=3, time_limit=4.0, thermalization_time=1.0,
        multi_pair_ins_rem=2, n_global_updates=2, swap_vector=[[1, 0]],
        measure_g1=True, measure_two_time_g2=True,
        measure_equal_time_g1=True, measure_equal_time_g2=True,
        sanity_check_interval=1, debug=True, verbose=False, seed=3,
    )
    model = build_hubbard_atom(U=2.0)
    hyb = build_mixed_bath(beta)
    clock = FakeClock()
    walker = HybridizationExpansionWalker(params, model, hyb, clock=clock)
    assert walker.spaces == [ConfigSpace.Z_FUNCTION, ConfigSpace.G1, ConfigSpace.TWO_TIME_G2,
                             ConfigSpace.EQUAL_TIME_G1, ConfigSpace.EQUAL_TIME_G2]

    results = walker.run(advancing_callback(clock, 1.0))
    print(f"\nVisits: {results['visits']}")
    print(f"Acceptance: { {k: round(v, 3) for k, v in results['acceptance_rates'].items()} }")

    assert results["n_sweeps"] == 12
    assert sum(results["visits"].values()) == results["n_measurements"] == 9
    assert set(results["visits"]) == {s.name for s in walker.spaces}
    assert results["two_time_G2_l"].shape == (params.n_legendre_two_time_g2, 2, 2, 2, 2)
    assert results["equal_time_G2"].shape == (2, 2, 2, 2)
    assert walker.check_sanity()

    merged = merge_walker_results([walker, walker])
    assert merged["n_walkers"] == 2
    assert merged["n_measurements"] == 2 * results["n_measurements"]
    assert torch.allclose(merged["G_l"], results["G_l"])

    print("\n✅ Debug run test PASSED")


def test_noninteracting_level():
    """A half-filled non-interacting level reproduces the exact G(τ)."""
    print("\n" + "=" * 70)
    print("Test 5: Non-Interacting Level")
    print("=" * 70)

    beta, V = 5.0, 0.6
    energies = [-1.0, 0.0, 1.0]
    params = SolverParameters(
        beta=beta, sites=1, spins=1, n_meas=10, time_limit=200.0, thermalization_time=30.0,
        n_legendre_g1=12, verbose=False, seed=11,
    )
    model = ImpurityModel.hubbard(1, 1, U=0.0, mu=0.0)
    hyb = build_single_level_bath(beta, 1, V=V, energies=energies)
    clock = FakeClock()
    walker = HybridizationExpansionWalker(params, model, hyb, clock=clock)
    results = walker.run(advancing_callback(clock, 1.0))

    n = float(np.real(results["n"][0].item()))
    G_tau = legendre_to_tau(results["G_l"], beta, 50)
    exact = noninteracting_greens_function(G_tau.mesh, beta, energies, V)
    error = torch.max(torch.abs(G_tau.tensor[:, 0, 0].real - exact)).item()
    print(f"\n{results['n_measurements']} measurements, order histogram {results['order_histogram'][0, :6]}")
    print(f"n = {n:.4f} (exact 0.5), max |G - G_exact| = {error:.4f}")

    assert results["sign"] == pytest.approx(1.0)
    assert abs(n - 0.5) < 0.07
    assert error < 0.1
    # G(τ) < 0 inside the interval
    assert torch.all(G_tau.tensor[5:-5, 0, 0].real < 0)

    print("\n✅ Non-interacting level test PASSED")


def test_timing_regions():
    """Local updates, global updates and measurements are timed separately."""
    print("\n" + "=" * 70)
    print("Test 6: Timing Regions")
    print("=" * 70)

    # every clock reading advances one second: one second per region entered
    clock = FakeClock(tick=1.0)
    walker = _walker(clock, n_global_updates=2)
    assert walker.timings.seconds == {"local": 0.0, "global": 0.0, "measurement": 0.0}

    walker.sweep()
    assert walker.timings.seconds == {"local": 1.0, "global": 0.0, "measurement": 0.0}
    walker.sweep()
    walker.measure()
    print(f"\nTimings after two sweeps: {walker.timings.seconds}")
    assert walker.timings.seconds == {"local": 2.0, "global": 1.0, "measurement": 1.0}

    results = walker.results()
    assert results["timings_per_sweep"] == {"local": 1.0, "global": 0.5, "measurement": 0.5}

    merged = merge_walker_results([walker, walker])
    assert merged["timings"] == {"local": 4.0, "global": 2.0, "measurement": 2.0}
    assert merged["timings_per_sweep"] == results["timings_per_sweep"]

    print("\n✅ Timing regions test PASSED")


def test_flat_histogram_worm_volume():
    """Z and G1 are visited equally often; visits and G1_l give the worm volume."""
    print("\n" + "=" * 70)
    print("Test 7: Flat Histogram and G1 Worm Volume")
    print("=" * 70)

    beta, V = 5.0, 1.0
    energies = [-1.0, 0.0, 1.0]
    params = SolverParameters(
        beta=beta, sites=1, spins=1, n_meas=40, time_limit=400.0, thermalization_time=200.0,
        n_legendre_g1=12, measure_g1=True, verbose=False, seed=5,
    )
    model = ImpurityModel.hubbard(1, 1, U=0.0, mu=0.0)
    hyb = build_single_level_bath(beta, 1, V=V, energies=energies)
    clock = FakeClock()
    walker = HybridizationExpansionWalker(params, model, hyb, clock=clock)
    results = walker.run(advancing_callback(clock, 1.0))

    visits = np.array([results["visits"]["Z_FUNCTION"], results["visits"]["G1"]], dtype=float)
    deviation = np.max(np.abs(visits / visits.mean() - 1.0))
    print(f"\nVisits {results['visits']}, weights {results['space_weights']}")
    print(f"Flat histogram stages {walker.flat_histogram.n_stages}, deviation {deviation:.3f}")
    assert results["flat_histogram_converged"]
    assert deviation < 1.0 - params.flat_histogram_flatness

    # V_G1 / V_Z = β ∫_0^β |G(τ)| dτ for a single flavor
    tau = torch.linspace(0.0, beta, 4001, dtype=torch.float64)
    G_integral = torch.trapezoid(noninteracting_greens_function(tau, beta, energies, V), tau).item()
    volume = results["volumes"]["G1"]
    print(f"G1 volume {volume:.4f}, exact {-beta * G_integral:.4f}")
    assert volume == pytest.approx(-beta * G_integral, rel=0.15)

    # l = 0 is the integral of G(τ), from the worm and from the Z-space estimator
    worm_G0 = results["G1_l"][0, 0, 0].real.item()
    z_G0 = results["G_l"][0, 0, 0].real.item()
    print(f"G_0: worm {worm_G0:.4f}, Z space {z_G0:.4f}, exact {G_integral:.4f}")
    assert worm_G0 == pytest.approx(G_integral, rel=0.15)
    assert worm_G0 == pytest.approx(z_G0, rel=0.15)

    print("\n✅ Flat histogram and worm volume test PASSED")


def main():
    print("\n" + "=" * 70)
    print("CT-HYB Walker Tests")
    print("=" * 70)

    test_parameters()
    test_thermalization_gate()
    test_collaborator_mismatch()
    test_debug_run_all_worm_spaces()
    test_noninteracting_level()
    test_timing_regions()
    test_flat_histogram_worm_volume()

    print("\n" + "=" * 70)
    print("All tests PASSED ✅")
    print("=" * 70)


if __name__ == "__main__":
    main()
