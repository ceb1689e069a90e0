#!/usr/bin/env python3
"""
Test the CTHYBSolver facade:
- ImpuritySolverABC interface and parameter handling
- Worm run (G1 and equal-time G1) with post-processed observables
- Fidelity susceptibility and timing regions in the result
- Several walkers merged into one result
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import math

import pytest
import torch

from cthybTensor.manybody import CTHYBSolver, ImpuritySolverABC
from example_utils import FakeClock, build_hubbard_atom, build_single_level_bath


def test_solver_interface():
    """CTHYBSolver is an ImpuritySolverABC and validates its parameters."""
    print("=" * 70)
    print("Test 1: Solver Interface")
    print("=" * 70)

    solver = CTHYBSolver({"BETA": 10.0, "SITES": 1, "SPINS": 2, "TIME_LIMIT": 60})
    assert isinstance(solver, ImpuritySolverABC)
    assert solver.solver_name == "CTHYB"
    assert solver.supported_orbitals == -1
    assert solver.results is None
    assert solver.params.n_flavors == 2

    with pytest.raises(TypeError):
        CTHYBSolver([("BETA", 10.0)])
    with pytest.raises(ValueError):
        CTHYBSolver({"BETA": 0.0})

    hyb = build_single_level_bath(10.0, 2, V=1.0)
    with pytest.raises(ValueError):
        solver.solve(hyb)
    with pytest.raises(ValueError):
        solver.solve(hyb, model=build_hubbard_atom(U=2.0), n_walkers=0)

    print("\n✅ Solver interface test PASSED")


def test_worm_run():
    """G1 and equal-time G1 worms through the solver, two walkers."""
    print("\n" + "=" * 70)
    print("Test 2: Worm Run Through the Solver")
    print("=" * 70)

    beta = 4.0
    params = {
        "BETA": beta,
        "SITES": 1,
        "SPINS": 2,
        "N_MEAS": 5,
        "TIME_LIMIT": 20.0,
        "THERMALIZATION_TIME": 5.0,
        "MEASURE_G1": True,
        "MEASURE_EQUAL_TIME_G1": True,
        "N_LEGENDRE_G1": 10,
        "N_TAU": 50,
        "N_MATSUBARA": 20,
        "SEED": 5,
        "verbose": False,
    }
    # every clock reading advances the fake wall clock
    solver = CTHYBSolver(params, clock=FakeClock(tick=0.1))
    model = build_hubbard_atom(U=2.0)
    hyb = build_single_level_bath(beta, 2, V=1.0, energies=[-1.0, 0.5, 1.0])

    results = solver.solve(hyb, model=model, n_walkers=2)
    print(f"\nSweeps: {results['n_sweeps']}, visits: {results['visits']}")
    print(f"Space weights: {results['space_weights']}")

    assert solver.results is results
    assert results["n_walkers"] == 2
    assert set(results["visits"]) == {"Z_FUNCTION", "G1", "EQUAL_TIME_G1"}
    assert results["n_measurements"] == sum(results["visits"].values()) > 0
    assert results["space_weights"]["Z_FUNCTION"] == pytest.approx(1.0)

    G_tau = results["G_tau"]
    assert G_tau.labels == ["tau", "orb_i", "orb_j"]
    assert G_tau.shape == (51, 2, 2)
    assert results["G_iwn"].shape == (20, 2, 2)
    assert results["G_tau_rotated"].shape == (51, 2, 2)
    assert torch.allclose(results["G_tau_rotated"].diagonal().real, G_tau.diagonal().real)
    assert results["G1_l"].shape == (10, 2, 2)
    assert results["G1_tau"].shape == (51, 2, 2)
    assert results["equal_time_G1"].shape == (2, 2)
    assert "two_time_G2_l" not in results
    assert torch.all(torch.isfinite(results["G1_tau"].tensor.real))
    assert all(0.0 <= r <= 1.0 for r in results["acceptance_rates"].values())
    assert results["k"].real >= 0.0
    assert math.isfinite(results["fidelity_susceptibility"].real)
    assert set(results["timings"]) == {"local", "global", "measurement"}
    assert results["timings"]["measurement"] > 0.0

    print("\n✅ Worm run test PASSED")


def main():
    print("\n" + "=" * 70)
    print("CTHYB Solver Tests")
    print("=" * 70)

    test_solver_interface()
    test_worm_run()

    print("\n" + "=" * 70)
    print("All tests PASSED ✅")
    print("=" * 70)


if __name__ == "__main__":
    main()
