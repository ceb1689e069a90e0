#!/usr/bin/env python3
"""
Test adaptive parameters learned during thermalization:
- FlatHistogram (Wang-Landau) on a synthetic two-space chain
- Verification stage with fixed weights closing the learning
- ShiftWidthAdapter widening/narrowing the shift proposal
- WindowSizeAdapter following the perturbation order
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import math

import numpy as np
import pytest

from cthybTensor.ctqmc import FlatHistogram, ShiftWidthAdapter, WindowSizeAdapter


def test_flat_histogram_synthetic_chain():
    """Wang-Landau learns w[1]/w[0] = 1/V for a space of relative volume V."""
    print("=" * 70)
    print("Test 1: Flat Histogram on a Synthetic Chain")
    print("=" * 70)

    volume = 5.0
    fh = FlatHistogram(2, lam=1.0, lam_min=1e-3, flatness=0.8, min_stage_visits=200)
    rng = np.random.default_rng(42)
    state = 0

    for step in range(500000):
        w = fh.weights
        if state == 0:
            p = min(1.0, w[1] * volume / w[0])
            if rng.random() < p:
                state = 1
        else:
            p = min(1.0, w[0] / (w[1] * volume))
            if rng.random() < p:
                state = 0
        fh.visit(state)
        assert fh.log_weights[0] == 0.0, "Z-space weight stays 1"
        if fh.converged:
            break

    print(f"\nConverged after {step + 1} steps, {fh.n_stages} stages, lambda = {fh.lam:.3g}")
    print(f"ln w[1] = {fh.log_weights[1]:.4f}, expected {-math.log(volume):.4f}")
    assert fh.converged and fh.frozen and fh.verifying
    assert fh.lam < fh.lam_min
    assert fh.n_stages == 10
    # the verification histogram that closed the learning is flat
    assert fh.deviation() < 1.0 - fh.flatness
    assert abs(fh.log_weights[1] + math.log(volume)) < 0.3

    frozen = fh.log_weights.copy()
    fh.visit(1)
    assert np.array_equal(fh.log_weights, frozen), "frozen weights do not move"
    assert fh.total_visits.sum() == step + 2

    print("\n✅ Flat histogram test PASSED")


def test_flat_histogram_freeze_and_single_space():
    """Freezing before convergence reports it; one space needs no learning."""
    print("\n" + "=" * 70)
    print("Test 2: Flat Histogram Freezing")
    print("=" * 70)

    fh = FlatHistogram(3, min_stage_visits=6)
    fh.visit(1)
    assert math.isclose(fh.weight(1), math.exp(-1.0))
    fh.visit(2)
    fh.visit(0)
    assert not fh.is_flat(), "a stage needs min_stage_visits visits"
    assert fh.n_stages == 0
    assert fh.finalize_learning() is False
    assert fh.frozen

    single = FlatHistogram(1)
    assert single.converged and single.frozen
    assert single.finalize_learning() is True
    assert single.weight_map(["Z"]) == {"Z": 1.0}

    with pytest.raises(ValueError):
        FlatHistogram(0)
    with pytest.raises(ValueError):
        FlatHistogram(2, flatness=1.5)

    print("\n✅ Flat histogram freezing test PASSED")


def test_flat_histogram_verification_stage():
    """Learning only converges after a flat stage sampled with fixed weights."""
    print("\n" + "=" * 70)
    print("Test 3: Flat Histogram Verification Stage")
    print("=" * 70)

    fh = FlatHistogram(2, lam=1.0, lam_min=0.6, min_stage_visits=10, min_space_visits=2)
    assert fh.stage_length() == 10

    # stage 1: alternating visits are flat after 10 visits, λ = 0.5 < λ_min
    for _ in range(5):
        fh.visit(0)
        fh.visit(1)
    assert fh.n_stages == 1 and fh.verifying
    assert not fh.converged
    assert np.allclose(fh.log_weights, 0.0)
    assert fh.stage_length() == math.ceil(10 * math.sqrt(2.0))

    # verification: space 1 visited twice as often, weights stay put
    for _ in range(5):
        fh.visit(0)
        fh.visit(1)
        fh.visit(1)
        if fh.n_corrections == 0:
            assert np.allclose(fh.log_weights, 0.0)
    print(f"\nAfter a failed verification: ln w = {fh.log_weights}")
    assert fh.n_corrections == 1
    assert not fh.converged
    assert math.isclose(fh.weight(1), 0.5)
    assert fh.histogram.sum() == 0

    # second verification is twice as long and flat
    for _ in range(14):
        fh.visit(0)
        fh.visit(1)
    assert not fh.converged
    fh.visit(0)
    fh.visit(1)
    assert fh.converged and fh.frozen
    assert fh.deviation() == 0.0
    assert math.isclose(fh.weight(1), 0.5)

    # a lopsided histogram is never flat, however long the stage
    lopsided = FlatHistogram(2, min_stage_visits=10, min_space_visits=1)
    lopsided.histogram[:] = [100, 10]
    assert not lopsided.is_flat()
    lopsided.histogram[:] = [100, 0]
    assert not lopsided.is_flat()

    print("\n✅ Flat histogram verification test PASSED")


def test_shift_width_adapter():
    """Widths grow for high acceptance and shrink for low acceptance."""
    print("\n" + "=" * 70)
    print("Test 4: Shift Width Adapter")
    print("=" * 70)

    beta = 10.0
    adapter = ShiftWidthAdapter(2, beta, interval=10)
    assert adapter.width(0) == pytest.approx(1.0)

    for _ in range(10):
        adapter.record(0, True)
        adapter.record(1, False)
    print(f"\nWidths after one interval: {adapter.widths}")
    assert adapter.width(0) == pytest.approx(1.2)
    assert adapter.width(1) == pytest.approx(1.0 / 1.2)

    adapter.finalize_learning()
    for _ in range(20):
        adapter.record(0, True)
    assert adapter.width(0) == pytest.approx(1.2)

    print("\n✅ Shift width adapter test PASSED")


def test_window_size_adapter():
    """Window size follows ⟨order⟩/F and is clipped to [1, max_window]."""
    print("\n" + "=" * 70)
    print("Test 5: Window Size Adapter")
    print("=" * 70)

    adapter = WindowSizeAdapter(n_flavors=2, max_window=8, history=4)
    assert adapter.standard_size() == 1

    for order in [10, 10, 10, 10]:
        adapter.record(order)
    assert adapter.standard_size() == 5
    assert adapter.size_for_rank(2) == 2
    assert adapter.size_for_rank(10) == 1

    for order in [100] * 4:
        adapter.record(order)
    assert adapter.standard_size() == 8

    adapter.finalize_learning()
    adapter.record(0)
    assert adapter.standard_size() == 8

    print("\n✅ Window size adapter test PASSED")


def main():
    print("\n" + "=" * 70)
    print("Adaptive Parameter Tests")
    print("=" * 70)

    test_flat_histogram_synthetic_chain()
    test_flat_histogram_freeze_and_single_space()
    test_flat_histogram_verification_stage()
    test_shift_width_adapter()
    test_window_size_adapter()

    print("\n" + "=" * 70)
    print("All tests PASSED ✅")
    print("=" * 70)


if __name__ == "__main__":
    main()
