#!/usr/bin/env python3
"""
Test Monte Carlo updates on a Configuration:
- Detailed balance of k-pair insertion/removal (forward × reverse = 1)
- Insertion followed by removal restores the configuration
- Random local updates keep the incremental state consistent
- Global shift leaves the weight unchanged
- Flavor exchange is an involution for a spin-symmetric model
- Worm insertion and hybridization swaps
- Malformed worms are reported by the sanity check
- Equal-time G1 / two-time G2 connection leaves the hybridized string alone
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import math

import numpy as np

from cthybTensor.ctqmc import (
    ConfigSpace,
    DiagonalInsertionRemovalUpdater,
    EqualTimeG1TwoTimeG2Connector,
    EqualTimeG1Worm,
    FlavorExchangeUpdater,
    GlobalShiftUpdater,
    GreensFunctionWorm,
    InsertionRemovalUpdater,
    OperatorShiftUpdater,
    PairFlavorUpdater,
    SlidingWindowManager,
    annihilator,
    creator,
)
from cthybTensor.ctqmc.reweighting import ShiftWidthAdapter
from cthybTensor.ctqmc.updaters import pair_insertion_log_factor, trace_ratio
from example_utils import build_configuration, build_hubbard_atom, build_single_level_bath

BETA = 5.0
BATH = [-1.0, 0.5, 1.0]


def _setup(operators=None, n_window=1, position=0):
    model = build_hubbard_atom(U=2.0)
    hyb = build_single_level_bath(BETA, 2, V=1.0, energies=BATH)
    if operators is None:
        operators = [creator(1.0, 0), annihilator(2.0, 0), creator(0.5, 1), annihilator(4.0, 1)]
    window = SlidingWindowManager(model, BETA)
    config = build_configuration(BETA, model, hyb, operators, window)
    window.set_window_size(n_window, config.operators, position=position)
    return model, hyb, config, window


def test_pair_insertion_detailed_balance():
    """Forward and reverse acceptance ratios of a pair insertion multiply to one."""
    print("=" * 70)
    print("Test 1: Detailed Balance of Pair Insertion/Removal")
    print("=" * 70)

    _, _, config, window = _setup(n_window=2, position=2)
    low, high = window.window_range()
    width = high - low
    n_flavors = 2
    print(f"\nWindow [{low}, {high}), order {config.perturbation_order()}")

    original_ops = config.hyb_operators.to_list()
    original_weight = config.weight()

    # forward: insert c†_0(3.0) c_0(4.5) (flavor 0 is empty there)
    added = [creator(3.0, 0), annihilator(4.5, 0)]
    n_c = len(config.hyb_in_range(low, high, is_creator=True))
    n_a = len(config.hyb_in_range(low, high, is_creator=False))
    det_forward = config.det.ratio_insert(added[:1], added[1:])
    trace_new = window.compute_trace_proposal(config.operators, (), added)
    forward = (trace_ratio(trace_new, config.trace) * abs(det_forward)
               * math.exp(pair_insertion_log_factor(width, n_flavors ** 2, n_c, n_a, 1)))
    config.accept((), added, trace=trace_new)
    assert config.sanity_check(window) == []

    # reverse: remove the same pair
    n_c_new = len(config.hyb_in_range(low, high, is_creator=True))
    n_a_new = len(config.hyb_in_range(low, high, is_creator=False))
    assert (n_c_new, n_a_new) == (n_c + 1, n_a + 1)
    det_reverse = config.det.ratio_remove(added[:1], added[1:])
    trace_back = window.compute_trace_proposal(config.operators, added, ())
    reverse = (trace_ratio(trace_back, config.trace) * abs(det_reverse)
               * math.exp(-pair_insertion_log_factor(width, n_flavors ** 2, n_c_new - 1, n_a_new - 1, 1)))
    print(f"A(forward) = {forward:.6g}, A(reverse) = {reverse:.6g}")
    assert math.isclose(forward * reverse, 1.0, rel_tol=1e-8)

    config.accept(added, (), trace=trace_back)
    assert config.hyb_operators.to_list() == original_ops
    assert config.weight().isclose(original_weight, rel_tol=1e-8)
    assert config.sanity_check(window) == []

    print("\n✅ Detailed balance test PASSED")


def test_multi_pair_factor():
    """The k-pair proposal factor is inverted by the k-pair removal factor."""
    print("\n" + "=" * 70)
    print("Test 2: k-Pair Proposal Factors")
    print("=" * 70)

    for k in [1, 2, 3]:
        for n_c, n_a in [(0, 0), (2, 3), (5, 1)]:
            insert = pair_insertion_log_factor(1.7, 4.0 ** k, n_c, n_a, k)
            expected = (2 * k * math.log(1.7) + k * math.log(4.0)
                        - math.log(math.factorial(n_c + k) / math.factorial(n_c))
                        - math.log(math.factorial(n_a + k) / math.factorial(n_a)))
            assert math.isclose(insert, expected, rel_tol=1e-12, abs_tol=1e-12)

    print("\n✅ k-pair proposal factor test PASSED")


def test_random_local_updates_consistency():
    """Local updates over a moving window keep the configuration consistent."""
    print("\n" + "=" * 70)
    print("Test 3: Random Local Updates")
    print("=" * 70)

    _, _, config, window = _setup(n_window=3)
    rng = np.random.default_rng(99)
    updaters = [
        InsertionRemovalUpdater(1, 2),
        InsertionRemovalUpdater(2, 2),
        DiagonalInsertionRemovalUpdater(1, 2),
        PairFlavorUpdater(),
        OperatorShiftUpdater(ShiftWidthAdapter(2, BETA)),
    ]

    n_accepted = 0
    for step in range(400):
        updater = updaters[step % len(updaters)]
        n_accepted += int(updater.update(rng, BETA, config, window))
        if step % 3 == 2:
            window.move_window_to_next_position(config.operators)
        if step % 25 == 0:
            problems = config.sanity_check(window)
            assert problems == [], problems
        assert not config.det.has_pending

    print(f"\nAccepted {n_accepted} of 400 updates, order {config.perturbation_order()}")
    assert n_accepted > 0
    assert config.sanity_check(window) == []
    assert config.sign == 1.0, "flavor-diagonal model has no sign problem"

    rates = {}
    for updater in updaters:
        rates.update(updater.acceptance_rate())
    print(f"Acceptance rates: {rates}")
    assert all(0.0 <= r <= 1.0 for r in rates.values())

    print("\n✅ Random local updates test PASSED")


def test_global_shift_invariance():
    """Shifting every operator by Δt modulo β leaves the weight unchanged."""
    print("\n" + "=" * 70)
    print("Test 4: Global Shift Invariance")
    print("=" * 70)

    _, _, config, window = _setup()
    rng = np.random.default_rng(3)
    weight = config.weight()
    updater = GlobalShiftUpdater()

    for dt in [0.3, 1.7, 4.2]:
        accepted = updater.apply(rng, config, window, dt, BETA)
        print(f"\ndt = {dt}: accepted = {accepted}, weight = {config.weight()}")
        assert accepted
        assert config.weight().isclose(weight, rel_tol=1e-8)
        assert config.sanity_check(window) == []

    print("\n✅ Global shift invariance test PASSED")


def test_flavor_exchange_involution():
    """Applying a spin swap twice restores the configuration."""
    print("\n" + "=" * 70)
    print("Test 5: Flavor Exchange Involution")
    print("=" * 70)

    _, _, config, window = _setup()
    rng = np.random.default_rng(11)
    original = config.hyb_operators.to_list()
    weight = config.weight()

    updater = FlavorExchangeUpdater([[1, 0]])
    assert updater.permutations == [[1, 0]]
    assert FlavorExchangeUpdater([[1, 2, 0]]).permutations == [[1, 2, 0], [2, 0, 1]]

    assert updater.apply(rng, config, window, [1, 0])
    swapped = config.hyb_operators.to_list()
    assert [op.flavor for op in swapped] == [1 - op.flavor for op in original]
    assert config.weight().isclose(weight, rel_tol=1e-8)

    assert updater.apply(rng, config, window, [1, 0])
    assert config.hyb_operators.to_list() == original
    assert config.weight().isclose(weight, rel_tol=1e-8)
    assert config.sanity_check(window) == []

    print("\n✅ Flavor exchange involution test PASSED")


def test_worm_insertion_and_swap():
    """G1 worm insertion/removal and the hybridization swap."""
    print("\n" + "=" * 70)
    print("Test 6: Worm Insertion and Hybridization Swap")
    print("=" * 70)

    _, _, config, window = _setup()
    weight = config.weight()
    original = config.hyb_operators.to_list()

    # explicit worm c_0(4.5) c†_0(3.0)
    worm = GreensFunctionWorm([4.5, 3.0], [0, 0])
    trace = window.compute_trace_proposal(config.operators, (), worm.operators)
    config.accept(worm=worm, trace=trace)
    assert config.space == ConfigSpace.G1
    assert config.sanity_check(window) == []
    assert len(config.operators) == len(original) + 2

    trace = window.compute_trace_proposal(config.operators, worm.operators, ())
    config.accept(worm=None, trace=trace)
    assert config.space == ConfigSpace.Z_FUNCTION
    assert config.weight().isclose(weight, rel_tol=1e-8)

    # hybridized pair (c†_0(1.0), c_0(2.0)) becomes the worm: only |det ratio| changes
    cdag, c = creator(1.0, 0), annihilator(2.0, 0)
    det_ratio = config.det.ratio_remove([cdag], [c])
    config.accept([cdag, c], (), worm=GreensFunctionWorm([c.time, cdag.time], [c.flavor, cdag.flavor]))
    print(f"\ndet ratio = {det_ratio:.6g}")
    assert config.space == ConfigSpace.G1
    assert config.perturbation_order() == 1
    assert config.sanity_check(window) == []
    assert math.isclose(abs(config.weight().to_number()), abs(weight.to_number() * det_ratio), rel_tol=1e-8)

    print("\n✅ Worm insertion and swap test PASSED")


def test_malformed_worm_detected():
    """The sanity check compares the worm against the shape of its space."""
    print("\n" + "=" * 70)
    print("Test 7: Malformed Worm Detection")
    print("=" * 70)

    _, _, config, window = _setup()
    worm = GreensFunctionWorm([4.5, 3.0], [0, 0])
    trace = window.compute_trace_proposal(config.operators, (), worm.operators)
    config.accept(worm=worm, trace=trace)
    assert config.sanity_check(window) == []

    # a G1 worm that lost its creator
    worm.operators = worm.operators[:1]
    problems = config.sanity_check(window)
    print(f"\nmissing operator: {problems}")
    assert any("has 1 operators" in p for p in problems)
    assert any("unbalanced" in p for p in problems)

    # flavor beyond the model; reported without evaluating the trace
    config.worm = GreensFunctionWorm([4.5, 3.0], [0, 5])
    problems = config.sanity_check(window)
    print(f"flavor out of range: {problems}")
    assert any("out of range" in p for p in problems)

    # equal-time worm tagged with the G1 space
    mislabelled = EqualTimeG1Worm([2.2], [0, 1])
    mislabelled.space = ConfigSpace.G1
    config.worm = mislabelled
    problems = config.sanity_check(window)
    print(f"wrong space: {problems}")
    assert problems == ["EqualTimeG1Worm is not the worm of space G1"]

    print("\n✅ Malformed worm detection test PASSED")


def test_equal_time_connector_keeps_hybridized_string():
    """Connecting ETG1 and TTG2 only adds or removes worm operators."""
    print("\n" + "=" * 70)
    print("Test 8: Equal-Time G1 / Two-Time G2 Connector")
    print("=" * 70)

    _, _, config, window = _setup()
    original = config.hyb_operators.to_list()
    # n_1 at τ = 2.2, where flavor 1 is occupied
    worm = EqualTimeG1Worm([2.2], [1, 1])
    config.accept(worm=worm, trace=window.compute_trace_proposal(config.operators, (), worm.operators))
    assert config.sanity_check(window) == []

    connector = EqualTimeG1TwoTimeG2Connector(2)
    weights = {ConfigSpace.Z_FUNCTION: 1.0, ConfigSpace.EQUAL_TIME_G1: 1.0, ConfigSpace.TWO_TIME_G2: 1.0}
    rng = np.random.default_rng(4)
    seen = set()
    for _ in range(200):
        connector.update(rng, BETA, config, window, weights)
        seen.add(config.space)
        assert config.hyb_operators.to_list() == original
        assert sorted(config.det.creators() + config.det.annihilators()) == original
        assert config.worm.operators[:2] == worm.operators
    print(f"\nSpaces visited: {sorted(s.name for s in seen)}, rates {connector.acceptance_rate()}")

    assert seen == {ConfigSpace.EQUAL_TIME_G1, ConfigSpace.TWO_TIME_G2}
    assert config.sanity_check(window) == []

    print("\n✅ Equal-time connector test PASSED")


def main():
    print("\n" + "=" * 70)
    print("Monte Carlo Update Tests")
    print("=" * 70)

    test_pair_insertion_detailed_balance()
    test_multi_pair_factor()
    test_random_local_updates_consistency()
    test_global_shift_invariance()
    test_flavor_exchange_involution()
    test_worm_insertion_and_swap()
    test_malformed_worm_detected()
    test_equal_time_connector_keeps_hybridized_string()

    print("\n" + "=" * 70)
    print("All tests PASSED ✅")
    print("=" * 70)


if __name__ == "__main__":
    main()
