"""Worm updates connecting Z space and the worm spaces.

Each updater is one reversible kernel; the walker applies them in a fixed
cyclic rotation. `weights` maps every space to its multiplier w[s]
(w[Z] = 1). With W the window width and F the number of flavors:

    worm insertion Z → s:           (w_s/w_0) |r_tr| W^{n_t} F^{n_f}
    worm move:                      |r_tr|
    ETG1 → TTG2 (extra pair):       (w_TTG2/w_ETG1) |r_tr| W F²
    G1 by hybridization swap Z → G1: (w_G1/w_0) |r_det| n_c n_a
    G1 swap shifter:                |r_det|

with n_t the number of worm times, n_f the number of worm flavor indices
and n_c, n_a the hybridized creators/annihilators in the window. Removal
moves use the inverse ratios.

References:
    - Gunacker et al., PRB 92, 155102 (2015)
    - Shinaoka et al., PRB 96, 035147 (2017)
"""

from typing import Dict, List

import numpy as np

from cthybTensor.ctqmc.configuration import (
    ConfigSpace,
    EqualTimeG1Worm,
    GreensFunctionWorm,
    TwoTimeG2Worm,
    WORM_TYPES,
)
from cthybTensor.ctqmc.updaters import Updater


def _weight_ratio(weights, new_space: ConfigSpace, old_space: ConfigSpace) -> float:
    if weights is None:
        return 1.0
    return weights.get(new_space, 1.0) / weights.get(old_space, 1.0)


class WormUpdater(Updater):
    """Base class of updates acting on one worm space."""

    name = "worm"

    def __init__(self, space: ConfigSpace, n_flavors: int) -> None:
        super().__init__()
        self.space = space
        self.worm_type = WORM_TYPES[space]
        self.n_flavors = n_flavors

    def _random_flavors(self, rng: np.random.Generator, n: int) -> List[int]:
        return [int(rng.integers(self.n_flavors)) for _ in range(n)]


class WormInsertionRemover(WormUpdater):
    """Inserts a worm at random times and flavors in the window, or removes it."""

    name = "worm_insertion_removal"

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if config.space == ConfigSpace.Z_FUNCTION:
            return self._record(f"{self.space.name}.insertion", self._insert(rng, config, window, weights))
        if config.space == self.space:
            return self._record(f"{self.space.name}.removal", self._remove(rng, config, window, weights))
        return False

    def _volume(self, window) -> float:
        return window.window_width() ** self.worm_type.n_times * float(self.n_flavors) ** self.worm_type.n_flavor_indices

    def _insert(self, rng, config, window, weights) -> bool:
        times = [window.random_time(rng) for _ in range(self.worm_type.n_times)]
        worm = self.worm_type(times, self._random_flavors(rng, self.worm_type.n_flavor_indices))
        if not config.is_free(worm.operators):
            return False
        factor = _weight_ratio(weights, self.space, ConfigSpace.Z_FUNCTION) * self._volume(window)
        return self._try(rng, config, window, 1.0, (), (), factor,
                         trace_removed=(), trace_added=worm.operators, worm=worm, change_worm=True)

    def _remove(self, rng, config, window, weights) -> bool:
        worm = config.worm
        if not all(window.in_window(t) for t in worm.times):
            return False
        factor = _weight_ratio(weights, ConfigSpace.Z_FUNCTION, self.space) / self._volume(window)
        return self._try(rng, config, window, 1.0, (), (), factor,
                         trace_removed=worm.operators, trace_added=(), worm=None, change_worm=True)


class WormMover(WormUpdater):
    """Redraws one worm time (and the flavors attached to it) inside the window."""

    name = "worm_move"

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if config.space != self.space:
            return False
        worm = config.worm
        index = int(rng.integers(worm.n_times))
        if not window.in_window(worm.times[index]):
            return False
        times = list(worm.times)
        times[index] = window.random_time(rng)
        flavors = list(worm.flavors)
        for i in worm.flavors_of_time[index]:
            flavors[i] = int(rng.integers(self.n_flavors))
        new_worm = worm.with_times_flavors(times, flavors)
        old_ops = worm.operators_of_time(index)
        new_ops = [op for op in new_worm.operators if op not in worm.operators]
        if not config.is_free([op for op in new_ops if op.key not in {o.key for o in old_ops}]):
            return self._record(f"{self.space.name}.move", False)
        accepted = self._try(rng, config, window, 1.0, (), (), 1.0,
                             trace_removed=old_ops, trace_added=new_worm.operators_of_time(index),
                             worm=new_worm, change_worm=True)
        return self._record(f"{self.space.name}.move", accepted)


class EqualTimeG1TwoTimeG2Connector(WormUpdater):
    """
    Connects the equal-time G1 and the two-time G2 spaces.

    c†_a c_b (τ)  ↔  c†_a c_b (τ) c†_c c_d (τ')

    The second pair is drawn uniformly in the window (or removed if it
    sits inside the window).

    Both pairs are worm operators: nothing is taken from or returned to the
    hybridized string, so the determinant matrix is unchanged and only the
    trace enters the acceptance ratio.
    """

    name = "etg1_ttg2_connector"

    def __init__(self, n_flavors: int) -> None:
        super().__init__(ConfigSpace.TWO_TIME_G2, n_flavors)

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if config.space == ConfigSpace.EQUAL_TIME_G1:
            return self._record("ETG1_to_TTG2", self._connect(rng, config, window, weights))
        if config.space == ConfigSpace.TWO_TIME_G2:
            return self._record("TTG2_to_ETG1", self._disconnect(rng, config, window, weights))
        return False

    def _volume(self, window) -> float:
        return window.window_width() * float(self.n_flavors) ** 2

    def _connect(self, rng, config, window, weights) -> bool:
        worm = config.worm
        new_worm = TwoTimeG2Worm(
            [worm.times[0], window.random_time(rng)],
            list(worm.flavors) + self._random_flavors(rng, 2),
        )
        if not config.is_free(new_worm.operators_of_time(1)):
            return False
        factor = _weight_ratio(weights, ConfigSpace.TWO_TIME_G2, ConfigSpace.EQUAL_TIME_G1) * self._volume(window)
        return self._try(rng, config, window, 1.0, (), (), factor,
                         trace_removed=(), trace_added=new_worm.operators_of_time(1),
                         worm=new_worm, change_worm=True)

    def _disconnect(self, rng, config, window, weights) -> bool:
        worm = config.worm
        if not window.in_window(worm.times[1]):
            return False
        new_worm = EqualTimeG1Worm([worm.times[0]], worm.flavors[:2])
        factor = _weight_ratio(weights, ConfigSpace.EQUAL_TIME_G1, ConfigSpace.TWO_TIME_G2) / self._volume(window)
        return self._try(rng, config, window, 1.0, (), (), factor,
                         trace_removed=worm.operators_of_time(1), trace_added=(),
                         worm=new_worm, change_worm=True)


class G1HybridizationSwapInsertionRemover(WormUpdater):
    """
    Turns a hybridized (c†, c) pair in the window into a G1 worm and back.

    The operator string is unchanged, so only the determinant ratio and the
    space weights enter the acceptance.
    """

    name = "g1_hyb_swap_insertion_removal"

    def __init__(self, n_flavors: int) -> None:
        super().__init__(ConfigSpace.G1, n_flavors)

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if config.space == ConfigSpace.Z_FUNCTION:
            return self._record("insertion", self._insert(rng, config, window, weights))
        if config.space == ConfigSpace.G1:
            return self._record("removal", self._remove(rng, config, window, weights))
        return False

    def _insert(self, rng, config, window, weights) -> bool:
        tau_low, tau_high = window.window_range()
        creators = config.hyb_in_range(tau_low, tau_high, is_creator=True)
        annihilators = config.hyb_in_range(tau_low, tau_high, is_creator=False)
        if not creators or not annihilators:
            return False
        cdag = creators[int(rng.integers(len(creators)))]
        c = annihilators[int(rng.integers(len(annihilators)))]
        worm = GreensFunctionWorm([c.time, cdag.time], [c.flavor, cdag.flavor])
        factor = _weight_ratio(weights, ConfigSpace.G1, ConfigSpace.Z_FUNCTION) * len(creators) * len(annihilators)
        det_ratio = config.det.ratio_remove([cdag], [c])
        return self._try(rng, config, window, det_ratio, [cdag, c], (), factor,
                         trace_removed=(), trace_added=(), worm=worm, change_worm=True)

    def _remove(self, rng, config, window, weights) -> bool:
        worm = config.worm
        if not all(window.in_window(t) for t in worm.times):
            return False
        c, cdag = worm.operators
        tau_low, tau_high = window.window_range()
        n_c = len(config.hyb_in_range(tau_low, tau_high, is_creator=True))
        n_a = len(config.hyb_in_range(tau_low, tau_high, is_creator=False))
        factor = _weight_ratio(weights, ConfigSpace.Z_FUNCTION, ConfigSpace.G1) / ((n_c + 1) * (n_a + 1))
        det_ratio = config.det.ratio_insert([cdag], [c])
        return self._try(rng, config, window, det_ratio, (), [cdag, c], factor,
                         trace_removed=(), trace_added=(), worm=None, change_worm=True)


class G1HybridizationSwapShifter(WormUpdater):
    """Exchanges one G1 worm operator with a hybridized operator of the same kind in the window."""

    name = "g1_hyb_swap_shift"

    def __init__(self, n_flavors: int) -> None:
        super().__init__(ConfigSpace.G1, n_flavors)

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if config.space != ConfigSpace.G1:
            return False
        worm = config.worm
        c, cdag = worm.operators
        move_creator = rng.random() < 0.5
        worm_op = cdag if move_creator else c
        label = "creator" if move_creator else "annihilator"
        if not window.in_window(worm_op.time):
            return self._record(label, False)
        tau_low, tau_high = window.window_range()
        candidates = config.hyb_in_range(tau_low, tau_high, is_creator=move_creator)
        if not candidates:
            return self._record(label, False)
        hyb_op = candidates[int(rng.integers(len(candidates)))]
        if move_creator:
            new_worm = GreensFunctionWorm([c.time, hyb_op.time], [c.flavor, hyb_op.flavor])
        else:
            new_worm = GreensFunctionWorm([hyb_op.time, cdag.time], [hyb_op.flavor, cdag.flavor])
        det_ratio = config.det.ratio_update([hyb_op], [worm_op])
        accepted = self._try(rng, config, window, det_ratio, [hyb_op], [worm_op], 1.0,
                             trace_removed=(), trace_added=(), worm=new_worm, change_worm=True)
        return self._record(label, accepted)


def make_worm_updaters(spaces: List[ConfigSpace], n_flavors: int) -> Dict[ConfigSpace, List[WormUpdater]]:
    """Worm updaters keyed by worm space.

    Args:
        spaces: Enabled worm spaces
        n_flavors: Number of flavors F

    Returns:
        {space: [updaters]} in the order they are applied
    """
    updaters: Dict[ConfigSpace, List[WormUpdater]] = {}
    for space in spaces:
        updaters[space] = [WormInsertionRemover(space, n_flavors), WormMover(space, n_flavors)]
    if ConfigSpace.G1 in spaces:
        updaters[ConfigSpace.G1] += [
            G1HybridizationSwapInsertionRemover(n_flavors),
            G1HybridizationSwapShifter(n_flavors),
        ]
    if ConfigSpace.EQUAL_TIME_G1 in spaces and ConfigSpace.TWO_TIME_G2 in spaces:
        updaters[ConfigSpace.TWO_TIME_G2].append(EqualTimeG1TwoTimeG2Connector(n_flavors))
    return updaters
