"""Global updates acting on every operator at once.

They are applied with the sliding window collapsed to a single window
(n_window = 1), so the proposal trace is a full from-scratch evaluation
and the determinant ratio is the product over all blocks.
"""

from typing import List, Sequence

import numpy as np

from cthybTensor.ctqmc.operators import global_shift
from cthybTensor.ctqmc.updaters import Updater


def _check_full_window(window) -> None:
    if window.get_n_window() != 1:
        raise RuntimeError("Global updates require n_window = 1")


class FlavorExchangeUpdater(Updater):
    """
    Applies a flavor permutation to all operators (worm included).

    A permutation is drawn uniformly from the configured ones and their
    inverses, so the proposal is symmetric.

    Attributes:
        permutations: Flavor permutations (lists of length F)
    """

    name = "global_flavor_exchange"

    def __init__(self, swap_vector: Sequence[Sequence[int]]) -> None:
        super().__init__()
        permutations: List[List[int]] = []
        for perm in swap_vector:
            perm = list(perm)
            inverse = [0] * len(perm)
            for i, p in enumerate(perm):
                inverse[p] = i
            for candidate in (perm, inverse):
                if candidate not in permutations:
                    permutations.append(candidate)
        self.permutations = permutations

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if not self.permutations:
            return False
        _check_full_window(window)
        perm = self.permutations[int(rng.integers(len(self.permutations)))]
        return self._record("exchange", self.apply(rng, config, window, perm))

    def apply(self, rng, config, window, perm: Sequence[int]) -> bool:
        """Propose the permutation perm and accept/reject it."""
        old_hyb = config.hyb_operators.to_list()
        new_hyb = [op.with_flavor(perm[op.flavor]) for op in old_hyb]
        worm = config.worm
        new_worm = None
        if worm is not None:
            new_worm = worm.with_times_flavors(worm.times, [perm[f] for f in worm.flavors])
        new_worm_ops = () if new_worm is None else new_worm.operators
        det_ratio = config.det.ratio_update(old_hyb, new_hyb)
        return self._try(rng, config, window, det_ratio, old_hyb, new_hyb, 1.0,
                         trace_removed=old_hyb + list(config.worm_operators),
                         trace_added=new_hyb + list(new_worm_ops),
                         worm=new_worm, change_worm=worm is not None)


class GlobalShiftUpdater(Updater):
    """Shifts every operator by the same random Δt modulo β."""

    name = "global_shift"

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        _check_full_window(window)
        if len(config.operators) == 0:
            return False
        return self._record("shift", self.apply(rng, config, window, beta * rng.random(), beta))

    def apply(self, rng, config, window, dt: float, beta: float) -> bool:
        """Propose the shift dt and accept/reject it."""
        old_hyb = config.hyb_operators.to_list()
        new_hyb, _ = global_shift(old_hyb, dt, beta)
        worm = config.worm
        new_worm = None
        new_worm_ops: Sequence = ()
        if worm is not None:
            times = [(t + dt) % beta for t in worm.times]
            new_worm = worm.with_times_flavors(times, worm.flavors)
            new_worm_ops = new_worm.operators
        det_ratio = config.det.ratio_update(old_hyb, new_hyb)
        return self._try(rng, config, window, det_ratio, old_hyb, new_hyb, 1.0,
                         trace_removed=old_hyb + list(config.worm_operators),
                         trace_added=new_hyb + list(new_worm_ops),
                         worm=new_worm, change_worm=worm is not None)
