"""Local Monte Carlo updates of the hybridized operators.

All updaters share the contract

    update(rng, beta, config, window, weights) -> bool

They propose a move confined to the current sliding window, evaluate the
Metropolis-Hastings ratio

    A = |w'/w| · (proposal density ratio),

and commit both the determinant matrix and the operator string on
acceptance. A rejected proposal leaves the configuration untouched.

Acceptance ratios with W the window width, F the number of flavors and
n_c, n_a the numbers of hybridized creators/annihilators in the window:

    k-pair insertion:   |r| (W F)^{2k} n_c!/(n_c+k)! · n_a!/(n_a+k)!
    k-pair removal:     inverse of the above with n → n − k
    diagonal variant:   F factor dropped, counts restricted to one flavor
    shift / pair flavor: |r| (symmetric proposals)
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from cthybTensor.core.scaled import ScaledNumber
from cthybTensor.ctqmc.operators import Psi, annihilator, creator


def trace_ratio(new_trace: ScaledNumber, old_trace: ScaledNumber) -> float:
    """|new/old| for two traces, 0 if the new trace vanishes."""
    if new_trace.is_zero() or not new_trace.is_finite():
        return 0.0
    return abs((new_trace / old_trace).to_number())


def log_falling_factorial(n: int, k: int) -> float:
    """ln[n!/(n−k)!]."""
    return math.lgamma(n + 1) - math.lgamma(n - k + 1)


def pair_insertion_log_factor(width: float, flavor_volume: float, n_c: int, n_a: int, k: int) -> float:
    """ln of the proposal factor of inserting k pairs next to n_c creators and n_a annihilators.

    The reverse removal uses the negative of the same value.
    """
    return (2 * k * math.log(width) + math.log(flavor_volume)
            - log_falling_factorial(n_c + k, k) - log_falling_factorial(n_a + k, k))


class Updater:
    """
    Base class of all Monte Carlo updates.

    Keeps acceptance statistics per sub-move label.

    Attributes:
        name: Label used in the acceptance-rate report
    """

    name = "updater"

    def __init__(self) -> None:
        self.n_proposed: Dict[str, int] = {}
        self.n_accepted: Dict[str, int] = {}

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        raise NotImplementedError

    def _record(self, label: str, accepted: bool) -> bool:
        self.n_proposed[label] = self.n_proposed.get(label, 0) + 1
        if accepted:
            self.n_accepted[label] = self.n_accepted.get(label, 0) + 1
        return accepted

    def _metropolis(self, rng: np.random.Generator, probability: float) -> bool:
        if not math.isfinite(probability):
            return probability > 0
        return rng.random() < probability

    def acceptance_rate(self) -> Dict[str, float]:
        """Accepted / proposed per sub-move."""
        return {
            f"{self.name}.{label}": self.n_accepted.get(label, 0) / n
            for label, n in self.n_proposed.items() if n > 0
        }

    def finalize_learning(self) -> None:
        """Freeze adaptive parameters (no-op for non-adaptive updates)."""

    def _try(
        self,
        rng: np.random.Generator,
        config,
        window,
        det_ratio,
        removed: Sequence[Psi],
        added: Sequence[Psi],
        factor: float,
        trace_removed: Optional[Sequence[Psi]] = None,
        trace_added: Optional[Sequence[Psi]] = None,
        worm=None,
        change_worm: bool = False,
    ) -> bool:
        """Evaluate the trace of a proposal and accept/reject.

        The determinant proposal (det_ratio) must already be pending.
        """
        if det_ratio == 0.0 or not math.isfinite(abs(det_ratio)):
            config.reject()
            return False
        trace_removed = removed if trace_removed is None else trace_removed
        trace_added = added if trace_added is None else trace_added
        if trace_removed or trace_added:
            new_trace = window.compute_trace_proposal(config.operators, trace_removed, trace_added)
            ratio = trace_ratio(new_trace, config.trace)
        else:
            new_trace = None
            ratio = 1.0
        if ratio == 0.0:
            config.reject()
            return False
        if self._metropolis(rng, ratio * abs(det_ratio) * factor):
            if change_worm:
                config.accept(removed, added, worm=worm, trace=new_trace)
            else:
                config.accept(removed, added, trace=new_trace)
            return True
        config.reject()
        return False


class InsertionRemovalUpdater(Updater):
    """
    Insertion or removal of k (creator, annihilator) pairs at random flavors.

    Attributes:
        k: Number of pairs
        n_flavors: Number of flavors F
    """

    name = "insertion_removal"

    def __init__(self, k: int, n_flavors: int) -> None:
        super().__init__()
        if k < 1:
            raise ValueError(f"Rank of pair insertion must be >= 1, got {k}")
        self.k = k
        self.n_flavors = n_flavors

    def _flavors(self, rng: np.random.Generator) -> Tuple[List[int], List[int], float]:
        """Flavors of new creators/annihilators and the flavor volume F^{2k}."""
        fc = [int(rng.integers(self.n_flavors)) for _ in range(self.k)]
        fa = [int(rng.integers(self.n_flavors)) for _ in range(self.k)]
        return fc, fa, float(self.n_flavors) ** (2 * self.k)

    def _candidates(self, config, window, rng) -> Tuple[List[Psi], List[Psi], float]:
        """Hybridized creators/annihilators that may be removed, and the flavor volume."""
        tau_low, tau_high = window.window_range()
        return (config.hyb_in_range(tau_low, tau_high, is_creator=True),
                config.hyb_in_range(tau_low, tau_high, is_creator=False),
                float(self.n_flavors) ** (2 * self.k))

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        if rng.random() < 0.5:
            return self._record(f"insertion_k{self.k}", self._insert(rng, config, window))
        return self._record(f"removal_k{self.k}", self._remove(rng, config, window))

    def _insert(self, rng, config, window) -> bool:
        k = self.k
        tau_low, tau_high = window.window_range()
        width = tau_high - tau_low
        fc, fa, flavor_volume = self._flavors(rng)
        creators = [creator(window.random_time(rng), f) for f in fc]
        annihilators = [annihilator(window.random_time(rng), f) for f in fa]
        new_ops = creators + annihilators
        if not config.is_free(new_ops):
            return False

        n_c = len(config.hyb_in_range(tau_low, tau_high, is_creator=True, flavor=self._flavor_filter(fc)))
        n_a = len(config.hyb_in_range(tau_low, tau_high, is_creator=False, flavor=self._flavor_filter(fa)))
        log_factor = pair_insertion_log_factor(width, flavor_volume, n_c, n_a, k)
        det_ratio = config.det.ratio_insert(creators, annihilators)
        return self._try(rng, config, window, det_ratio, (), new_ops, math.exp(log_factor))

    def _remove(self, rng, config, window) -> bool:
        k = self.k
        tau_low, tau_high = window.window_range()
        width = tau_high - tau_low
        creators, annihilators, flavor_volume = self._candidates(config, window, rng)
        if len(creators) < k or len(annihilators) < k:
            return False
        chosen_c = [creators[i] for i in rng.choice(len(creators), k, replace=False)]
        chosen_a = [annihilators[i] for i in rng.choice(len(annihilators), k, replace=False)]
        log_factor = -pair_insertion_log_factor(width, flavor_volume, len(creators) - k, len(annihilators) - k, k)
        det_ratio = config.det.ratio_remove(chosen_c, chosen_a)
        return self._try(rng, config, window, det_ratio, chosen_c + chosen_a, (), math.exp(log_factor))

    def _flavor_filter(self, flavors: Sequence[int]) -> Optional[int]:
        return None


class DiagonalInsertionRemovalUpdater(InsertionRemovalUpdater):
    """k-pair insertion/removal with all operators of one randomly chosen flavor."""

    name = "diagonal_insertion_removal"

    def _flavors(self, rng: np.random.Generator) -> Tuple[List[int], List[int], float]:
        f = int(rng.integers(self.n_flavors))
        return [f] * self.k, [f] * self.k, 1.0

    def _candidates(self, config, window, rng) -> Tuple[List[Psi], List[Psi], float]:
        f = int(rng.integers(self.n_flavors))
        tau_low, tau_high = window.window_range()
        return (config.hyb_in_range(tau_low, tau_high, is_creator=True, flavor=f),
                config.hyb_in_range(tau_low, tau_high, is_creator=False, flavor=f),
                1.0)

    def _flavor_filter(self, flavors: Sequence[int]) -> Optional[int]:
        return flavors[0]


class OperatorShiftUpdater(Updater):
    """
    Moves one hybridized operator inside the window.

    The new time is drawn from a Gaussian centered at the old time with a
    per-flavor width; proposals leaving the window are rejected.

    Attributes:
        widths: ShiftWidthAdapter providing and learning the widths
    """

    name = "shift"

    def __init__(self, widths) -> None:
        super().__init__()
        self.widths = widths

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        tau_low, tau_high = window.window_range()
        candidates = config.hyb_in_range(tau_low, tau_high)
        if not candidates:
            return False
        op = candidates[int(rng.integers(len(candidates)))]
        new_time = op.time + self.widths.width(op.flavor) * rng.normal()
        if not tau_low <= new_time < tau_high:
            accepted = False
        else:
            new_op = op.with_time(new_time)
            if not config.is_free([new_op]):
                accepted = False
            else:
                det_ratio = config.det.ratio_shift(op, new_time)
                accepted = self._try(rng, config, window, det_ratio, [op], [new_op], 1.0)
        self.widths.record(op.flavor, accepted)
        return self._record("shift", accepted)

    def finalize_learning(self) -> None:
        self.widths.finalize_learning()


class PairFlavorUpdater(Updater):
    """Exchanges the flavors of a hybridized creator and annihilator in the window."""

    name = "pair_flavor"

    def update(self, rng: np.random.Generator, beta: float, config, window, weights=None) -> bool:
        tau_low, tau_high = window.window_range()
        creators = config.hyb_in_range(tau_low, tau_high, is_creator=True)
        annihilators = config.hyb_in_range(tau_low, tau_high, is_creator=False)
        if not creators or not annihilators:
            return False
        cdag = creators[int(rng.integers(len(creators)))]
        c = annihilators[int(rng.integers(len(annihilators)))]
        if cdag.flavor == c.flavor:
            return False
        new_ops = [cdag.with_flavor(c.flavor), c.with_flavor(cdag.flavor)]
        det_ratio = config.det.ratio_update([cdag, c], new_ops)
        return self._record("pair_flavor", self._try(rng, config, window, det_ratio, [cdag, c], new_ops, 1.0))
