"""Adaptive parameters learned during thermalization.

- FlatHistogram: Wang-Landau estimate of the configuration-space weights
  w[s] that equalize the time spent in Z space and in the worm spaces.
- ShiftWidthAdapter: per-flavor width of the Gaussian time-shift proposal.
- WindowSizeAdapter: sliding-window size from the recent perturbation order.

All three stop learning when finalize_learning() is called at the end of
thermalization and keep their last values afterwards.

References:
    - Wang & Landau, PRL 86, 2050 (2001)
    - Gunacker et al., PRB 92, 155102 (2015): worm sampling in CT-HYB
"""

import math
from collections import deque
from typing import Dict, List, Optional, Sequence

import numpy as np


class FlatHistogram:
    """
    Wang-Landau reweighting of configuration spaces.

    Every visit to space s lowers ln w[s] by λ; the weights are then shifted
    so that the Z-space weight stays 1. A stage closes when

        - it holds at least stage_length() = ⌈min_stage_visits·√(λ₀/λ)⌉ visits,
        - every space was visited at least min_space_visits times,
        - the histogram is flat: |h[s]/mean h − 1| < 1 − f for all s,

    after which λ is halved and h reset. Once λ < λ_min the weights stop
    moving and a verification stage of stage_length() visits is sampled
    with them. If its histogram is flat the procedure has converged;
    otherwise the weights are corrected by ln w[s] −= ln(h[s]/h[0]) and
    another, twice as long, verification stage follows.

    Attributes:
        n_spaces: Number of spaces (index 0 is Z space)
        log_weights: ln w[s], shape (n_spaces,)
        histogram: Visits since the last reset
        lam: Current modification factor λ
        verifying: True while sampling with fixed weights after λ < λ_min
        n_stages: Number of completed Wang-Landau stages
        n_corrections: Number of failed verification stages
        converged: True once a verification stage was flat
        frozen: True after convergence or finalize_learning()
    """

    def __init__(
        self,
        n_spaces: int,
        lam: float = 1.0,
        lam_min: float = 1e-2,
        flatness: float = 0.8,
        min_stage_visits: int = 100,
        min_space_visits: int = 10,
    ) -> None:
        if n_spaces < 1:
            raise ValueError("FlatHistogram needs at least one space")
        if not 0.0 < flatness < 1.0:
            raise ValueError(f"flatness must be in (0, 1), got {flatness}")
        if lam <= 0 or lam_min <= 0:
            raise ValueError("Modification factors must be positive")
        self.n_spaces = n_spaces
        self.lam = lam
        self.lam_initial = lam
        self.lam_min = lam_min
        self.flatness = flatness
        self.min_stage_visits = min_stage_visits
        self.min_space_visits = max(min_space_visits, 1)
        self.log_weights = np.zeros(n_spaces)
        self.histogram = np.zeros(n_spaces, dtype=np.int64)
        self.total_visits = np.zeros(n_spaces, dtype=np.int64)
        self.n_stages = 0
        self.n_corrections = 0
        self.verifying = False
        # single-space runs have nothing to learn
        self.converged = n_spaces == 1
        self.frozen = n_spaces == 1

    @property
    def weights(self) -> np.ndarray:
        return np.exp(self.log_weights)

    def weight(self, space_index: int) -> float:
        return math.exp(self.log_weights[space_index])

    def stage_length(self) -> int:
        """Minimum number of visits of the current stage."""
        return int(math.ceil(self.min_stage_visits * math.sqrt(self.lam_initial / self.lam)))

    def deviation(self) -> float:
        """max_s |h[s]/mean h − 1| of the current histogram."""
        mean = self.histogram.mean()
        if mean == 0:
            return float("inf")
        return float(np.max(np.abs(self.histogram / mean - 1.0)))

    def is_flat(self) -> bool:
        if self.histogram.sum() < self.stage_length():
            return False
        if self.histogram.min() < self.min_space_visits:
            return False
        return self.deviation() < 1.0 - self.flatness

    def visit(self, space_index: int) -> None:
        """Record one visit to space_index and update the weights."""
        self.total_visits[space_index] += 1
        if self.frozen:
            return
        self.histogram[space_index] += 1
        if self.verifying:
            self._verify()
            return
        self.log_weights[space_index] -= self.lam
        self.log_weights -= self.log_weights[0]
        if self.is_flat():
            self.lam *= 0.5
            self.n_stages += 1
            self.histogram[:] = 0
            self.verifying = self.lam < self.lam_min

    def _verify(self) -> None:
        # each failed verification doubles the next one
        length = self.stage_length() * 2 ** self.n_corrections
        if self.histogram.sum() < length or self.histogram.min() < self.min_space_visits:
            return
        if self.deviation() < 1.0 - self.flatness:
            self.converged = True
            self.frozen = True
            return
        self.n_corrections += 1
        self.log_weights -= np.log(self.histogram / self.histogram[0])
        self.log_weights -= self.log_weights[0]
        self.histogram[:] = 0

    def finalize_learning(self) -> bool:
        """Freeze the weights.

        Returns:
            True if learning converged before freezing
        """
        self.frozen = True
        return self.converged

    def weight_map(self, spaces: Sequence) -> Dict:
        """{space: w[s]} for spaces listed in index order."""
        return {space: math.exp(self.log_weights[i]) for i, space in enumerate(spaces)}


class ShiftWidthAdapter:
    """
    Per-flavor width of the time-shift proposal.

    Every `interval` proposals of a flavor the width is enlarged if the
    acceptance rate exceeds `target_high` and reduced if it is below
    `target_low`.

    Attributes:
        widths: Current widths, one per flavor
    """

    def __init__(
        self,
        n_flavors: int,
        beta: float,
        initial_width: Optional[float] = None,
        target_low: float = 0.3,
        target_high: float = 0.5,
        interval: int = 50,
        factor: float = 1.2,
    ) -> None:
        self.beta = beta
        width = initial_width if initial_width is not None else 0.1 * beta
        self.widths: List[float] = [width] * n_flavors
        self.target_low = target_low
        self.target_high = target_high
        self.interval = interval
        self.factor = factor
        self._proposed = [0] * n_flavors
        self._accepted = [0] * n_flavors
        self.frozen = False

    def width(self, flavor: int) -> float:
        return self.widths[flavor]

    def record(self, flavor: int, accepted: bool) -> None:
        if self.frozen:
            return
        self._proposed[flavor] += 1
        self._accepted[flavor] += int(accepted)
        if self._proposed[flavor] < self.interval:
            return
        rate = self._accepted[flavor] / self._proposed[flavor]
        if rate > self.target_high:
            self.widths[flavor] = min(self.widths[flavor] * self.factor, self.beta)
        elif rate < self.target_low:
            self.widths[flavor] = max(self.widths[flavor] / self.factor, 1e-6 * self.beta)
        self._proposed[flavor] = 0
        self._accepted[flavor] = 0

    def finalize_learning(self) -> None:
        self.frozen = True


class WindowSizeAdapter:
    """
    Sliding-window size from a moving average of the perturbation order.

        n_window = clip(ceil(⟨order⟩ / F), 1, max_window)
    """

    def __init__(self, n_flavors: int, max_window: int, history: int = 20) -> None:
        self.n_flavors = n_flavors
        self.max_window = max_window
        self._orders = deque(maxlen=history)
        self._frozen_size: Optional[int] = None

    def record(self, order: int) -> None:
        if self._frozen_size is None:
            self._orders.append(order)

    def standard_size(self) -> int:
        if self._frozen_size is not None:
            return self._frozen_size
        if not self._orders:
            return 1
        mean = sum(self._orders) / len(self._orders)
        return int(min(max(math.ceil(mean / self.n_flavors), 1), self.max_window))

    def size_for_rank(self, k: int) -> int:
        """Effective window for rank-k insertion/removal."""
        return max(self.standard_size() // k, 1)

    def finalize_learning(self) -> None:
        self._frozen_size = self.standard_size()
