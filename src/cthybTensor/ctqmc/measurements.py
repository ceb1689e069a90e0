"""Measurement accumulators.

Every accumulator has

    measure(...)  add one configuration snapshot,
    merge(other)  reduce the sums of another walker into this one,
    result(...)   normalized estimate.

Z-space estimators are divided by the accumulated Z-space sign. Worm
estimators accumulate sign/η with η = w[s]/w[Z] the frozen space weight,
and are normalized by the same Z-space sign sum:

    G_l (Z space)      = √(2l+1)/β · ⟨Σ_ij M_ji s_ij P_l(x_ij)⟩ / ⟨sign⟩
    G_l (G1 worm)      = −√(2l+1)/β · Σ_G sign s P_l(x) / (η Σ_Z sign)
    ⟨c†_a c_b⟩         = 1/β · Σ_ETG1 sign / (η Σ_Z sign)
    ⟨c†_a c_b c†_c c_d⟩ = 1/β · Σ_ETG2 sign / (η Σ_Z sign)
    χ_l (two-time G2)  = √(2l+1)/β · Σ_TTG2 sign P_l(x) / (η Σ_Z sign)
    ⟨k_L k_R⟩, ⟨k⟩     = Σ_Z sign k_L k_R / Σ_Z sign,  Σ_Z sign k / Σ_Z sign

with x = 2 (Δτ mod β)/β − 1 and s = −1 when Δτ < 0 (fermionic wrap).
"""

import time
from contextlib import contextmanager
from typing import Dict, Sequence

import numpy as np
import torch

from cthybTensor.ctqmc.configuration import ConfigSpace
from cthybTensor.manybody.legendre import legendre_values, sqrt_2l_1


def _x_and_sign(dt: torch.Tensor, beta: float):
    sign = 1.0 - 2.0 * (dt < 0).to(torch.float64)
    x = 2.0 * torch.remainder(dt, beta) / beta - 1.0
    return x, sign


class ScalarAccumulator:
    """Running sum of a (possibly complex) scalar."""

    def __init__(self) -> None:
        self.sum = 0.0
        self.count = 0

    def measure(self, value) -> None:
        self.sum += value
        self.count += 1

    def merge(self, other: "ScalarAccumulator") -> None:
        self.sum += other.sum
        self.count += other.count

    def mean(self):
        return self.sum / self.count if self.count else 0.0


class SpaceVisitCounter:
    """Number of measurements taken in each configuration space."""

    def __init__(self, spaces: Sequence[ConfigSpace]) -> None:
        self.spaces = list(spaces)
        self.counts = np.zeros(len(self.spaces), dtype=np.int64)

    def measure(self, space: ConfigSpace) -> None:
        self.counts[self.spaces.index(space)] += 1

    def merge(self, other: "SpaceVisitCounter") -> None:
        self.counts += other.counts

    def result(self, weights: Sequence[float]) -> Dict[str, Dict[str, float]]:
        """Visit counts and volumes (counts/w[s] relative to Z space)."""
        counts = {space.name: int(n) for space, n in zip(self.spaces, self.counts)}
        z_count = max(int(self.counts[0]), 1)
        volumes = {
            space.name: float(n) / weights[i] / z_count
            for i, (space, n) in enumerate(zip(self.spaces, self.counts))
        }
        return {"visits": counts, "volumes": volumes}


class GreensFunctionLegendreZ:
    """G_l from the inverse hybridization matrix in Z space."""

    def __init__(self, n_flavors: int, n_legendre: int, beta: float, dtype: torch.dtype) -> None:
        self.n_flavors = n_flavors
        self.n_legendre = n_legendre
        self.beta = beta
        self.data = torch.zeros((n_legendre, n_flavors, n_flavors), dtype=dtype)

    def measure(self, config, sign) -> None:
        for block in config.det.blocks:
            if block.size == 0:
                continue
            t_c = torch.tensor([op.time for op in block.annihilators], dtype=torch.float64)
            t_cdag = torch.tensor([op.time for op in block.creators], dtype=torch.float64)
            f_c = torch.tensor([op.flavor for op in block.annihilators], dtype=torch.long)
            f_cdag = torch.tensor([op.flavor for op in block.creators], dtype=torch.long)
            # dt[j, i] = τ(c_j) − τ(c†_i)
            x, wrap = _x_and_sign(t_c[:, None] - t_cdag[None, :], self.beta)
            P = legendre_values(x, self.n_legendre)              # (n, n, L)
            inv = block.inv.to(self.data.dtype)
            values = (inv * wrap.to(inv.dtype) * sign)[..., None] * P.to(inv.dtype)
            flat_index = (f_c[:, None] * self.n_flavors + f_cdag[None, :]).reshape(-1)
            self.data.view(self.n_legendre, -1).index_add_(1, flat_index, values.reshape(-1, self.n_legendre).T)

    def merge(self, other: "GreensFunctionLegendreZ") -> None:
        self.data += other.data

    def result(self, sign_sum) -> torch.Tensor:
        norm = sqrt_2l_1(self.n_legendre).to(self.data.dtype) / self.beta
        return norm[:, None, None] * self.data / sign_sum


class OrderHistogram:
    """Histogram of the per-flavor perturbation order in Z space."""

    def __init__(self, n_flavors: int, max_order: int) -> None:
        self.n_flavors = n_flavors
        self.max_order = max_order
        self.counts = np.zeros((n_flavors, max_order), dtype=np.int64)

    def measure(self, config) -> None:
        for f in range(self.n_flavors):
            order = sum(1 for op in config.hyb_operators if op.flavor == f and op.is_creator)
            self.counts[f, min(order, self.max_order - 1)] += 1

    def merge(self, other: "OrderHistogram") -> None:
        self.counts += other.counts

    def result(self) -> np.ndarray:
        total = self.counts.sum(axis=1, keepdims=True)
        return self.counts / np.maximum(total, 1)


class DensityAccumulator:
    """⟨n_f⟩ from Tr[P n_f] / Tr[P] with n_f inserted at τ = 0."""

    def __init__(self, model, dtype: torch.dtype) -> None:
        self.model = model
        self.n_flavors = model.n_flavors
        self.data = torch.zeros(self.n_flavors, dtype=dtype)

    def measure(self, config, window, sign) -> None:
        product = window.compute_full_product(config.operators)
        trace = product.trace()
        if trace.is_zero():
            return
        for f in range(self.n_flavors):
            value = product.trace_with(self.model.density_matrix(f)) / trace
            self.data[f] += value.to_number() * sign

    def merge(self, other: "DensityAccumulator") -> None:
        self.data += other.data

    def result(self, sign_sum) -> torch.Tensor:
        return self.data / sign_sum


class ExpansionOrderSplit:
    """⟨k_L k_R⟩ and ⟨k⟩ for the fidelity susceptibility.

    k_L counts the hybridized operators in [0, β/2), k_R those in
    [β/2, β), and k = k_L + k_R. Each operator is one hybridization vertex.
    """

    def __init__(self, beta: float) -> None:
        self.beta = beta
        self.kLkR = ScalarAccumulator()
        self.k = ScalarAccumulator()

    def measure(self, config, sign) -> None:
        times = [op.time for op in config.hyb_operators]
        k_left = sum(1 for t in times if t < 0.5 * self.beta)
        self.kLkR.measure(sign * k_left * (len(times) - k_left))
        self.k.measure(sign * len(times))

    def merge(self, other: "ExpansionOrderSplit") -> None:
        self.kLkR.merge(other.kLkR)
        self.k.merge(other.k)

    def result(self, sign_sum) -> Dict[str, object]:
        return {"kLkR": self.kLkR.sum / sign_sum, "k": self.k.sum / sign_sum}


class WormGreensFunctionLegendre:
    """G_l from the G1 worm c_a(τ) c†_b(τ')."""

    def __init__(self, n_flavors: int, n_legendre: int, beta: float) -> None:
        self.n_legendre = n_legendre
        self.beta = beta
        self.data = torch.zeros((n_legendre, n_flavors, n_flavors), dtype=torch.complex128)

    def measure(self, config, sign, eta: float) -> None:
        c, cdag = config.worm.operators
        x, wrap = _x_and_sign(torch.tensor(c.time - cdag.time, dtype=torch.float64), self.beta)
        P = legendre_values(x, self.n_legendre)
        self.data[:, c.flavor, cdag.flavor] += (sign * wrap.item() / eta) * P.to(torch.complex128)

    def merge(self, other: "WormGreensFunctionLegendre") -> None:
        self.data += other.data

    def result(self, sign_sum) -> torch.Tensor:
        norm = sqrt_2l_1(self.n_legendre).to(torch.complex128) / self.beta
        return -norm[:, None, None] * self.data / sign_sum


class EqualTimeAccumulator:
    """Equal-time worm ⟨c†_a c_b⟩ or ⟨c†_a c_b c†_c c_d⟩."""

    def __init__(self, n_flavors: int, n_indices: int, beta: float) -> None:
        self.beta = beta
        self.data = torch.zeros((n_flavors,) * n_indices, dtype=torch.complex128)

    def measure(self, config, sign, eta: float) -> None:
        self.data[tuple(config.worm.flavors)] += sign / eta

    def merge(self, other: "EqualTimeAccumulator") -> None:
        self.data += other.data

    def result(self, sign_sum) -> torch.Tensor:
        return self.data / (self.beta * sign_sum)


class TwoTimeG2Legendre:
    """χ_l^{abcd} of ⟨c†_a c_b(τ) c†_c c_d(τ')⟩ in the Legendre basis."""

    def __init__(self, n_flavors: int, n_legendre: int, beta: float) -> None:
        self.n_legendre = n_legendre
        self.beta = beta
        self.data = torch.zeros((n_legendre,) + (n_flavors,) * 4, dtype=torch.complex128)

    def measure(self, config, sign, eta: float) -> None:
        worm = config.worm
        dt = (worm.times[0] - worm.times[1]) % self.beta
        P = legendre_values(2.0 * dt / self.beta - 1.0, self.n_legendre)
        a, b, c, d = worm.flavors
        self.data[:, a, b, c, d] += (sign / eta) * P.to(torch.complex128)

    def merge(self, other: "TwoTimeG2Legendre") -> None:
        self.data += other.data

    def result(self, sign_sum) -> torch.Tensor:
        norm = sqrt_2l_1(self.n_legendre).to(torch.complex128) / self.beta
        return norm.reshape((-1, 1, 1, 1, 1)) * self.data / sign_sum


class Timings:
    """Accumulated wall-clock time per region.

    The walker reports local updates, global updates and measurements
    separately; all three are present even if a region never ran.
    """

    REGIONS = ("local", "global", "measurement")

    def __init__(self, clock=time.perf_counter) -> None:
        self.clock = clock
        self.seconds: Dict[str, float] = {name: 0.0 for name in self.REGIONS}

    @contextmanager
    def region(self, name: str):
        start = self.clock()
        try:
            yield
        finally:
            self.seconds[name] = self.seconds.get(name, 0.0) + self.clock() - start

    def merge(self, other: "Timings") -> None:
        for name, value in other.seconds.items():
            self.seconds[name] = self.seconds.get(name, 0.0) + value

    def per_sweep(self, n_sweeps: int) -> Dict[str, float]:
        """Seconds per sweep in each region (zeros before the first sweep)."""
        return {name: value / max(n_sweeps, 1) for name, value in self.seconds.items()}


class MeasurementSet:
    """
    All accumulators of one walker, routed by configuration space.

    Attributes:
        spaces: [Z_FUNCTION] + enabled worm spaces
        sign: Z-space sign accumulator
        visits: SpaceVisitCounter
    """

    def __init__(self, params, model, spaces: Sequence[ConfigSpace], dtype: torch.dtype) -> None:
        F = params.n_flavors
        beta = params.beta
        self.beta = beta
        self.rotation = model.rotation
        self.spaces = list(spaces)
        self.sign = ScalarAccumulator()
        self.visits = SpaceVisitCounter(self.spaces)
        self.g_legendre = GreensFunctionLegendreZ(F, params.n_legendre_g1, beta, dtype)
        self.order_histogram = OrderHistogram(F, params.max_order_histogram)
        self.density = DensityAccumulator(model, dtype)
        self.order_split = ExpansionOrderSplit(beta)
        self.worm: Dict[ConfigSpace, object] = {}
        if ConfigSpace.G1 in self.spaces:
            self.worm[ConfigSpace.G1] = WormGreensFunctionLegendre(F, params.n_legendre_g1, beta)
        if ConfigSpace.EQUAL_TIME_G1 in self.spaces:
            self.worm[ConfigSpace.EQUAL_TIME_G1] = EqualTimeAccumulator(F, 2, beta)
        if ConfigSpace.EQUAL_TIME_G2 in self.spaces:
            self.worm[ConfigSpace.EQUAL_TIME_G2] = EqualTimeAccumulator(F, 4, beta)
        if ConfigSpace.TWO_TIME_G2 in self.spaces:
            self.worm[ConfigSpace.TWO_TIME_G2] = TwoTimeG2Legendre(F, params.n_legendre_two_time_g2, beta)

    @property
    def n_measurements(self) -> int:
        return int(self.visits.counts.sum())

    def measure(self, config, window, weights: Dict[ConfigSpace, float]) -> None:
        """Route one snapshot to the accumulators of the current space.

        Raises:
            RuntimeError: If the current space has no accumulator
        """
        space = config.space
        sign = config.sign
        if space == ConfigSpace.Z_FUNCTION:
            self.visits.measure(space)
            self.sign.measure(sign)
            self.g_legendre.measure(config, sign)
            self.order_histogram.measure(config)
            self.density.measure(config, window, sign)
            self.order_split.measure(config, sign)
            return
        accumulator = self.worm.get(space)
        if accumulator is None:
            raise RuntimeError(f"No measurement registered for worm space {space.name}")
        self.visits.measure(space)
        accumulator.measure(config, sign, weights[space] / weights[ConfigSpace.Z_FUNCTION])

    def merge(self, other: "MeasurementSet") -> None:
        self.sign.merge(other.sign)
        self.visits.merge(other.visits)
        self.g_legendre.merge(other.g_legendre)
        self.order_histogram.merge(other.order_histogram)
        self.density.merge(other.density)
        self.order_split.merge(other.order_split)
        for space, accumulator in self.worm.items():
            accumulator.merge(other.worm[space])

    def result(self, weights: Sequence[float]) -> Dict[str, object]:
        """Normalized observables.

        Args:
            weights: Space weights in the order of self.spaces

        Returns:
            Dictionary of observables (empty estimates if nothing was measured)
        """
        sign_sum = self.sign.sum if self.sign.count else 1.0
        G_l = self.g_legendre.result(sign_sum)
        U = self.rotation.to(torch.complex128)
        G_l_c = G_l.to(torch.complex128)
        results: Dict[str, object] = {
            "sign": self.sign.mean(),
            "n_measurements": self.n_measurements,
            "G_l": G_l,
            "G_l_rotated": U @ G_l_c @ U.conj().T,
            "n": self.density.result(sign_sum),
            "order_histogram": self.order_histogram.result(),
        }
        results.update(self.visits.result(weights))
        results.update(self.order_split.result(sign_sum))
        names = {
            ConfigSpace.G1: "G1_l",
            ConfigSpace.EQUAL_TIME_G1: "equal_time_G1",
            ConfigSpace.EQUAL_TIME_G2: "equal_time_G2",
            ConfigSpace.TWO_TIME_G2: "two_time_G2_l",
        }
        for space, accumulator in self.worm.items():
            results[names[space]] = accumulator.result(sign_sum)
        return results
