"""Monte Carlo driver of one CT-HYB walker.

One sweep, for every insertion rank k = 1..MULTI_PAIR_INS_REM:

    n_win = max(N_win_standard // k, 1)
    repeat max(4·n_win − 4, 1) times:
        F × (k-pair insertion/removal, diagonal k-pair, pair-flavor)
        F·k × single-operator shift
        one worm update (fixed cyclic rotation)
        move the sliding window by one piece

after which the window is back at its canonical position. Global updates
run every N_GLOBAL_UPDATES sweeps with n_win = 1.

Batches of N_MEAS sweeps are separated by wall-clock checks: the walker
becomes thermalized once THERMALIZATION_TIME has elapsed (learning stops,
measurements start) and stops once TIME_LIMIT has elapsed.
"""

import time
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import torch

from cthybTensor.core.types import SolverParameters
from cthybTensor.ctqmc.configuration import ConfigSpace, Configuration
from cthybTensor.ctqmc.determinant import DeterminantMatrix
from cthybTensor.ctqmc.global_updaters import FlavorExchangeUpdater, GlobalShiftUpdater
from cthybTensor.ctqmc.measurements import MeasurementSet, Timings
from cthybTensor.ctqmc.reweighting import FlatHistogram, ShiftWidthAdapter, WindowSizeAdapter
from cthybTensor.ctqmc.sliding_window import SlidingWindowManager
from cthybTensor.ctqmc.updaters import (
    DiagonalInsertionRemovalUpdater,
    InsertionRemovalUpdater,
    OperatorShiftUpdater,
    PairFlavorUpdater,
    Updater,
)
from cthybTensor.ctqmc.worm_updaters import make_worm_updaters


class HybridizationExpansionWalker:
    """
    Single-threaded CT-HYB random walk with worm sampling.

    Attributes:
        params: SolverParameters
        model: ImpurityModel collaborator
        hybridization: HybridizationFunction collaborator
        rng: numpy Generator owned by the walker
        config: Configuration
        window: SlidingWindowManager
        spaces: [Z_FUNCTION] + enabled worm spaces (space index order)
        flat_histogram: FlatHistogram over spaces
        measurements: MeasurementSet
        thermalized: True once THERMALIZATION_TIME has elapsed
        n_sweeps: Number of sweeps done
    """

    def __init__(
        self,
        params: SolverParameters,
        model,
        hybridization,
        rng: Optional[np.random.Generator] = None,
        clock: Optional[Callable[[], float]] = None,
        blocks: Optional[List[List[int]]] = None,
    ) -> None:
        """
        Args:
            params: Simulation parameters
            model: ImpurityModel (eigenbasis, operator matrices)
            hybridization: HybridizationFunction on [0, β]
            rng: Random number generator (default: seeded from params.seed)
            clock: Wall-clock function in seconds (default: time.perf_counter)
            blocks: Flavor blocks of the determinant matrix
                    (default: connected blocks of the hybridization)

        Raises:
            ValueError: If parameters are invalid or disagree with the model
                        or the hybridization grid
        """
        params.validate()
        n_flavors = params.n_flavors
        if model.n_flavors != n_flavors:
            raise ValueError(
                f"Model has {model.n_flavors} flavors, parameters give SITES*SPINS = {n_flavors}"
            )
        if hybridization.n_flavors != n_flavors:
            raise ValueError(
                f"Hybridization has {hybridization.n_flavors} flavors, expected {n_flavors}"
            )
        if abs(hybridization.beta - params.beta) > 1e-10 * params.beta:
            raise ValueError(
                f"Hybridization beta {hybridization.beta} differs from BETA {params.beta}"
            )
        if hybridization.n_tau != params.n_tau_hyb:
            raise ValueError(
                f"Hybridization grid has {hybridization.n_tau} intervals, N_TAU_HYB is {params.n_tau_hyb}"
            )

        self.params = params
        self.model = model
        self.hybridization = hybridization
        self.beta = params.beta
        self.n_flavors = n_flavors
        self.verbose = params.verbose
        self.rng = rng if rng is not None else np.random.default_rng(params.seed)
        self.clock = clock if clock is not None else time.perf_counter
        self.dtype = (
            torch.complex128
            if model.dtype == torch.complex128 or hybridization.dtype == torch.complex128
            else torch.float64
        )

        det = DeterminantMatrix(
            hybridization,
            blocks,
            rebuild_interval=params.det_rebuild_interval,
            verbose=params.verbose,
        )
        self.config = Configuration(self.beta, model, hybridization, det)
        self.window = SlidingWindowManager(model, self.beta)
        self.window.set_window_size(1, self.config.operators)

        self.worm_spaces = [ConfigSpace[name] for name in params.worm_spaces()]
        self.spaces = [ConfigSpace.Z_FUNCTION] + self.worm_spaces
        self.flat_histogram = FlatHistogram(
            len(self.spaces),
            lam=params.flat_histogram_lambda,
            lam_min=params.flat_histogram_lambda_min,
            flatness=params.flat_histogram_flatness,
            min_stage_visits=params.flat_histogram_min_visits,
        )
        self.window_sizes = WindowSizeAdapter(n_flavors, params.sliding_window_max)
        self.shift_widths = ShiftWidthAdapter(n_flavors, self.beta)

        ranks = range(1, params.multi_pair_ins_rem + 1)
        self.insertion_updaters = [InsertionRemovalUpdater(k, n_flavors) for k in ranks]
        self.diagonal_updaters = [DiagonalInsertionRemovalUpdater(k, n_flavors) for k in ranks]
        self.pair_flavor_updater = PairFlavorUpdater()
        self.shift_updater = OperatorShiftUpdater(self.shift_widths)
        self.worm_updaters = make_worm_updaters(self.worm_spaces, n_flavors)
        self._worm_rotation = [u for space in self.worm_spaces for u in self.worm_updaters[space]]
        self.flavor_exchange = FlavorExchangeUpdater(params.swap_vector)
        self.global_shift = GlobalShiftUpdater()

        self.measurements = MeasurementSet(params, model, self.spaces, self.dtype)
        self.timings = Timings(self.clock)
        self.thermalized = False
        self.n_sweeps = 0
        self._worm_step = 0
        self._warned = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def warn_once(self, key: str, message: str) -> None:
        """Print a warning the first time `key` is seen by this walker."""
        if key in self._warned:
            return
        self._warned.add(key)
        if self.verbose:
            print(f"Warning: {message}")

    def space_weights(self) -> Dict[ConfigSpace, float]:
        return self.flat_histogram.weight_map(self.spaces)

    def updaters(self) -> List[Updater]:
        return (
            self.insertion_updaters
            + self.diagonal_updaters
            + [self.pair_flavor_updater, self.shift_updater]
            + self._worm_rotation
            + [self.flavor_exchange, self.global_shift]
        )

    def acceptance_rates(self) -> Dict[str, float]:
        rates: Dict[str, float] = {}
        for updater in self.updaters():
            rates.update(updater.acceptance_rate())
        return rates

    # ------------------------------------------------------------------
    # Monte Carlo steps
    # ------------------------------------------------------------------

    def _worm_substep(self) -> None:
        if not self._worm_rotation:
            return
        updater = self._worm_rotation[self._worm_step % len(self._worm_rotation)]
        self._worm_step += 1
        updater.update(self.rng, self.beta, self.config, self.window, self.space_weights())
        if not self.flat_histogram.frozen:
            self.flat_histogram.visit(self.spaces.index(self.config.space))

    def sweep(self) -> None:
        """One sweep over all insertion ranks (see module docstring)."""
        rng, beta, config, window = self.rng, self.beta, self.config, self.window
        weights = self.space_weights()
        with self.timings.region("local"):
            self._local_sweep(rng, beta, config, window, weights)

        self.n_sweeps += 1
        if self.n_sweeps % self.params.n_global_updates == 0:
            with self.timings.region("global"):
                self.global_updates()
        if not self.thermalized:
            self.window_sizes.record(config.perturbation_order())
        interval = self.params.sanity_check_interval
        if interval > 0 and self.n_sweeps % interval == 0:
            self.check_sanity()

    def _local_sweep(self, rng, beta, config, window, weights) -> None:
        for k in range(1, self.params.multi_pair_ins_rem + 1):
            window.set_window_size(self.window_sizes.size_for_rank(k), config.operators)
            for _ in range(window.n_moves_per_sweep()):
                for _ in range(self.n_flavors):
                    self.insertion_updaters[k - 1].update(rng, beta, config, window, weights)
                    self.diagonal_updaters[k - 1].update(rng, beta, config, window, weights)
                    self.pair_flavor_updater.update(rng, beta, config, window, weights)
                for _ in range(self.n_flavors * k):
                    self.shift_updater.update(rng, beta, config, window, weights)
                self._worm_substep()
                window.move_window_to_next_position(config.operators)
            if window.get_position_right_edge() != 0:
                raise RuntimeError(
                    f"Sliding window ended the sweep at position {window.get_position_right_edge()}"
                )

    def global_updates(self) -> None:
        """Flavor exchange and global shift with the window collapsed to n_win = 1."""
        n_window = self.window.get_n_window()
        self.window.set_window_size(1, self.config.operators)
        self.flavor_exchange.update(self.rng, self.beta, self.config, self.window)
        if len(self.config.operators) > 0:
            if not self.global_shift.update(self.rng, self.beta, self.config, self.window):
                self.warn_once(
                    "global_shift",
                    "global shift rejected although the model is expected to be "
                    "translationally invariant",
                )
        self.window.set_window_size(n_window, self.config.operators)

    def check_sanity(self) -> bool:
        """Compare incremental state with a from-scratch evaluation.

        Returns:
            True if consistent

        Raises:
            RuntimeError: In debug mode, if an invariant is violated
        """
        problems = self.config.sanity_check(self.window)
        if not problems:
            return True
        message = "; ".join(problems)
        if self.params.debug:
            raise RuntimeError(f"Invariant violation after {self.n_sweeps} sweeps: {message}")
        if self.verbose:
            print(f"Warning: {message}. Rebuilding configuration from scratch.")
        self.config.rebuild(self.window)
        self.window.set_window_size(self.window.get_n_window(), self.config.operators)
        return False

    def end_thermalization(self) -> None:
        """Freeze all adaptive parameters and start measuring."""
        self.thermalized = True
        if not self.flat_histogram.finalize_learning():
            self.warn_once(
                "flat_histogram",
                f"flat histogram not converged at the end of thermalization "
                f"(lambda = {self.flat_histogram.lam:.3g}), weights frozen at current values",
            )
        for updater in self.updaters():
            updater.finalize_learning()
        self.window_sizes.finalize_learning()
        if self.verbose:
            weights = ", ".join(f"{s.name}={w:.4g}" for s, w in self.space_weights().items())
            print(f"Thermalized after {self.n_sweeps} sweeps "
                  f"(n_window = {self.window_sizes.standard_size()}, weights: {weights})")

    def measure(self) -> None:
        with self.timings.region("measurement"):
            self.measurements.measure(self.config, self.window, self.space_weights())

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self, batch_callback: Optional[Callable[["HybridizationExpansionWalker"], None]] = None) -> Dict:
        """Run batches of N_MEAS sweeps until TIME_LIMIT.

        Args:
            batch_callback: Called with the walker after every batch
                            (hook for cross-walker reduction)

        Returns:
            Result dictionary (see results())
        """
        start = self.clock()
        if self.verbose:
            print(f"CT-HYB walker: F={self.n_flavors}, beta={self.beta}, "
                  f"worm spaces={[s.name for s in self.worm_spaces]}")
        while True:
            elapsed = self.clock() - start
            if elapsed >= self.params.time_limit:
                break
            if not self.thermalized and elapsed >= self.params.thermalization_time:
                self.end_thermalization()
            for _ in range(self.params.n_meas):
                self.sweep()
                if self.thermalized:
                    self.measure()
            if batch_callback is not None:
                batch_callback(self)
        if self.verbose:
            print(f"Finished {self.n_sweeps} sweeps, {self.measurements.n_measurements} measurements, "
                  f"order {self.config.perturbation_order()}")
        return self.results()

    def results(self) -> Dict:
        """Normalized measurements plus run statistics."""
        weights = list(self.flat_histogram.weights)
        results = self.measurements.result(weights)
        results["acceptance_rates"] = self.acceptance_rates()
        results["timings"] = dict(self.timings.seconds)
        results["timings_per_sweep"] = self.timings.per_sweep(self.n_sweeps)
        results["space_weights"] = {s.name: w for s, w in zip(self.spaces, weights)}
        results["flat_histogram_converged"] = self.flat_histogram.converged
        results["n_sweeps"] = self.n_sweeps
        results["thermalized"] = self.thermalized
        return results


def merge_walker_results(walkers: Sequence[HybridizationExpansionWalker]) -> Dict:
    """Reduce the accumulators of several walkers into one result.

    Args:
        walkers: Walkers that finished run()

    Returns:
        Result dictionary of the merged measurements
    """
    if not walkers:
        raise ValueError("No walkers to merge")
    first = walkers[0]
    merged = MeasurementSet(first.params, first.model, first.spaces, first.dtype)
    timings = Timings()
    rates: Dict[str, List[float]] = {}
    for walker in walkers:
        merged.merge(walker.measurements)
        timings.merge(walker.timings)
        for name, rate in walker.acceptance_rates().items():
            rates.setdefault(name, []).append(rate)
    log_weights = np.mean([w.flat_histogram.log_weights for w in walkers], axis=0)
    weights = list(np.exp(log_weights))
    results = merged.result(weights)
    results["acceptance_rates"] = {name: float(np.mean(v)) for name, v in rates.items()}
    results["timings"] = dict(timings.seconds)
    results["timings_per_sweep"] = timings.per_sweep(sum(w.n_sweeps for w in walkers))
    results["space_weights"] = {s.name: w for s, w in zip(first.spaces, weights)}
    results["flat_histogram_converged"] = all(w.flat_histogram.converged for w in walkers)
    results["n_sweeps"] = sum(w.n_sweeps for w in walkers)
    results["n_walkers"] = len(walkers)
    return results
