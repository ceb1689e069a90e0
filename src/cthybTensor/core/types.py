"""Type definitions for cthybTensor core module."""

from dataclasses import dataclass, field, fields
from typing import Optional, List, Dict, Any


# Upper-case parameter names accepted by SolverParameters.from_dict
_PARAMETER_ALIASES = {
    "BETA": "beta",
    "SITES": "sites",
    "SPINS": "spins",
    "N_TAU_HYB": "n_tau_hyb",
    "N_MEAS": "n_meas",
    "N_GLOBAL_UPDATES": "n_global_updates",
    "MULTI_PAIR_INS_REM": "multi_pair_ins_rem",
    "SLIDING_WINDOW_MAX": "sliding_window_max",
    "THERMALIZATION_TIME": "thermalization_time",
    "TIME_LIMIT": "time_limit",
    "SWAP_VECTOR": "swap_vector",
    "MAX_ORDER_HISTOGRAM": "max_order_histogram",
    "N_LEGENDRE_MEASUREMENT": "n_legendre_g1",
    "N_LEGENDRE_G1": "n_legendre_g1",
    "N_LEGENDRE_N2_MEASUREMENT": "n_legendre_two_time_g2",
    "N_LEGENDRE_TWO_TIME_G2": "n_legendre_two_time_g2",
    "N_TAU": "n_tau",
    "N_MATSUBARA": "n_matsubara",
    "SEED": "seed",
    "MEASURE_G1": "measure_g1",
    "MEASURE_TWO_TIME_G2": "measure_two_time_g2",
    "MEASURE_EQUAL_TIME_G1": "measure_equal_time_g1",
    "MEASURE_EQUAL_TIME_G2": "measure_equal_time_g2",
}


@dataclass
class SolverParameters:
    """
    Parameters of a CT-HYB simulation.

    Field names are lower-case versions of the conventional ALPS-style
    parameter names (BETA, SITES, SPINS, ...). Use from_dict() to build from
    a dictionary using either spelling.

    Attributes:
        beta: Inverse temperature (length of the imaginary-time circle)
        sites: Number of sites/orbitals per spin
        spins: Number of spin components
        n_tau_hyb: Number of τ intervals of the hybridization grid
        n_meas: Sweeps per measurement batch
        n_global_updates: Global updates are attempted every n_global_updates sweeps
        multi_pair_ins_rem: Maximum rank k of pair insertion/removal
        sliding_window_max: Upper bound of the sliding-window size
        thermalization_time: Wall-clock seconds before measurements start
                             (default: 25% of time_limit)
        time_limit: Wall-clock seconds of the whole run
        swap_vector: Flavor permutations used by global flavor exchange
        measure_g1: Enable the G1 worm space
        measure_two_time_g2: Enable the two-time G2 worm space
        measure_equal_time_g1: Enable the equal-time G1 worm space
        measure_equal_time_g2: Enable the equal-time G2 worm space
        max_order_histogram: Size of the perturbation-order histogram
        n_legendre_g1: Legendre coefficients of the single-particle G
        n_legendre_two_time_g2: Legendre coefficients of two-time G2
        n_tau: Imaginary-time grid used in post-processing
        n_matsubara: Number of positive Matsubara frequencies in post-processing
        seed: Seed of the walker random number generator
    """
    beta: float = 1.0
    sites: int = 1
    spins: int = 2
    n_tau_hyb: int = 1000
    n_meas: int = 10
    n_global_updates: int = 10
    multi_pair_ins_rem: int = 1
    sliding_window_max: int = 1000
    thermalization_time: Optional[float] = None
    time_limit: float = 60.0
    swap_vector: List[List[int]] = field(default_factory=list)
    measure_g1: bool = False
    measure_two_time_g2: bool = False
    measure_equal_time_g1: bool = False
    measure_equal_time_g2: bool = False
    max_order_histogram: int = 1000
    n_legendre_g1: int = 50
    n_legendre_two_time_g2: int = 20
    n_tau: int = 1000
    n_matsubara: int = 500
    seed: int = 42
    flat_histogram_lambda: float = 1.0
    flat_histogram_lambda_min: float = 1e-2
    flat_histogram_flatness: float = 0.8
    flat_histogram_min_visits: int = 100
    det_rebuild_interval: int = 100
    sanity_check_interval: int = 0
    debug: bool = False
    verbose: bool = True

    def __post_init__(self) -> None:
        if self.thermalization_time is None:
            self.thermalization_time = 0.25 * self.time_limit

    @property
    def n_flavors(self) -> int:
        """Number of flavors F = SPINS × SITES."""
        return self.sites * self.spins

    def validate(self) -> "SolverParameters":
        """Check parameters for consistency.

        Returns:
            self, to allow chaining

        Raises:
            ValueError: If a parameter is out of range
        """
        if self.beta <= 0:
            raise ValueError(f"BETA must be positive, got {self.beta}")
        if self.sites < 1 or self.spins < 1:
            raise ValueError(
                f"SITES and SPINS must be positive, got SITES={self.sites}, SPINS={self.spins}"
            )
        if self.n_tau_hyb < 1:
            raise ValueError(f"N_TAU_HYB must be positive, got {self.n_tau_hyb}")
        if self.n_meas < 1:
            raise ValueError(f"N_MEAS must be positive, got {self.n_meas}")
        if self.n_global_updates < 1:
            raise ValueError(f"N_GLOBAL_UPDATES must be positive, got {self.n_global_updates}")
        if self.multi_pair_ins_rem < 1:
            raise ValueError(
                f"MULTI_PAIR_INS_REM must be at least 1, got {self.multi_pair_ins_rem}"
            )
        if self.sliding_window_max < 1:
            raise ValueError(
                f"SLIDING_WINDOW_MAX must be at least 1, got {self.sliding_window_max}"
            )
        if self.time_limit <= 0:
            raise ValueError(f"TIME_LIMIT must be positive, got {self.time_limit}")
        if self.thermalization_time < 0:
            raise ValueError("THERMALIZATION_TIME must not be negative")
        if self.thermalization_time > 0.9 * self.time_limit:
            raise ValueError(
                f"THERMALIZATION_TIME ({self.thermalization_time}) must not exceed "
                f"90% of TIME_LIMIT ({self.time_limit})"
            )
        if self.n_legendre_g1 < 1 or self.n_legendre_two_time_g2 < 1:
            raise ValueError("Number of Legendre coefficients must be positive")
        if self.max_order_histogram < 1:
            raise ValueError("MAX_ORDER_HISTOGRAM must be positive")
        if not 0.0 < self.flat_histogram_flatness < 1.0:
            raise ValueError(
                f"flat_histogram_flatness must be in (0, 1), got {self.flat_histogram_flatness}"
            )
        if self.flat_histogram_lambda <= 0 or self.flat_histogram_lambda_min <= 0:
            raise ValueError("Flat-histogram modification factors must be positive")
        if self.flat_histogram_min_visits < 1:
            raise ValueError(
                f"flat_histogram_min_visits must be positive, got {self.flat_histogram_min_visits}"
            )

        n_flavors = self.n_flavors
        for perm in self.swap_vector:
            if sorted(perm) != list(range(n_flavors)):
                raise ValueError(
                    f"SWAP_VECTOR entry {perm} is not a permutation of {n_flavors} flavors"
                )
        return self

    def worm_spaces(self) -> List[str]:
        """Names of the enabled worm spaces, in the canonical order."""
        names = []
        if self.measure_g1:
            names.append("G1")
        if self.measure_two_time_g2:
            names.append("TWO_TIME_G2")
        if self.measure_equal_time_g1:
            names.append("EQUAL_TIME_G1")
        if self.measure_equal_time_g2:
            names.append("EQUAL_TIME_G2")
        return names

    def as_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SolverParameters":
        """Create SolverParameters from a dictionary.

        Both upper-case names (e.g. 'BETA', 'N_MEAS') and field names are
        accepted. Unknown keys are ignored.

        Examples:
            >>> p = SolverParameters.from_dict({'BETA': 10.0, 'SITES': 1, 'SPINS': 2})
            >>> p.n_flavors
            2
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in d.items():
            name = _PARAMETER_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)
