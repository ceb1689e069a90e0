"""Monte Carlo configuration of the hybridization expansion.

A configuration consists of

    - the hybridized operators (those entering the determinant matrix),
    - at most one worm (auxiliary operators defining a worm space),
    - the determinant matrix, the local trace and the Monte Carlo sign.

Its weight is

    w = sgn(P) · Tr[T e^{-βH} ops] · Π_b det D_b,

where the operators are listed as [worm ops] + [c†₁ c₁ c†₂ c₂ …] (pairs
per determinant block, creators and annihilators sorted by time) and P is
the permutation bringing that list into time order.

Worm operators at a common time are ordered by tie breakers: in an
equal-time group of 2k operators the one at product position p carries
100·(2k − p), so the leftmost operator of the group is the latest.
"""

from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple, Type

from cthybTensor.core.scaled import ScaledNumber
from cthybTensor.ctqmc.determinant import DeterminantMatrix
from cthybTensor.ctqmc.operators import (
    OperatorString,
    Psi,
    annihilator,
    creator,
    permutation_sign,
)


class ConfigSpace(IntEnum):
    """Configuration space of the walker."""
    Z_FUNCTION = 0
    G1 = 1
    TWO_TIME_G2 = 2
    EQUAL_TIME_G1 = 3
    EQUAL_TIME_G2 = 4


def _equal_time_group(time: float, flavors: Sequence[int]) -> List[Psi]:
    """c†_{f0} c_{f1} c†_{f2} … at one time, leftmost operator latest."""
    n = len(flavors)
    ops = []
    for p, f in enumerate(flavors):
        tie = 100 * (n - p)
        ops.append(creator(time, f, tie) if p % 2 == 0 else annihilator(time, f, tie))
    return ops


class Worm:
    """
    Fixed-shape set of worm operators.

    Subclasses fix the space, the number of independent times and the
    number of flavor indices, and build the operators in product order.

    Attributes:
        times: Independent worm times
        flavors: Flavor indices
        operators: Worm operators in product order
    """

    space: ConfigSpace = ConfigSpace.Z_FUNCTION
    n_times: int = 0
    n_flavor_indices: int = 0
    # flavor indices attached to each time index
    flavors_of_time: Tuple[Tuple[int, ...], ...] = ()

    def __init__(self, times: Sequence[float], flavors: Sequence[int]) -> None:
        if len(times) != self.n_times or len(flavors) != self.n_flavor_indices:
            raise ValueError(
                f"{type(self).__name__} needs {self.n_times} times and "
                f"{self.n_flavor_indices} flavors, got {len(times)} and {len(flavors)}"
            )
        self.times = tuple(float(t) for t in times)
        self.flavors = tuple(int(f) for f in flavors)
        self.operators = tuple(self._build())

    def _build(self) -> List[Psi]:
        raise NotImplementedError

    def with_times_flavors(self, times: Sequence[float], flavors: Sequence[int]) -> "Worm":
        return type(self)(times, flavors)

    def operators_of_time(self, index: int) -> List[Psi]:
        """Operators sitting at time index `index`."""
        time = self.times[index]
        return [op for op in self.operators if op.time == time]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Worm):
            return NotImplemented
        return type(self) is type(other) and self.operators == other.operators

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self.operators)})"


class GreensFunctionWorm(Worm):
    """G1 worm c_a(τ) c†_b(τ')."""
    space = ConfigSpace.G1
    n_times = 2
    n_flavor_indices = 2
    flavors_of_time = ((0,), (1,))

    def _build(self) -> List[Psi]:
        return [annihilator(self.times[0], self.flavors[0]), creator(self.times[1], self.flavors[1])]


class EqualTimeG1Worm(Worm):
    """Equal-time worm c†_a(τ) c_b(τ)."""
    space = ConfigSpace.EQUAL_TIME_G1
    n_times = 1
    n_flavor_indices = 2
    flavors_of_time = ((0, 1),)

    def _build(self) -> List[Psi]:
        return _equal_time_group(self.times[0], self.flavors)


class TwoTimeG2Worm(Worm):
    """Two-time worm c†_a(τ) c_b(τ) c†_c(τ') c_d(τ')."""
    space = ConfigSpace.TWO_TIME_G2
    n_times = 2
    n_flavor_indices = 4
    flavors_of_time = ((0, 1), (2, 3))

    def _build(self) -> List[Psi]:
        return (_equal_time_group(self.times[0], self.flavors[:2])
                + _equal_time_group(self.times[1], self.flavors[2:]))


class EqualTimeG2Worm(Worm):
    """Equal-time worm c†_a c_b c†_c c_d at one time."""
    space = ConfigSpace.EQUAL_TIME_G2
    n_times = 1
    n_flavor_indices = 4
    flavors_of_time = ((0, 1, 2, 3),)

    def _build(self) -> List[Psi]:
        return _equal_time_group(self.times[0], self.flavors)


WORM_TYPES: Dict[ConfigSpace, Type[Worm]] = {
    ConfigSpace.G1: GreensFunctionWorm,
    ConfigSpace.EQUAL_TIME_G1: EqualTimeG1Worm,
    ConfigSpace.TWO_TIME_G2: TwoTimeG2Worm,
    ConfigSpace.EQUAL_TIME_G2: EqualTimeG2Worm,
}

_KEEP = object()


class Configuration:
    """
    Mutable state of one walker.

    Attributes:
        beta: Inverse temperature
        hyb_operators: Hybridized operators (OperatorString)
        operators: All operators, hybridized and worm (OperatorString)
        worm: Current worm or None (Z space)
        det: DeterminantMatrix over hyb_operators
        trace: Tr[T e^{-βH} ops] (ScaledNumber)
        sign: Phase of the weight
    """

    def __init__(self, beta: float, model, hybridization, det: Optional[DeterminantMatrix] = None) -> None:
        self.beta = float(beta)
        self.model = model
        self.hybridization = hybridization
        self.hyb_operators = OperatorString()
        self.operators = OperatorString()
        self.worm: Optional[Worm] = None
        self.det = det if det is not None else DeterminantMatrix(hybridization)
        self.trace = ScaledNumber(model.partition_function(beta))
        self.sign = 1.0

    @property
    def space(self) -> ConfigSpace:
        return ConfigSpace.Z_FUNCTION if self.worm is None else self.worm.space

    @property
    def worm_operators(self) -> Tuple[Psi, ...]:
        return () if self.worm is None else self.worm.operators

    def perturbation_order(self) -> int:
        return len(self.hyb_operators) // 2

    def operator_list(self) -> List[Psi]:
        """[worm ops] + [c†₁ c₁ c†₂ c₂ …] (product order of the weight)."""
        return list(self.worm_operators) + self.det.operator_list()

    def hyb_in_range(self, tau_low: float, tau_high: float, is_creator: Optional[bool] = None,
                     flavor: Optional[int] = None) -> List[Psi]:
        """Hybridized operators with tau_low <= time < tau_high."""
        return [
            op for op in self.hyb_operators.range(tau_low, tau_high)
            if (is_creator is None or op.is_creator == is_creator)
            and (flavor is None or op.flavor == flavor)
        ]

    def weight(self) -> ScaledNumber:
        return self.trace * self.det.determinant() * permutation_sign(self.operator_list())

    def recompute_sign(self) -> None:
        self.sign = self.weight().phase()

    def is_free(self, ops: Sequence[Psi]) -> bool:
        """True if no operator in ops collides with an existing key."""
        keys = {op.key for op in ops}
        return len(keys) == len(ops) and not any(self.operators.has_key(key) for key in keys)

    def accept(
        self,
        removed: Sequence[Psi] = (),
        added: Sequence[Psi] = (),
        worm=_KEEP,
        trace: Optional[ScaledNumber] = None,
    ) -> None:
        """Commit an accepted update.

        Commits the pending determinant proposal (if any), edits the
        hybridized operators, replaces the worm and stores the new trace.

        Args:
            removed: Hybridized operators leaving the configuration
            added: Hybridized operators entering the configuration
            worm: New worm (None for Z space); the worm is kept if omitted
            trace: New trace (unchanged if None)
        """
        if self.det.has_pending:
            self.det.commit()
        old_worm_ops = self.worm_operators
        self.hyb_operators.update(removed, added)
        if worm is not _KEEP:
            self.worm = worm
        new_worm_ops = self.worm_operators
        self.operators.update(
            list(removed) + [op for op in old_worm_ops if op not in new_worm_ops],
            [op for op in new_worm_ops if op not in old_worm_ops] + list(added),
        )
        if trace is not None:
            self.trace = trace
        self.recompute_sign()

    def reject(self) -> None:
        """Discard a pending determinant proposal."""
        if self.det.has_pending:
            self.det.rollback()

    def rebuild(self, window=None) -> None:
        """Recompute determinant matrix, trace and sign from scratch."""
        self.det.rebuild(self.hyb_operators.to_list())
        if window is not None:
            self.trace = window.compute_trace(self.operators)
        else:
            self.trace = self.model.trace_contribution(self.operators.to_list(), 0.0, self.beta).trace()
        self.recompute_sign()

    def sanity_check(self, window=None, rel_tol: float = 1e-6) -> List[str]:
        """Consistency of the incremental state with a from-scratch evaluation.

        Returns:
            List of problems found (empty if consistent)
        """
        problems = self._worm_problems()
        if problems:
            # the trace of a malformed worm cannot be evaluated
            return problems
        if not self.operators.is_sorted() or not self.hyb_operators.is_sorted():
            problems.append("operator string not sorted")
        expected = sorted(list(self.hyb_operators) + list(self.worm_operators))
        if expected != self.operators.to_list():
            problems.append("operator string differs from hybridized + worm operators")
        det_ops = sorted(self.det.creators() + self.det.annihilators())
        if det_ops != self.hyb_operators.to_list():
            problems.append("determinant matrix operators differ from hybridized operators")
        if not self.det.check_consistency(rel_tol):
            problems.append("determinant matrix inconsistent with from-scratch value")
        scratch = self.model.trace_contribution(self.operators.to_list(), 0.0, self.beta).trace()
        if scratch.is_zero() or not scratch.isclose(self.trace, rel_tol=rel_tol):
            problems.append(f"trace {self.trace} differs from from-scratch value {scratch}")
        if window is not None and not window.check_stacks(self.operators, rel_tol):
            problems.append("sliding-window stacks inconsistent")
        return problems

    def _worm_problems(self) -> List[str]:
        """Shape of the worm: operator count, kinds, times and flavors of its space."""
        worm = self.worm
        if worm is None:
            return []
        space = worm.space.name
        if type(worm) is not WORM_TYPES.get(worm.space):
            return [f"{type(worm).__name__} is not the worm of space {space}"]
        problems = []
        ops = worm.operators
        if len(ops) != worm.n_flavor_indices:
            problems.append(f"worm of space {space} has {len(ops)} operators, expected {worm.n_flavor_indices}")
        if 2 * sum(op.is_creator for op in ops) != len(ops):
            problems.append(f"worm of space {space} has unbalanced creators and annihilators")
        if {op.time for op in ops} != set(worm.times) or len(set(worm.times)) != worm.n_times:
            problems.append(f"worm times {worm.times} disagree with its operators")
        if [op.flavor for op in ops] != list(worm.flavors):
            problems.append(f"worm flavors {worm.flavors} disagree with its operators")
        if any(not 0 <= op.flavor < self.model.n_flavors for op in ops):
            problems.append(f"worm flavor out of range 0..{self.model.n_flavors - 1}")
        return problems

    def __repr__(self) -> str:
        return (f"Configuration(space={self.space.name}, order={self.perturbation_order()}, "
                f"sign={self.sign})")
