"""Fermionic operators on the imaginary-time circle.

An operator is a tuple (time, tie_breaker, kind, flavor). Operators are
totally ordered by (time, tie_breaker); the tie breaker only separates worm
operators sitting at the same time. A time-ordered product is written with
later operators to the left:

    T[ψ₁ ψ₂ … ψₙ] = sgn(P) · ψ_{P(1)} … ψ_{P(n)},   τ_{P(1)} > … > τ_{P(n)}
"""

import bisect
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple


class OperatorType(IntEnum):
    """Creation or annihilation operator."""
    CREATE = 0
    ANNIHILATE = 1


@dataclass(frozen=True, order=True)
class Psi:
    """
    Creation or annihilation operator at an imaginary time.

    Attributes:
        time: Imaginary time in [0, β)
        tie_breaker: Orders operators at identical times (0 for hybridized operators)
        kind: OperatorType.CREATE or OperatorType.ANNIHILATE
        flavor: Flavor index in [0, F)
    """
    time: float
    tie_breaker: int
    kind: OperatorType
    flavor: int

    @property
    def key(self) -> Tuple[float, int]:
        """Sort key of the total order."""
        return (self.time, self.tie_breaker)

    @property
    def is_creator(self) -> bool:
        return self.kind == OperatorType.CREATE

    def with_time(self, time: float) -> "Psi":
        return replace(self, time=time)

    def with_flavor(self, flavor: int) -> "Psi":
        return replace(self, flavor=flavor)

    def __repr__(self) -> str:
        symbol = "c†" if self.is_creator else "c"
        tie = f"/{self.tie_breaker}" if self.tie_breaker else ""
        return f"{symbol}_{self.flavor}({self.time:.6g}{tie})"


def creator(time: float, flavor: int, tie_breaker: int = 0) -> Psi:
    return Psi(time, tie_breaker, OperatorType.CREATE, flavor)


def annihilator(time: float, flavor: int, tie_breaker: int = 0) -> Psi:
    return Psi(time, tie_breaker, OperatorType.ANNIHILATE, flavor)


class OperatorString:
    """
    Ordered set of operators, sorted by (time, tie_breaker).

    Supports O(log n) lookup and range queries over the imaginary-time axis.
    Two operators never share the same key; inserting a duplicate key raises
    ValueError.
    """

    def __init__(self, operators: Optional[Iterable[Psi]] = None) -> None:
        self._ops: List[Psi] = []
        self._keys: List[Tuple[float, int]] = []
        if operators is not None:
            for op in sorted(operators):
                self.add(op)

    def add(self, op: Psi) -> None:
        key = op.key
        idx = bisect.bisect_left(self._keys, key)
        if idx < len(self._keys) and self._keys[idx] == key:
            raise ValueError(f"Operator at {key} already present")
        self._keys.insert(idx, key)
        self._ops.insert(idx, op)

    def remove(self, op: Psi) -> None:
        idx = bisect.bisect_left(self._keys, op.key)
        if idx == len(self._keys) or self._ops[idx] != op:
            raise ValueError(f"Operator {op} not found")
        del self._keys[idx]
        del self._ops[idx]

    def update(self, removed: Iterable[Psi] = (), added: Iterable[Psi] = ()) -> None:
        """Remove then add operators."""
        for op in removed:
            self.remove(op)
        for op in added:
            self.add(op)

    def __contains__(self, op: Psi) -> bool:
        idx = bisect.bisect_left(self._keys, op.key)
        return idx < len(self._keys) and self._ops[idx] == op

    def has_key(self, key: Tuple[float, int]) -> bool:
        idx = bisect.bisect_left(self._keys, key)
        return idx < len(self._keys) and self._keys[idx] == key

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[Psi]:
        return iter(self._ops)

    def __getitem__(self, idx: int) -> Psi:
        return self._ops[idx]

    def range(self, tau_low: float, tau_high: float) -> List[Psi]:
        """Operators with tau_low <= time < tau_high."""
        lo = bisect.bisect_left(self._keys, (tau_low, -1 << 62))
        hi = bisect.bisect_left(self._keys, (tau_high, -1 << 62))
        return self._ops[lo:hi]

    def count(self, kind: Optional[OperatorType] = None, flavor: Optional[int] = None) -> int:
        return sum(
            1 for op in self._ops
            if (kind is None or op.kind == kind) and (flavor is None or op.flavor == flavor)
        )

    def to_list(self) -> List[Psi]:
        return list(self._ops)

    def copy(self) -> "OperatorString":
        new = OperatorString()
        new._ops = list(self._ops)
        new._keys = list(self._keys)
        return new

    def is_sorted(self) -> bool:
        return all(self._keys[i] < self._keys[i + 1] for i in range(len(self._keys) - 1))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OperatorString):
            return NotImplemented
        return self._ops == other._ops

    def __repr__(self) -> str:
        return f"OperatorString({self._ops})"


def count_inversions(values: Sequence) -> int:
    """Number of pairs i < j with values[i] > values[j] (merge sort)."""
    items = list(values)
    n_inv = 0
    width = 1
    n = len(items)
    buffer = items[:]
    while width < n:
        for lo in range(0, n, 2 * width):
            mid = min(lo + width, n)
            hi = min(lo + 2 * width, n)
            i, j, k = lo, mid, lo
            while i < mid and j < hi:
                if items[j] < items[i]:
                    buffer[k] = items[j]
                    n_inv += mid - i
                    j += 1
                else:
                    buffer[k] = items[i]
                    i += 1
                k += 1
            buffer[k:hi] = items[i:mid] + items[j:hi]
        items, buffer = buffer, items
        width *= 2
    return n_inv


def permutation_sign(operators: Sequence[Psi]) -> int:
    """Sign of the permutation bringing a product into time order.

    The product is read left to right; time order puts later operators to
    the left, so every pair (i < j) with op_i earlier than op_j is one
    transposition.
    """
    negated = [(-op.time, -op.tie_breaker) for op in operators]
    return -1 if count_inversions(negated) % 2 else 1


def shift_operator(op: Psi, dt: float, beta: float) -> Tuple[Psi, bool]:
    """Shift an operator by dt on the circle [0, β).

    Returns:
        (shifted operator, True if the shift wrapped around β)
    """
    new_time = op.time + dt
    wrapped = False
    while new_time >= beta:
        new_time -= beta
        wrapped = not wrapped
    while new_time < 0.0:
        new_time += beta
        wrapped = not wrapped
    return op.with_time(new_time), wrapped


def global_shift(operators: Iterable[Psi], dt: float, beta: float) -> Tuple[List[Psi], int]:
    """Shift every operator by dt modulo β.

    Each wrapped operator moves from one end of the time-ordered product to
    the other; the product therefore picks up a factor (-1)**n_wraps.

    Returns:
        (shifted operators in input order, number of wrapped operators)
    """
    shifted = []
    n_wraps = 0
    for op in operators:
        new_op, wrapped = shift_operator(op, dt, beta)
        shifted.append(new_op)
        n_wraps += int(wrapped)
    return shifted, n_wraps
