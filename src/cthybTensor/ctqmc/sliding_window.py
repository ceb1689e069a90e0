"""Sliding-window evaluation of the local trace.

The imaginary-time circle [0, β) is cut into 2·n_window pieces with edges
τ_k = β k / (2 n_window). The window spans two neighbouring pieces,

    [τ_r, τ_{r+2}),   r = position of the right edge,

and the products of the time-ordered string outside the window are cached
on two stacks (later times to the left):

    RIGHT stack: P[0, τ_k)   for k = 0, 1, …, r
    LEFT stack:  P[τ_k, β)   for k = 2 n_window, …, r + 2

so that for any edit confined to the window

    Tr[T e^{-βH} ops] = Tr[ P[τ_{r+2}, β) · P_window · P[0, τ_r) ].

Moving the window by one piece pushes one frame on one stack and pops one
from the other. One cycle (right edge 0 → 2n−2 → 0) takes 4·n_window − 4
moves and returns the window to its canonical position r = 0.

References:
    - Shinaoka, Nomura, Gull, PRB 90, 155120 (2014): sliding-window CT-HYB
"""

from enum import IntEnum
from typing import List, Sequence, Tuple

from cthybTensor.core.scaled import ScaledMatrix, ScaledNumber


class WindowDirection(IntEnum):
    """Direction of the next move of the window."""
    LEFT = 0   # towards larger τ
    RIGHT = 1  # towards smaller τ


class SlidingWindowManager:
    """
    Cached partial products of the time-ordered operator string.

    Attributes:
        model: ImpurityModel collaborator (trace_contribution)
        beta: Inverse temperature
        n_window: Number of window pairs (2·n_window pieces)
        position: Right edge r of the window
        direction: Direction of the next move
    """

    def __init__(self, model, beta: float) -> None:
        self.model = model
        self.beta = float(beta)
        self.n_window = 1
        self.position = 0
        self.direction = WindowDirection.LEFT
        self._right_stack: List[ScaledMatrix] = []
        self._left_stack: List[ScaledMatrix] = []

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def tau_edge(self, k: int) -> float:
        if k >= 2 * self.n_window:
            return self.beta
        return self.beta * k / (2 * self.n_window)

    def window_range(self) -> Tuple[float, float]:
        """Imaginary-time interval [τ_low, τ_high) of the current window."""
        return self.tau_edge(self.position), self.tau_edge(self.position + 2)

    def window_width(self) -> float:
        low, high = self.window_range()
        return high - low

    def random_time(self, rng) -> float:
        """Uniform time in the window."""
        low, high = self.window_range()
        time = low + (high - low) * rng.random()
        return time if time < high else low

    def in_window(self, time: float) -> bool:
        low, high = self.window_range()
        return low <= time < high

    def get_position_right_edge(self) -> int:
        return self.position

    def get_n_window(self) -> int:
        return self.n_window

    def get_direction_move(self) -> WindowDirection:
        return self.direction

    def n_moves_per_sweep(self) -> int:
        return max(4 * self.n_window - 4, 1)

    # ------------------------------------------------------------------
    # Stacks
    # ------------------------------------------------------------------

    def _segment(self, operators, k_low: int, k_high: int) -> ScaledMatrix:
        tau_low, tau_high = self.tau_edge(k_low), self.tau_edge(k_high)
        return self.model.trace_contribution(operators.range(tau_low, tau_high), tau_low, tau_high)

    def set_window_size(
        self,
        n_window: int,
        operators,
        position: int = 0,
        direction: WindowDirection = WindowDirection.LEFT,
    ) -> None:
        """Rebuild both stacks for a new partition.

        Args:
            n_window: Number of window pairs (≥ 1)
            operators: OperatorString with every operator of the configuration
            position: Initial right edge, 0 <= position <= 2·n_window − 2
            direction: Initial direction of motion

        Raises:
            ValueError: If n_window or position is out of range
        """
        if n_window < 1:
            raise ValueError(f"n_window must be >= 1, got {n_window}")
        if not 0 <= position <= 2 * n_window - 2:
            raise ValueError(f"Window position {position} out of range for n_window={n_window}")
        self.n_window = n_window
        self.position = position
        self.direction = direction

        identity = ScaledMatrix.identity(self.model.dim, self.model.dtype)
        self._right_stack = [identity]
        for k in range(position):
            self._right_stack.append(self._segment(operators, k, k + 1) @ self._right_stack[-1])
        self._left_stack = [identity]
        for k in range(2 * n_window, position + 2, -1):
            self._left_stack.append(self._left_stack[-1] @ self._segment(operators, k - 1, k))

    def move_window_to_next_position(self, operators) -> None:
        """Advance the window by one piece in the current direction."""
        if self.n_window == 1:
            return
        last = 2 * self.n_window - 2
        if self.direction == WindowDirection.LEFT and self.position == last:
            self.direction = WindowDirection.RIGHT
        elif self.direction == WindowDirection.RIGHT and self.position == 0:
            self.direction = WindowDirection.LEFT

        r = self.position
        if self.direction == WindowDirection.LEFT:
            self._right_stack.append(self._segment(operators, r, r + 1) @ self._right_stack[-1])
            self._left_stack.pop()
            self.position = r + 1
        else:
            self._right_stack.pop()
            self._left_stack.append(self._left_stack[-1] @ self._segment(operators, r + 1, r + 2))
            self.position = r - 1

    # ------------------------------------------------------------------
    # Traces
    # ------------------------------------------------------------------

    def compute_trace(self, operators) -> ScaledNumber:
        """Tr[T e^{-βH} ops] from scratch."""
        return self.model.trace_contribution(list(operators), 0.0, self.beta).trace()

    def _window_product(self, window_operators: Sequence) -> ScaledMatrix:
        tau_low, tau_high = self.window_range()
        return self.model.trace_contribution(window_operators, tau_low, tau_high)

    def compute_full_product(self, operators) -> ScaledMatrix:
        """P[0, β) assembled from the cached stacks."""
        tau_low, tau_high = self.window_range()
        window = self._window_product(operators.range(tau_low, tau_high))
        return self._left_stack[-1] @ (window @ self._right_stack[-1])

    def compute_trace_in_window(self, window_operators: Sequence) -> ScaledNumber:
        """Trace for the given (time-ordered) contents of the window."""
        window = self._window_product(window_operators)
        if window.is_zero():
            return ScaledNumber(0.0)
        return (self._left_stack[-1] @ (window @ self._right_stack[-1])).trace()

    def compute_trace_proposal(self, operators, removed: Sequence = (), added: Sequence = ()) -> ScaledNumber:
        """Trace after removing and adding operators inside the window.

        Args:
            operators: Current OperatorString
            removed: Operators to remove (must lie inside the window)
            added: Operators to add (must lie inside the window)

        Raises:
            ValueError: If an edited operator lies outside the window
        """
        tau_low, tau_high = self.window_range()
        for op in list(removed) + list(added):
            if not tau_low <= op.time < tau_high:
                raise ValueError(f"{op} outside the window [{tau_low}, {tau_high})")
        removed_keys = {op.key for op in removed}
        window_ops = [op for op in operators.range(tau_low, tau_high) if op.key not in removed_keys]
        window_ops = sorted(window_ops + list(added))
        return self.compute_trace_in_window(window_ops)

    def check_stacks(self, operators, rel_tol: float = 1e-8) -> bool:
        """Compare the stacked trace with the from-scratch trace."""
        tau_low, tau_high = self.window_range()
        stacked = self.compute_trace_in_window(operators.range(tau_low, tau_high))
        scratch = self.compute_trace(operators)
        if scratch.is_zero():
            return stacked.is_zero() or abs(stacked.to_number()) < 1e-300
        return stacked.isclose(scratch, rel_tol=rel_tol)

    def __repr__(self) -> str:
        return (f"SlidingWindowManager(n_window={self.n_window}, position={self.position}, "
                f"direction={self.direction.name})")
