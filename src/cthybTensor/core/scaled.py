"""Extended-range scalars and matrices.

Traces over long time-ordered operator strings under- or overflow machine
doubles. Values are therefore kept as a mantissa times a power of two,

    value = mantissa · 2**exponent,

with |mantissa| in [0.5, 1) for scalars and max|entry| in [0.5, 1) for
matrices. Conversion to a machine number happens only at measurement time.

LEVEL 1 utility module.
"""

import cmath
import math
from typing import Union

import torch

Number = Union[float, complex]


def _frexp_exponent(x: float) -> int:
    return math.frexp(x)[1]


class ScaledNumber:
    """Real or complex scalar stored as mantissa · 2**exponent."""

    __slots__ = ("mantissa", "exponent")

    def __init__(self, mantissa: Number = 0.0, exponent: int = 0) -> None:
        magnitude = abs(mantissa)
        if magnitude == 0.0 or not math.isfinite(magnitude):
            self.mantissa = mantissa if magnitude != 0.0 else 0.0
            self.exponent = 0 if magnitude == 0.0 else exponent
            return
        shift = _frexp_exponent(magnitude)
        self.mantissa = mantissa * math.ldexp(1.0, -shift)
        self.exponent = exponent + shift

    @classmethod
    def one(cls) -> "ScaledNumber":
        return cls(1.0, 0)

    def __mul__(self, other: Union["ScaledNumber", Number]) -> "ScaledNumber":
        if isinstance(other, ScaledNumber):
            return ScaledNumber(self.mantissa * other.mantissa, self.exponent + other.exponent)
        return ScaledNumber(self.mantissa * other, self.exponent)

    __rmul__ = __mul__

    def __truediv__(self, other: Union["ScaledNumber", Number]) -> "ScaledNumber":
        if isinstance(other, ScaledNumber):
            if other.is_zero():
                raise ZeroDivisionError("division by a zero ScaledNumber")
            return ScaledNumber(self.mantissa / other.mantissa, self.exponent - other.exponent)
        return ScaledNumber(self.mantissa / other, self.exponent)

    def __neg__(self) -> "ScaledNumber":
        return ScaledNumber(-self.mantissa, self.exponent)

    def __abs__(self) -> "ScaledNumber":
        return ScaledNumber(abs(self.mantissa), self.exponent)

    def is_zero(self) -> bool:
        return self.mantissa == 0.0

    def is_finite(self) -> bool:
        return math.isfinite(abs(self.mantissa))

    def phase(self) -> Number:
        """Sign (real) or unit phase (complex) of the value."""
        if self.is_zero():
            return 0.0
        if isinstance(self.mantissa, complex):
            return self.mantissa / abs(self.mantissa)
        return 1.0 if self.mantissa > 0 else -1.0

    def log_abs(self) -> float:
        """Natural logarithm of |value|."""
        if self.is_zero():
            return -math.inf
        return math.log(abs(self.mantissa)) + self.exponent * math.log(2.0)

    def to_number(self) -> Number:
        """Convert to a machine float/complex (may under- or overflow)."""
        if self.is_zero():
            return 0.0
        if isinstance(self.mantissa, complex):
            scale = math.ldexp(1.0, self.exponent) if abs(self.exponent) < 1000 else (
                0.0 if self.exponent < 0 else math.inf
            )
            return self.mantissa * scale
        if self.exponent > 1100:
            return math.copysign(math.inf, self.mantissa)
        return math.ldexp(self.mantissa, self.exponent)

    def __float__(self) -> float:
        value = self.to_number()
        if isinstance(value, complex):
            return value.real
        return value

    def __complex__(self) -> complex:
        return complex(self.to_number())

    def isclose(self, other: "ScaledNumber", rel_tol: float = 1e-8) -> bool:
        """Relative comparison that never converts to machine range."""
        if self.is_zero() or other.is_zero():
            return self.is_zero() and other.is_zero()
        ratio = (self / other).to_number()
        return cmath.isclose(ratio, 1.0, rel_tol=rel_tol)

    def __repr__(self) -> str:
        return f"ScaledNumber({self.mantissa!r} * 2**{self.exponent})"


class ScaledMatrix:
    """Matrix stored as a normalized tensor times 2**exponent."""

    __slots__ = ("matrix", "exponent")

    def __init__(self, matrix: torch.Tensor, exponent: int = 0, normalize: bool = True) -> None:
        self.matrix = matrix
        self.exponent = exponent
        if normalize:
            self._normalize()

    @classmethod
    def identity(cls, dim: int, dtype: torch.dtype = torch.float64) -> "ScaledMatrix":
        return cls(torch.eye(dim, dtype=dtype), 0, normalize=False)

    def _normalize(self) -> None:
        max_abs = self.matrix.abs().max().item() if self.matrix.numel() > 0 else 0.0
        if max_abs == 0.0 or not math.isfinite(max_abs):
            return
        shift = _frexp_exponent(max_abs)
        self.matrix = self.matrix * math.ldexp(1.0, -shift)
        self.exponent += shift

    def __matmul__(self, other: "ScaledMatrix") -> "ScaledMatrix":
        return ScaledMatrix(self.matrix @ other.matrix, self.exponent + other.exponent)

    def scale_rows(self, weights: torch.Tensor) -> "ScaledMatrix":
        """Left-multiply by diag(weights) (imaginary-time propagation)."""
        return ScaledMatrix(weights[:, None] * self.matrix, self.exponent)

    def is_zero(self) -> bool:
        return not bool(self.matrix.abs().max().item() > 0.0) if self.matrix.numel() > 0 else True

    def trace(self) -> ScaledNumber:
        value = torch.trace(self.matrix).item()
        return ScaledNumber(value, self.exponent)

    def trace_with(self, other: torch.Tensor) -> ScaledNumber:
        """Tr[self · other] for an ordinary (unscaled) matrix."""
        value = torch.sum(self.matrix * other.transpose(0, 1)).item()
        return ScaledNumber(value, self.exponent)

    def clone(self) -> "ScaledMatrix":
        return ScaledMatrix(self.matrix.clone(), self.exponent, normalize=False)

    def __repr__(self) -> str:
        return f"ScaledMatrix(shape={tuple(self.matrix.shape)}, exponent={self.exponent})"


__all__ = ["ScaledNumber", "ScaledMatrix"]
