"""Core module: BaseTensor, parameters and utilities."""

from cthybTensor.core.base import BaseTensor
from cthybTensor.core.device import get_device, result_dtype
from cthybTensor.core.scaled import ScaledNumber, ScaledMatrix
from cthybTensor.core.types import SolverParameters

__all__ = [
    "BaseTensor",
    "get_device",
    "result_dtype",
    "ScaledNumber",
    "ScaledMatrix",
    "SolverParameters",
]
