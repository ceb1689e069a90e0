"""Continuous-time hybridization-expansion Monte Carlo core.

This module provides:
- Operator algebra on the imaginary-time circle
- Block-diagonal inverse hybridization matrix with fast updates
- Sliding-window evaluation of the local trace
- Local, worm and global Monte Carlo updates
- Flat-histogram reweighting of worm spaces
- Measurement accumulators and the walker driving them

LEVEL 3 of the architecture (depends on core/ and manybody collaborators).
"""

from cthybTensor.ctqmc.operators import (
    OperatorType,
    Psi,
    OperatorString,
    creator,
    annihilator,
    count_inversions,
    permutation_sign,
    shift_operator,
    global_shift,
)
from cthybTensor.ctqmc.determinant import DeterminantMatrix, DeterminantBlock
from cthybTensor.ctqmc.sliding_window import SlidingWindowManager, WindowDirection
from cthybTensor.ctqmc.configuration import (
    ConfigSpace,
    Configuration,
    Worm,
    GreensFunctionWorm,
    EqualTimeG1Worm,
    TwoTimeG2Worm,
    EqualTimeG2Worm,
)
from cthybTensor.ctqmc.updaters import (
    Updater,
    InsertionRemovalUpdater,
    DiagonalInsertionRemovalUpdater,
    OperatorShiftUpdater,
    PairFlavorUpdater,
)
from cthybTensor.ctqmc.worm_updaters import (
    WormInsertionRemover,
    WormMover,
    EqualTimeG1TwoTimeG2Connector,
    G1HybridizationSwapInsertionRemover,
    G1HybridizationSwapShifter,
    make_worm_updaters,
)
from cthybTensor.ctqmc.global_updaters import FlavorExchangeUpdater, GlobalShiftUpdater
from cthybTensor.ctqmc.reweighting import FlatHistogram, ShiftWidthAdapter, WindowSizeAdapter
from cthybTensor.ctqmc.measurements import MeasurementSet
from cthybTensor.ctqmc.walker import HybridizationExpansionWalker, merge_walker_results

__all__ = [
    # Operators
    "OperatorType",
    "Psi",
    "OperatorString",
    "creator",
    "annihilator",
    "count_inversions",
    "permutation_sign",
    "shift_operator",
    "global_shift",
    # Weight factors
    "DeterminantMatrix",
    "DeterminantBlock",
    "SlidingWindowManager",
    "WindowDirection",
    # Configuration
    "ConfigSpace",
    "Configuration",
    "Worm",
    "GreensFunctionWorm",
    "EqualTimeG1Worm",
    "TwoTimeG2Worm",
    "EqualTimeG2Worm",
    # Updates
    "Updater",
    "InsertionRemovalUpdater",
    "DiagonalInsertionRemovalUpdater",
    "OperatorShiftUpdater",
    "PairFlavorUpdater",
    "WormInsertionRemover",
    "WormMover",
    "EqualTimeG1TwoTimeG2Connector",
    "G1HybridizationSwapInsertionRemover",
    "G1HybridizationSwapShifter",
    "make_worm_updaters",
    "FlavorExchangeUpdater",
    "GlobalShiftUpdater",
    # Adaptation and measurement
    "FlatHistogram",
    "ShiftWidthAdapter",
    "WindowSizeAdapter",
    "MeasurementSet",
    # Driver
    "HybridizationExpansionWalker",
    "merge_walker_results",
]
