"""sheetflow.calc - Computed-column engine: graph, resolution, propagation."""

from sheetflow.calc._functions import FormulaCompiler, FormulaSource, FunctionRegistry
from sheetflow.calc._graph import DependencyGraph
from sheetflow.calc._propagator import ChangePropagator
from sheetflow.calc._protocol import (
    CellDelta,
    CellResult,
    CellStatus,
    FunctionCompiler,
    PropagationResult,
    RecomputeSummary,
)
from sheetflow.calc._recompute import recompute_all
from sheetflow.calc._resolver import FunctionResolver, build_arguments

__all__ = [
    "CellDelta",
    "CellResult",
    "CellStatus",
    "ChangePropagator",
    "DependencyGraph",
    "FormulaCompiler",
    "FormulaSource",
    "FunctionCompiler",
    "FunctionRegistry",
    "FunctionResolver",
    "PropagationResult",
    "RecomputeSummary",
    "build_arguments",
    "recompute_all",
]
