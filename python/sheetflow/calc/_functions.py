"""Computation services: in-process callables and compiled spreadsheet formulas.

Both classes satisfy :class:`~sheetflow.calc._protocol.FunctionCompiler` and
are what a :class:`~sheetflow.calc._resolver.FunctionResolver` delegates to.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, overload

from sheetflow.calc._protocol import Computation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# In-process registry
# ---------------------------------------------------------------------------


class FunctionRegistry:
    """Registry of Python callables keyed by computation reference.

    Usage::

        registry = FunctionRegistry()

        @registry.register("subtract")
        def subtract(a, b):
            return (a or 0) - (b or 0)
    """

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._functions: dict[str, Callable[..., Any]] = dict(functions or {})

    @overload
    def register(self, ref: str) -> Callable[[Computation], Computation]: ...

    @overload
    def register(self, ref: str, func: Computation) -> Computation: ...

    def register(self, ref: str, func: Computation | None = None) -> Any:
        if func is None:
            def decorator(f: Computation) -> Computation:
                self._functions[ref] = f
                return f

            return decorator
        self._functions[ref] = func
        return func

    def unregister(self, ref: str) -> None:
        self._functions.pop(ref, None)

    def get(self, ref: str) -> Callable[..., Any] | None:
        return self._functions.get(ref)

    def has(self, ref: str) -> bool:
        return ref in self._functions

    def get_callable(self, ref: str) -> Computation:
        func = self._functions.get(ref)
        if func is None:
            raise KeyError(f"No computation registered as {ref!r}")
        return func

    @property
    def refs(self) -> frozenset[str]:
        return frozenset(self._functions.keys())


# ---------------------------------------------------------------------------
# Spreadsheet formula compiler (``formulas`` library)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FormulaSource:
    """Stored formula text plus the cell names its positional arguments bind to.

    ``FormulaSource("=A1-B1", ("A1", "B1"))`` compiles to ``f(a, b) = a - b``.
    With no ``parameters`` the compiled formula's own input order is used.
    """

    formula: str
    parameters: tuple[str, ...] = ()


def _canon_param(name: str) -> str:
    return name.replace("$", "").strip().upper()


def _is_formula_error(val: Any) -> bool:
    return type(val).__name__ == "XlError"


def normalize_result(raw: Any) -> Any:
    """Convert a ``formulas`` library result to a plain Python value."""
    if raw is None:
        return None
    # numpy array with single element
    if hasattr(raw, "shape") and hasattr(raw, "flat"):
        try:
            if raw.size == 1:
                raw = raw.flat[0]
            else:
                return [normalize_result(v) for v in raw.flat]
        except (ValueError, TypeError, IndexError):
            return raw
    if _is_formula_error(raw):
        raise ValueError(f"Formula evaluated to {raw}")
    # numpy scalar types
    if hasattr(raw, "item"):
        try:
            raw = raw.item()
        except (ValueError, TypeError):
            return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    return raw


class _CompiledFormula:
    """Callable wrapper binding positional arguments to formula inputs."""

    __slots__ = ("ref", "formula", "_compiled", "_inputs", "_parameters")

    def __init__(self, ref: str, source: FormulaSource, compiled: Any) -> None:
        self.ref = ref
        self.formula = source.formula
        self._compiled = compiled
        try:
            inputs = list(inspect.signature(compiled).parameters.keys())
        except (ValueError, TypeError):
            inputs = []
        self._inputs = inputs
        self._parameters = (
            tuple(_canon_param(p) for p in source.parameters)
            or tuple(_canon_param(p) for p in inputs)
        )

    def __call__(self, *args: Any) -> Any:
        import numpy as np

        if len(args) > len(self._parameters):
            raise TypeError(
                f"{self.ref} takes {len(self._parameters)} arguments ({len(args)} given)"
            )
        bound = dict(zip(self._parameters, args))
        call_args: list[Any] = []
        for name in self._inputs:
            val = bound.get(_canon_param(name))
            if ":" in name:
                items = val if isinstance(val, (list, tuple)) else [val]
                call_args.append(np.array([v if v is not None else 0 for v in items]))
            elif isinstance(val, bool):
                call_args.append(val)
            elif isinstance(val, (int, float)):
                call_args.append(np.float64(val))
            elif val is None:
                call_args.append(np.float64(0))
            else:
                call_args.append(val)
        return normalize_result(self._compiled(*call_args))

    def __repr__(self) -> str:
        return f"<CompiledFormula {self.ref} {self.formula!r}>"


class FormulaCompiler:
    """Compiles stored spreadsheet formulas into callables via ``formulas``.

    Compiled formulas are cached by formula text, so two references sharing
    a formula compile once.
    """

    def __init__(self, sources: Mapping[str, FormulaSource | str] | None = None) -> None:
        self._sources: dict[str, FormulaSource] = {}
        self._compiled_cache: dict[str, Any] = {}  # formula -> compiled callable
        for ref, src in (sources or {}).items():
            self.define(ref, src)

    def define(
        self,
        ref: str,
        formula: FormulaSource | str,
        parameters: tuple[str, ...] = (),
    ) -> None:
        """Store (or replace) the formula behind *ref*."""
        if isinstance(formula, FormulaSource):
            source = formula
        else:
            source = FormulaSource(formula=formula, parameters=tuple(parameters))
        if not source.formula.lstrip().startswith("="):
            source = FormulaSource("=" + source.formula.lstrip(), source.parameters)
        self._sources[ref] = source

    def source(self, ref: str) -> FormulaSource | None:
        return self._sources.get(ref)

    def get_callable(self, ref: str) -> Computation:
        source = self._sources.get(ref)
        if source is None:
            raise KeyError(f"No formula stored as {ref!r}")
        compiled = self._compiled_cache.get(source.formula)
        if compiled is None:
            compiled = self._compile(source.formula)
            self._compiled_cache[source.formula] = compiled
        return _CompiledFormula(ref, source, compiled)

    @staticmethod
    def _compile(formula: str) -> Any:
        import formulas as fm

        try:
            result = fm.Parser().ast(formula)
        except Exception as e:
            raise ValueError(f"Cannot parse formula {formula!r}: {e}") from e
        if not result or len(result) < 2:
            raise ValueError(f"Cannot compile formula {formula!r}")
        compiled = result[1].compile()
        logger.debug("Compiled formula %r", formula)
        return compiled
