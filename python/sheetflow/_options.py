"""Engine tunables, injected through constructors."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineOptions:
    """Timing and sizing knobs shared by the writer, propagator and facade.

    ``computation_timeout`` only bounds asynchronous computations; ``None``
    leaves them unbounded.
    """

    debounce_seconds: float = 0.1
    max_flush_latency_seconds: float = 1.0
    max_rows_per_flush: int = 400
    max_batch_size: int = 500
    computation_timeout: float | None = None
    rollback_on_failure: bool = True
    serialize_row_edits: bool = True

    def __post_init__(self) -> None:
        if self.debounce_seconds < 0:
            raise ValueError("debounce_seconds must be >= 0")
        if self.max_flush_latency_seconds < self.debounce_seconds:
            raise ValueError("max_flush_latency_seconds must be >= debounce_seconds")
        if self.max_rows_per_flush < 1:
            raise ValueError("max_rows_per_flush must be >= 1")
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.computation_timeout is not None and self.computation_timeout <= 0:
            raise ValueError("computation_timeout must be positive or None")
