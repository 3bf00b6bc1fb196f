"""Per-handler indexing counters, injected into the orchestrator."""

from dataclasses import dataclass
from typing import Protocol


class IndexingMetrics(Protocol):
    def record_batch(self, handler: str, processed: int, failed: int, elapsed_seconds: float) -> None: ...

    def record_failure(self, handler: str, error: Exception) -> None: ...

    def record_backoff(self, handler: str, delay_seconds: float) -> None: ...


class NullMetrics:
    """Discards everything."""

    def record_batch(self, handler: str, processed: int, failed: int, elapsed_seconds: float) -> None:
        pass

    def record_failure(self, handler: str, error: Exception) -> None:
        pass

    def record_backoff(self, handler: str, delay_seconds: float) -> None:
        pass


@dataclass
class HandlerCounters:
    processed: int = 0
    failed: int = 0
    backoffs: int = 0
    batches: int = 0
    last_error: str | None = None
    last_backoff_seconds: float | None = None


class RecordingMetrics:
    """Keeps counters in memory, one set per handler."""

    def __init__(self) -> None:
        self._counters: dict[str, HandlerCounters] = {}

    def counters(self, handler: str) -> HandlerCounters:
        return self._counters.setdefault(handler, HandlerCounters())

    def snapshot(self) -> dict[str, HandlerCounters]:
        return dict(self._counters)

    def record_batch(self, handler: str, processed: int, failed: int, elapsed_seconds: float) -> None:
        counters = self.counters(handler)
        counters.batches += 1
        counters.processed += processed
        counters.failed += failed

    def record_failure(self, handler: str, error: Exception) -> None:
        self.counters(handler).last_error = f"{type(error).__name__}: {error}"

    def record_backoff(self, handler: str, delay_seconds: float) -> None:
        counters = self.counters(handler)
        counters.backoffs += 1
        counters.last_backoff_seconds = delay_seconds
