"""
Runtime statistics for storage statements.

Statistics are purely observational: a failing collector is logged and never
affects the operation that reported to it.
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class RuntimeStatisticsCollector(Protocol):
    """Receives (measure point, row count, duration) samples."""

    def submit(self, measure_point_id: str, element_count: int, elapsed_seconds: float) -> None:
        ...


class NullRuntimeStatisticsCollector:
    """Collector that discards every sample."""

    def submit(self, measure_point_id: str, element_count: int, elapsed_seconds: float) -> None:
        pass


class LoggingStatisticsCollector:
    """Collector that writes every sample to the log at DEBUG level."""

    def submit(self, measure_point_id: str, element_count: int, elapsed_seconds: float) -> None:
        logger.debug(
            f"{measure_point_id}: {element_count} element(s) in {elapsed_seconds * 1000:.1f} ms"
        )


@dataclass
class Measurement:
    """Mutable holder for the element count of a running measurement."""

    count: int = 0


class StmtStatistic:
    """
    Measures a named statement and reports to a collector.

    Example:
        >>> stat = StmtStatistic("DBStorage.insert", collector)
        >>> with stat.measure() as m:
        ...     m.count = await insert_rows(...)
    """

    def __init__(self, name: str, collector: RuntimeStatisticsCollector):
        self.name = name
        self.collector = collector

    @contextmanager
    def measure(self) -> Iterator[Measurement]:
        measurement = Measurement()
        start = time.perf_counter()
        yield measurement
        self._report(measurement.count, time.perf_counter() - start)

    def _report(self, element_count: int, elapsed_seconds: float) -> None:
        try:
            self.collector.submit(self.name, element_count, elapsed_seconds)
        except Exception:
            logger.exception(f"Statistics collector failed for {self.name}")
