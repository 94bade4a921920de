"""
Execution support shared by transforms, expressions and joins: cooperative
cancellation, row-level fault recording and the batch worker pool.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from spatialsql.core.config import settings
from spatialsql.core.errors import QueryCancelled, SpatialSqlError
from spatialsql.models.reports import ErrorReport, FaultReport, RowFaultReport

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation flag checked between batches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, operation: str, batches_done: int = 0) -> None:
        """
        Raises:
            QueryCancelled: If cancellation was requested
        """
        if self._event.is_set():
            raise QueryCancelled(operation, batches_done)


@dataclass(frozen=True)
class RowFault:
    """
    A row excluded from results because of a row-level error.

    Attributes:
        side: Input the row came from ('left', 'right' or 'input')
        row: Row number within that input
        error: The typed error
    """

    side: str
    row: int
    error: SpatialSqlError

    def to_dict(self) -> Dict:
        return {"side": self.side, "row": self.row, **self.error.to_dict()}


@dataclass
class FaultSummary:
    """Aggregate of the row faults seen by one operation."""

    faults: List[RowFault] = field(default_factory=list)

    def add(self, fault: RowFault) -> None:
        self.faults.append(fault)

    def extend(self, faults: Iterable[RowFault]) -> None:
        self.faults.extend(faults)

    @property
    def count(self) -> int:
        return len(self.faults)

    def by_error_code(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for fault in self.faults:
            counts[fault.error.error_code] = counts.get(fault.error.error_code, 0) + 1
        return counts

    def rows(self, side: str) -> List[int]:
        return sorted(f.row for f in self.faults if f.side == side)

    def __bool__(self) -> bool:
        return bool(self.faults)

    def to_dict(self) -> Dict:
        return {"count": self.count, "by_error_code": self.by_error_code()}

    def report(self, operation: Optional[str] = None, limit: Optional[int] = None) -> FaultReport:
        """Serializable report; ``limit`` caps the number of listed rows."""
        listed = self.faults if limit is None else self.faults[:limit]
        return FaultReport(
            operation=operation,
            count=self.count,
            by_error_code=self.by_error_code(),
            faults=[
                RowFaultReport(side=f.side, row=f.row, error=ErrorReport.from_error(f.error))
                for f in listed
            ],
        )


class FaultCollector:
    """
    Applies the row-fault policy: record in default mode, raise in strict mode.

    Workers collect into their own list and hand it back with their batch
    result, so the collector itself is only touched by the coordinating thread.
    """

    def __init__(self, strict: Optional[bool] = None):
        self.strict = settings.strict_mode if strict is None else strict
        self.summary = FaultSummary()

    def handle(self, side: str, row: int, error: SpatialSqlError, sink: List[RowFault]) -> None:
        if self.strict:
            raise error
        sink.append(RowFault(side, row, error))


def run_batches(
    func: Callable[[T], R],
    batches: Iterable[T],
    operation: str,
    cancel: Optional[CancellationToken] = None,
    max_workers: Optional[int] = None,
) -> Iterator[R]:
    """
    Run ``func`` over batches on a thread pool, yielding results in batch order.

    At most ``max_workers`` batches are in flight. The cancellation token is
    checked before each batch is submitted and before each result is handed
    out; on cancellation pending batches are cancelled and QueryCancelled is
    raised.
    """
    max_workers = max_workers or settings.max_workers
    token = cancel or CancellationToken()
    done = 0

    if max_workers == 1:
        for batch in batches:
            token.check(operation, done)
            yield func(batch)
            done += 1
        return

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="spatialsql") as pool:
        pending = []
        try:
            for batch in batches:
                token.check(operation, done)
                pending.append(pool.submit(func, batch))
                if len(pending) >= max_workers * 2:
                    result = pending.pop(0).result()
                    token.check(operation, done)
                    yield result
                    done += 1
            while pending:
                result = pending.pop(0).result()
                token.check(operation, done)
                yield result
                done += 1
        except BaseException:
            for future in pending:
                future.cancel()
            raise
