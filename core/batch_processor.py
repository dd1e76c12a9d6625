# core/batch_processor.py

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait, FIRST_COMPLETED
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from tqdm import tqdm

from core.errors import FailureReport, OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal shared by a batch operation and its caller"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "operation"):
        if self._event.is_set():
            raise OperationCancelled(f"{where} cancelled")


class TaskHandle:
    """Handle to one submitted task: await, cancel or poll it"""

    def __init__(self, future: Future, name: str = ""):
        self.future = future
        self.name = name

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    def cancel(self) -> bool:
        return self.future.cancel()

    def done(self) -> bool:
        return self.future.done()

    def cancelled(self) -> bool:
        return self.future.cancelled()


def _item_id(item) -> str:
    return str(getattr(item, 'id', item))


class BatchProcessor:
    """
    Bounded worker pool for per-photo extraction

    Work runs on a thread pool capped at `n_workers` tasks. Per-item
    exceptions are caught at the batch boundary and recorded in a
    FailureReport; they never abort the batch.
    """

    def __init__(self,
                 n_workers: int = None,
                 batch_size: int = 32,
                 show_progress: bool = True):
        self.n_workers = n_workers or os.cpu_count() or 4
        self.batch_size = max(1, batch_size)
        self.show_progress = show_progress
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.n_workers, thread_name_prefix="photo-worker"
                )
            return self._executor

    def submit(self, func: Callable, *args, **kwargs) -> TaskHandle:
        future = self._get_executor().submit(func, *args, **kwargs)
        return TaskHandle(future, getattr(func, '__name__', ''))

    def shutdown(self, wait_for_tasks: bool = True):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait_for_tasks, cancel_futures=not wait_for_tasks)
                self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait_for_tasks=exc_type is None)

    def process_batch(self,
                      items: Sequence,
                      func: Callable,
                      cancel_token: Optional[CancellationToken] = None,
                      batch_name: str = "batch",
                      progress: Optional[tqdm] = None
                      ) -> Tuple[List[Tuple[Any, Any]], FailureReport]:
        """
        Run `func` on every item concurrently

        Returns:
            (item, result) pairs in input order for the items that succeeded,
            and the report of those that failed

        Raises:
            OperationCancelled: the token fired; pending tasks are abandoned
        """
        report = FailureReport(batch_name)
        handles = []
        for item in items:
            if cancel_token is not None and cancel_token.cancelled:
                break
            handles.append((item, self.submit(func, item)))

        pending = {h.future for _, h in handles}
        while pending:
            done, pending = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
            if progress is not None and done:
                progress.update(len(done))
            if cancel_token is not None and cancel_token.cancelled:
                for _, handle in handles:
                    handle.cancel()
                raise OperationCancelled(f"{batch_name} cancelled")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled(batch_name)

        results = []
        for item, handle in handles:
            try:
                results.append((item, handle.result()))
            except Exception as e:
                report.add(_item_id(item), e)
        logger.debug("%s: %d ok, %d failed", batch_name, len(results), len(report))
        return results, report

    def iter_batches(self, items: Sequence) -> Iterator[Sequence]:
        for start in range(0, len(items), self.batch_size):
            yield items[start:start + self.batch_size]

    def map_batches(self,
                    items: Sequence,
                    func: Callable,
                    cancel_token: Optional[CancellationToken] = None,
                    desc: str = "Processing images",
                    before_batch: Optional[Callable[[int], None]] = None
                    ) -> Iterator[Tuple[List[Tuple[Any, Any]], FailureReport]]:
        """
        Process `items` batch by batch, yielding each batch's outcome

        `before_batch(index)` runs ahead of every batch; it is the hook used
        for memory backpressure.
        """
        items = list(items)
        with tqdm(total=len(items), desc=desc, disable=not self.show_progress) as bar:
            for index, batch in enumerate(self.iter_batches(items)):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled(desc)
                if before_batch is not None:
                    before_batch(index)
                results, report = self.process_batch(
                    batch, func, cancel_token, f"{desc} batch {index + 1}", bar
                )
                yield results, report
