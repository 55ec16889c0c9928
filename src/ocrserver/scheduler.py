# src/ocrserver/scheduler.py
from __future__ import annotations

import logging
import multiprocessing as mp
import threading
from concurrent.futures import Future, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from tqdm import tqdm

from .config import ServerConfig, WatchRoot
from .ocr_worker import initialize_ocr_worker, process_page_task

logger = logging.getLogger("ocrserver")


class BoundedPool:
    """A counting slot limit that also remembers its high-water mark."""

    def __init__(self, name: str, limit: int):
        if limit < 1:
            raise ValueError(f"{name}: limit must be >= 1")
        self.name = name
        self.limit = limit
        self._sem = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self.in_use = 0
        self.peak = 0

    def acquire(self, timeout: Optional[float] = None) -> bool:
        if not self._sem.acquire(timeout=timeout):
            return False
        with self._lock:
            self.in_use += 1
            self.peak = max(self.peak, self.in_use)
        return True

    def release(self) -> None:
        with self._lock:
            self.in_use -= 1
        self._sem.release()

    @contextmanager
    def slot(self):
        self.acquire()
        try:
            yield self
        finally:
            self.release()


class ConcurrencyScheduler:
    """
    Owns both concurrency limits.

    Per watch root at most `max_files` documents are in flight, and per
    document at most `max_pgs` pages. Pages run in a spawn-context process
    pool created for the job, workers load the OCR engine once in their
    initializer. After the first failed page nothing new is submitted, pages
    already running are allowed to finish.
    """

    def __init__(self, config: ServerConfig, log_queue: Any = None,
                 worker_fn: Callable[[Dict[str, Any]], Dict[str, Any]] = process_page_task):
        self.config = config
        self.max_files = config.max_files
        self.max_pgs = config.max_pgs
        self.log_queue = log_queue
        self.worker_fn = worker_fn
        self.settings = config.ocr_settings()
        self.ctx = mp.get_context("spawn")
        self._job_pools: Dict[str, BoundedPool] = {
            str(root.base): BoundedPool(f"jobs:{root.name}", self.max_files) for root in config.watch_roots
        }

    def job_pool(self, root: WatchRoot) -> BoundedPool:
        return self._job_pools[str(root.base)]

    def run_pages(self, tasks: List[Dict[str, Any]], desc: str = "Pages") -> List[Dict[str, Any]]:
        """
        Run page tasks and return the finished ones, in completion order.
        Fewer results than tasks means submission stopped after a failure.
        """
        if not tasks:
            return []
        page_slots = BoundedPool(f"pages:{desc}", self.max_pgs)
        results: List[Dict[str, Any]] = []
        failed = threading.Event()
        results_lock = threading.Lock()

        pbar = tqdm(total=len(tasks), desc=desc, disable=not self.config.show_progress, leave=False)

        def _on_done(task: Dict[str, Any], fut: Future):
            try:
                exc = fut.exception()
                result = dict(task, error=f"worker crashed, {exc!r}", stage="ocr") if exc else fut.result()
                if result.get("error"):
                    failed.set()
                with results_lock:
                    results.append(result)
                pbar.update(1)
            finally:
                page_slots.release()

        workers = min(self.max_pgs, len(tasks))
        with ProcessPoolExecutor(max_workers=workers, mp_context=self.ctx,
                                 initializer=initialize_ocr_worker,
                                 initargs=(self.log_queue, self.settings)) as pool:
            for task in tasks:
                page_slots.acquire()
                if failed.is_set():
                    page_slots.release()
                    logger.debug("%s, a page failed, not submitting the remaining pages", desc)
                    break
                try:
                    fut = pool.submit(self.worker_fn, task)
                except BrokenProcessPool as e:
                    page_slots.release()
                    with results_lock:
                        results.append(dict(task, error=f"worker pool broken, {e}", stage="ocr"))
                    break
                fut.add_done_callback(lambda f, t=task: _on_done(t, f))
            peak = page_slots.peak
            # every in-flight page holds a slot, taking them all waits for the stragglers
            for _ in range(self.max_pgs):
                page_slots.acquire()
        pbar.close()
        logger.debug("%s, %d of %d pages done, peak concurrency %d",
                     desc, len(results), len(tasks), peak)
        return results
