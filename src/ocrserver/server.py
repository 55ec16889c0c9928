# src/ocrserver/server.py
from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any, Dict, Optional, Set

from .claims import ClaimStore, get_claim_store
from .capabilities import check_capabilities
from .config import ServerConfig, WatchRoot
from .converter import BaseDocumentConverter
from .exceptions import ClaimConflict
from .models import Job, ProcessingState
from .pipeline import JobProcessor
from .scanner import JobScanner
from .scheduler import BoundedPool, ConcurrencyScheduler

logger = logging.getLogger("ocrserver")


class OCRServer:
    """
    Polls every watch root, claims stable PDFs and runs them as jobs.

    One polling thread per root. A job slot is taken before the claim, so
    documents beyond `max_files` stay unclaimed and free for other instances.
    """

    def __init__(self, config: ServerConfig, log_queue: Any = None,
                 claim_store: Optional[ClaimStore] = None,
                 scheduler: Optional[ConcurrencyScheduler] = None,
                 converter: Optional[BaseDocumentConverter] = None):
        self.config = config
        self.claims = claim_store or get_claim_store(config.claim_store)
        self.scheduler = scheduler or ConcurrencyScheduler(config, log_queue)
        self.processor = JobProcessor(config, self.scheduler, self.claims, converter=converter)
        self.scanners: Dict[str, JobScanner] = {
            str(root.base): JobScanner(root, config.stability_interval, config.ignore_keywords)
            for root in config.watch_roots
        }
        self._stop = threading.Event()
        self._jobs: Set[threading.Thread] = set()
        self._jobs_lock = threading.Lock()
        self.finished: list = []

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def prepare(self):
        """Create the directory layout and hand back claims of crashed instances."""
        for root in self.config.watch_roots:
            root.ensure_layout()
            self.claims.recover_stale(root, self.config.stale_claim_seconds)

    def stop(self):
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return

        def _graceful_shutdown_handler(signum, frame):
            if not self._stop.is_set():
                logger.warning("Shutdown signal received! No new claims, finishing current jobs before exiting.")
                self._stop.set()
            else:
                logger.error("Second shutdown signal received! Forcing an immediate exit.")
                # skips the join on running job threads, their claims are recovered as stale
                os._exit(1)

        signal.signal(signal.SIGINT, _graceful_shutdown_handler)
        signal.signal(signal.SIGTERM, _graceful_shutdown_handler)

    # -----------------------------
    # Dispatch
    # -----------------------------
    def dispatch(self, root: WatchRoot) -> int:
        """One scan pass over `root`. Returns how many jobs were started."""
        pool = self.scheduler.job_pool(root)
        started = 0
        for job in self.scanners[str(root.base)].scan():
            if self._stop.is_set():
                break
            # wait for a free slot, waking up to notice a stop request
            while not pool.acquire(timeout=1.0):
                if self._stop.is_set():
                    return started
            try:
                job.claim = self.claims.claim(job.source_path)
            except ClaimConflict as e:
                pool.release()
                logger.debug("Skipping, %s", e)
                continue
            except OSError as e:
                pool.release()
                logger.warning("Could not claim %s, %s", job.source_path, e)
                continue
            job.advance(ProcessingState.CLAIMED)
            self.scanners[str(root.base)].forget(job)
            self._start_job(job, pool)
            started += 1
        return started

    def _start_job(self, job: Job, pool: BoundedPool):
        t = threading.Thread(target=self._run_job, args=(job, pool),
                             name=f"job-{job.relative_path.name}", daemon=False)
        with self._jobs_lock:
            self._jobs.add(t)
        t.start()

    def _run_job(self, job: Job, pool: BoundedPool):
        try:
            self.processor.process(job)
        except Exception:
            logger.critical("Unexpected failure while processing %s, claim left at %s",
                            job.relative_path, job.working_path, exc_info=True)
        finally:
            pool.release()
            with self._jobs_lock:
                self._jobs.discard(threading.current_thread())
                self.finished.append(job)

    def wait_idle(self):
        while True:
            with self._jobs_lock:
                pending = list(self._jobs)
            if not pending:
                return
            for t in pending:
                t.join()

    # -----------------------------
    # Entry points
    # -----------------------------
    def run_once(self) -> int:
        """
        A single scan-and-drain pass over every root. A file seen for the first
        time needs a second look one stability interval later.
        """
        started = sum(self.dispatch(root) for root in self.config.watch_roots)
        if self.config.stability_interval > 0 and not self._stop.is_set():
            time.sleep(self.config.stability_interval)
            started += sum(self.dispatch(root) for root in self.config.watch_roots)
        self.wait_idle()
        return started

    def _watch(self, root: WatchRoot):
        logger.info("Watching %s every %ss", root.entrada, self.config.poll_interval)
        while not self._stop.is_set():
            try:
                self.dispatch(root)
            except Exception:
                logger.exception("Scan of %s failed, retrying at the next poll", root.entrada)
            self._stop.wait(self.config.poll_interval)

    def run(self, once: bool = False, preflight: bool = True) -> int:
        self._install_signal_handlers()
        if preflight:
            check_capabilities(self.config)
        self.prepare()
        logger.info("ocrserver started, %d roots, max files %d, max pages %d",
                    len(self.config.watch_roots), self.config.max_files, self.config.max_pgs)
        if once:
            return self.run_once()

        watchers = [
            threading.Thread(target=self._watch, args=(root,), name=f"watch-{root.name}", daemon=True)
            for root in self.config.watch_roots
        ]
        for t in watchers:
            t.start()
        try:
            while any(t.is_alive() for t in watchers):
                for t in watchers:
                    # short joins keep the main thread responsive to signals
                    t.join(timeout=0.5)
        finally:
            self._stop.set()
            self.wait_idle()
            logger.info("ocrserver stopped")
        return 0
