# src/ocrserver/routing.py
"""
Terminal moves. A finished job ends up either as output in Saida plus its
original in Originais_Processados, or as its untouched original in Erro.
Every placement is atomic and never overwrites an existing file.
"""
from __future__ import annotations

import logging
import shutil
import socket
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple

from .claims import ClaimStore, place_atomically
from .exceptions import RoutingError
from .models import Job
from .utils import append_jsonl, safe_fname

logger = logging.getLogger("ocrserver")


@contextmanager
def job_workspace(job: Job) -> Iterator[Path]:
    """Private temp area of a claimed job, removed on every exit path."""
    if job.claim is None:
        raise RoutingError(f"{job.relative_path} has no claim")
    area = job.root.temp / f"{safe_fname(job.relative_path.stem, 'job')}-{job.claim.token}"
    area.mkdir(parents=True, exist_ok=True)
    job.temp_dir = area
    try:
        yield area
    finally:
        shutil.rmtree(area, ignore_errors=True)
        job.temp_dir = None


class OutcomeRouter:
    """Publishes the output of a successful job and archives its original."""

    def __init__(self, claim_store: ClaimStore):
        self.claims = claim_store

    def route(self, job: Job, built_output: Path) -> Tuple[Path, Path]:
        output = place_atomically(built_output, job.root.saida / job.relative_path, job.claim.token)
        try:
            archived = self.claims.release(job.claim, job.root.archive / job.relative_path)
        except OSError as e:
            # take the output back so the document is never both done and failed
            output.unlink(missing_ok=True)
            raise RoutingError(f"archiving {job.relative_path} failed, {e}") from e
        logger.info("Done %s -> %s", job.relative_path, output)
        return output, archived


class ErrorRouter:
    """Moves the original of a failed job to Erro and records why."""

    def __init__(self, claim_store: ClaimStore, error_log_path: Optional[Path] = None):
        self.claims = claim_store
        self.error_log_path = error_log_path

    def route(self, job: Job, stage: str, error: BaseException) -> Path:
        destination = self.claims.release(job.claim, job.root.erro / job.relative_path)
        logger.error("Failed %s at stage %s, %s. Original moved to %s",
                     job.relative_path, stage, error, destination)
        self._log_error(job, stage, error, destination)
        return destination

    def _log_error(self, job: Job, stage: str, error: BaseException, destination: Path):
        if not self.error_log_path:
            return
        try:
            append_jsonl(self.error_log_path, {
                "host": socket.gethostname(),
                "token": job.claim.token if job.claim else None,
                "source_path": str(job.source_path),
                "stage": stage,
                "error_type": type(error).__name__,
                "error_reason": str(error),
                "moved_to": str(destination),
            })
        except Exception:
            logger.exception("Failed to write error log")


class PerformanceLog:
    """Per-job timing records, one JSON line each."""

    def __init__(self, path: Optional[Path], enabled: bool = False):
        self.path = path
        self.enabled = enabled and path is not None

    def record(self, job: Job, wall_seconds: float):
        if not self.enabled:
            return
        ocr_seconds = float(job.stats.get("ocr_seconds", 0.0))
        pages = len(job.pages)
        try:
            append_jsonl(self.path, {
                "source_path": str(job.source_path),
                "state": job.state.value,
                "strategy": job.strategy.value,
                "pages": pages,
                "skipped_pages": job.stats.get("skipped_pages", 0),
                "encodings": job.stats.get("encodings", {}),
                "wall_clock_total_seconds": round(wall_seconds, 4),
                "ocr_work_seconds": round(ocr_seconds, 4),
                "ocr_avg_sec_per_page": round(ocr_seconds / pages, 4) if pages else 0,
            })
        except Exception:
            logger.exception("Failed to write performance log")
