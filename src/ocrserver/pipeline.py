# src/ocrserver/pipeline.py
from __future__ import annotations

import logging
import time
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from .assembler import Assembler
from .claims import ClaimStore
from .config import ServerConfig
from .converter import BaseDocumentConverter, GhostscriptConverter
from .exceptions import (
    AssemblyFailure,
    ExtractionFailure,
    OCRFailure,
    StageError,
)
from .extractor import PageExtractor
from .models import FinalPage, Job, ProcessingState
from .pdf_processor import BasePDFProcessor, get_pdf_processor
from .routing import ErrorRouter, OutcomeRouter, PerformanceLog, job_workspace
from .scheduler import ConcurrencyScheduler
from .signature import SignatureDetector

logger = logging.getLogger("ocrserver")

STAGE_SIGNATURE = "signature"
STAGE_EXTRACT = "extract"
STAGE_OCR = "ocr"
STAGE_NORMALIZE = "normalize"
STAGE_ASSEMBLE = "assemble"
STAGE_ROUTE = "route"

# page workers report failures as text, this maps them back to their kind
_PAGE_STAGE_ERRORS = {
    STAGE_EXTRACT: ExtractionFailure,
    STAGE_OCR: OCRFailure,
    STAGE_NORMALIZE: AssemblyFailure,
}

# where a job was when something escaped the stage blocks
_STATE_STAGES = {
    ProcessingState.CLAIMED: STAGE_SIGNATURE,
    ProcessingState.EXTRACTING: STAGE_EXTRACT,
    ProcessingState.OCRING: STAGE_OCR,
    ProcessingState.ASSEMBLING: STAGE_ASSEMBLE,
}


@contextmanager
def stage(name: str):
    """Tag any failure inside the block with the stage it happened in."""
    try:
        yield
    except StageError:
        raise
    except Exception as e:
        raise StageError(name, e) from e


class JobProcessor:
    """
    Runs one claimed job through every stage to a terminal route.

    All failures, whatever the stage, converge on the ErrorRouter. `process`
    never raises for a failed job.
    """

    def __init__(self, config: ServerConfig, scheduler: ConcurrencyScheduler, claim_store: ClaimStore,
                 pdf_processor: Optional[BasePDFProcessor] = None,
                 converter: Optional[BaseDocumentConverter] = None):
        self.config = config
        self.scheduler = scheduler
        self.claims = claim_store
        self.pdf = pdf_processor or get_pdf_processor()
        self.signatures = SignatureDetector(self.pdf)
        self.extractor = PageExtractor(self.pdf, dpi=config.dpi)
        self.assembler = Assembler(self.pdf, converter or GhostscriptConverter(
            pdfa_level=config.pdfa_level, pdf_settings=config.pdf_settings))
        self.outcomes = OutcomeRouter(claim_store)
        self.errors = ErrorRouter(claim_store, config.error_log_path)
        self.performance = PerformanceLog(config.performance_log_path, config.log_performance)

    def process(self, job: Job) -> Job:
        if job.claim is None or job.state is not ProcessingState.CLAIMED:
            raise ValueError(f"{job.relative_path} must be claimed before processing")
        start = time.perf_counter()
        logger.progress("Processing %s", job.relative_path)
        with job_workspace(job) as work_dir:
            try:
                output = self._run_stages(job, work_dir)
            except StageError as e:
                self._fail(job, e.stage, e.error)
            except Exception as e:
                self._fail(job, _STATE_STAGES.get(job.state, STAGE_OCR), e)
            else:
                try:
                    self.outcomes.route(job, output)
                except Exception as e:
                    self._fail(job, STAGE_ROUTE, e)
                else:
                    job.advance(ProcessingState.DONE)
        self.performance.record(job, time.perf_counter() - start)
        return job

    def _run_stages(self, job: Job, work_dir: Path) -> Path:
        with stage(STAGE_SIGNATURE):
            job.signed = self.signatures.has_signature(job.working_path)

        job.advance(ProcessingState.EXTRACTING)
        with stage(STAGE_EXTRACT):
            job.pages = self.extractor.probe(job.working_path)
            if not job.pages:
                raise ExtractionFailure("document has no pages")

        job.advance(ProcessingState.OCRING)
        with stage(STAGE_OCR):
            finals = self._process_pages(job, work_dir)

        job.advance(ProcessingState.ASSEMBLING)
        with stage(STAGE_ASSEMBLE):
            return self.assembler.assemble(job, finals, work_dir)

    def _process_pages(self, job: Job, work_dir: Path) -> List[FinalPage]:
        tasks = [
            {
                "source_path": str(job.working_path),
                "work_dir": str(work_dir),
                "strategy": job.strategy.value,
                "page": page,
            }
            for page in job.pages
        ]
        results = self.scheduler.run_pages(tasks, desc=job.relative_path.name)

        failures = sorted((r for r in results if r.get("error")), key=lambda r: r["page"].index)
        if failures:
            first = failures[0]
            name = first.get("stage", STAGE_OCR)
            exc_cls = _PAGE_STAGE_ERRORS.get(name, OCRFailure)
            raise StageError(name, exc_cls(f"page {first['page'].index}: {first['error']}"))
        if len(results) != len(job.pages):
            raise StageError(STAGE_OCR, OCRFailure(f"{len(results)} of {len(job.pages)} pages came back"))

        by_index: Dict[int, dict] = {r["page"].index: r for r in results}
        finals: List[FinalPage] = []
        for page in job.pages:
            r = by_index[page.index]
            page.final = r["final"]
            finals.append(page.final)

        job.stats["ocr_seconds"] = sum(float(r.get("ocr_seconds", 0.0)) for r in results)
        job.stats["skipped_pages"] = sum(1 for r in results if r.get("skipped"))
        job.stats["encodings"] = dict(Counter(p.encoding.value for p in job.pages))
        logger.progress("%s, %d pages recognized, %d already searchable",
                        job.relative_path, len(results) - job.stats["skipped_pages"],
                        job.stats["skipped_pages"])
        return finals

    def _fail(self, job: Job, stage_name: str, error: BaseException):
        job.failed_stage = stage_name
        job.error = f"{type(error).__name__}: {error}"
        job.advance(ProcessingState.ERRORED)
        try:
            self.errors.route(job, stage_name, error)
        except Exception:
            # the claim stays in place, the file is never lost
            logger.critical("Could not route failed job %s, claim left at %s",
                            job.relative_path, job.claim.claimed_path, exc_info=True)
