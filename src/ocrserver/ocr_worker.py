# src/ocrserver/ocr_worker.py
from __future__ import annotations

import importlib
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict

from .extractor import PageExtractor
from .injector import OCRInjector
from .logger import configure_worker_logging
from .models import AssemblyStrategy
from .normalizer import PageNormalizer

logger = logging.getLogger("ocrserver")

# One engine and one set of page stages per worker process
ocr_engine: Any | None = None
_extractor: PageExtractor | None = None
_injector: OCRInjector | None = None
_normalizer: PageNormalizer | None = None


def _import_obj(dotted: str):
    mod_path, _, attr = dotted.rpartition(".")
    if not mod_path or not attr:
        raise ImportError(f"Invalid backend path, {dotted}")
    mod = importlib.import_module(mod_path)
    try:
        return getattr(mod, attr)
    except AttributeError as e:
        raise ImportError(f"Backend class not found, {dotted}") from e


def build_backend_kwargs(settings: Dict[str, Any]) -> Dict[str, Any]:
    kw = dict(settings.get("ocr_backend_kwargs") or {})
    if "languages" not in kw and "lang" not in kw:
        kw["languages"] = list(settings.get("languages") or [])
    kw.setdefault("oem", settings.get("oem", 0))
    kw.setdefault("psm", settings.get("psm", 3))
    return kw


def initialize_ocr_worker(log_queue, settings: Dict[str, Any]):
    """
    Called once in each page worker process.
    Loads the backend class and creates the engine instance.
    """
    if log_queue is not None:
        configure_worker_logging(log_queue)
    pid = os.getpid()
    backend_path = settings["ocr_backend"]
    logger.debug("Initializing OCR worker, backend, %s, pid, %s", backend_path, pid)
    try:
        EngineCls = _import_obj(backend_path)
    except Exception:
        logger.exception("Cannot import backend, %s", backend_path)
        raise

    global ocr_engine, _extractor, _injector, _normalizer
    try:
        ocr_engine = EngineCls(**build_backend_kwargs(settings))
    except Exception:
        logger.exception("Backend initialization failed for %s", backend_path)
        raise

    _extractor = PageExtractor(dpi=int(settings.get("dpi", 300)))
    _injector = OCRInjector(ocr_engine)
    _normalizer = PageNormalizer()
    logger.debug("OCR worker ready, pid, %s", pid)


def process_page_task(task: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract, recognize and normalize one page.

    Never raises: failures come back in the task dict as "error" plus the
    "stage" that failed, the parent decides what that means for the job.
    """
    start = time.perf_counter()
    page = task["page"]
    if _injector is None:
        task.update(error="OCR worker called before initialization", stage="ocr")
        return task

    file_path = Path(task["source_path"])
    work_dir = Path(task["work_dir"])
    strategy = AssemblyStrategy(task["strategy"])

    stage = "extract"
    try:
        image = None
        if _injector.needs_ocr(page):
            image = _extractor.extract(file_path, page, work_dir)
            task["encoding"] = image.encoding.value
        stage = "ocr"
        result = _injector.process_page(page, image, strategy, work_dir)
        stage = "normalize"
        task["final"] = _normalizer.normalize(result, page.geometry, work_dir)
        task["ocr_seconds"] = result.duration_seconds
        task["skipped"] = result.skipped
    except Exception as e:
        logger.error("%s page %d failed at %s, %s", file_path.name, page.index, stage, e)
        task["error"] = f"{type(e).__name__}: {e}"
        task["stage"] = stage
    finally:
        task["duration_seconds"] = time.perf_counter() - start
    return task
