# src/ocrserver/injector.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import fitz
from PIL import Image

from .exceptions import OCRFailure
from .extractor import ExtractedImage
from .models import AssemblyStrategy, Page, PageResult
from .ocr_backends.base import BaseOCREngine
from .pdf_processor import PDF_LOCK

logger = logging.getLogger("ocrserver")


def _validate_page_pdf(data: bytes) -> None:
    if not data or not data.lstrip()[:5] == b"%PDF-":
        raise OCRFailure("OCR engine did not return a PDF")
    try:
        with PDF_LOCK, fitz.open(stream=data, filetype="pdf") as doc:
            count = len(doc)
    except Exception as e:
        raise OCRFailure(f"OCR engine returned an unreadable PDF, {e}") from e
    if count != 1:
        raise OCRFailure(f"OCR engine returned {count} pages for one image")


class OCRInjector:
    """
    Adds an invisible text layer to one page.

    Pages that already carry a hidden layer are passed through untouched, so a
    re-submitted document is never OCRed twice and never gets a second layer.
    Any recognition failure is raised, the caller fails the whole job.
    """

    def __init__(self, engine: BaseOCREngine):
        self.engine = engine

    @staticmethod
    def needs_ocr(page: Page) -> bool:
        return not page.has_text_layer

    def process_page(self, page: Page, image: Optional[ExtractedImage],
                     strategy: AssemblyStrategy, out_dir: Path) -> PageResult:
        if not self.needs_ocr(page):
            logger.debug("Page %d already has a hidden text layer, OCR skipped", page.index)
            return PageResult(index=page.index, skipped=True)
        if image is None:
            raise OCRFailure(f"page {page.index}: no image to recognize")

        start = time.perf_counter()
        try:
            with Image.open(image.path) as im:
                im.load()
                if strategy is AssemblyStrategy.OVERLAY:
                    words = self.engine.read_words(im)
                    return PageResult(index=page.index, words=words, image_size=image.size,
                                      crop=image.crop, duration_seconds=time.perf_counter() - start)
                data = self.engine.render_searchable_page(im)
        except OCRFailure:
            raise
        except Exception as e:
            raise OCRFailure(f"page {page.index}: {type(e).__name__}: {e}") from e

        _validate_page_pdf(data)
        pdf_path = out_dir / f"ocr-{page.index:04d}.pdf"
        pdf_path.write_bytes(data)
        return PageResult(index=page.index, pdf_path=str(pdf_path), image_size=image.size,
                          crop=image.crop, duration_seconds=time.perf_counter() - start)
