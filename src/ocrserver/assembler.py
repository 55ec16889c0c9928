# src/ocrserver/assembler.py
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from .converter import BaseDocumentConverter, GhostscriptConverter
from .exceptions import AssemblyFailure
from .models import FinalPage, Job
from .pdf_processor import BasePDFProcessor, get_pdf_processor

logger = logging.getLogger("ocrserver")

_CHUNK = 1024 * 1024


def _is_prefix_of(original: Path, updated: Path) -> bool:
    """True when `updated` starts with the exact bytes of `original`."""
    if updated.stat().st_size < original.stat().st_size:
        return False
    with open(original, "rb") as a, open(updated, "rb") as b:
        while True:
            chunk = a.read(_CHUNK)
            if not chunk:
                return True
            if b.read(len(chunk)) != chunk:
                return False


class Assembler:
    """
    Builds the output document of a job inside its temp area.

    Unsigned documents are rebuilt from their normalized pages, merged in page
    order and converted to PDF/A. Signed documents keep every original byte,
    the words go in as an incremental update. A document whose pages all
    already had a text layer comes out as an exact copy.
    """

    def __init__(self, pdf_processor: Optional[BasePDFProcessor] = None,
                 converter: Optional[BaseDocumentConverter] = None):
        self.pdf = pdf_processor or get_pdf_processor()
        self.converter = converter or GhostscriptConverter()

    def assemble(self, job: Job, final_pages: List[FinalPage], build_dir: Path) -> Path:
        pages = sorted(final_pages, key=lambda p: p.index)
        expected = len(job.pages)
        if [p.index for p in pages] != list(range(1, expected + 1)):
            raise AssemblyFailure(f"expected pages 1..{expected}, got {[p.index for p in pages]}")

        out_path = build_dir / "output.pdf"
        try:
            if all(p.passthrough for p in pages):
                logger.info("%s is already searchable, output is an unchanged copy", job.relative_path)
                shutil.copyfile(job.working_path, out_path)
            elif job.signed:
                self._overlay(job, pages, out_path)
            else:
                self._rebuild(job, pages, build_dir, out_path)
        except AssemblyFailure:
            raise
        except Exception as e:
            raise AssemblyFailure(f"{type(e).__name__}: {e}") from e
        return out_path

    def _rebuild(self, job: Job, pages: List[FinalPage], build_dir: Path, out_path: Path) -> None:
        parts: List[Path] = []
        for p in pages:
            if p.passthrough:
                kept = build_dir / f"keep-{p.index:04d}.pdf"
                self.pdf.copy_page(job.working_path, p.index, kept)
                parts.append(kept)
            elif p.pdf_path:
                parts.append(Path(p.pdf_path))
            else:
                raise AssemblyFailure(f"page {p.index} has no rebuilt PDF")

        merged = build_dir / "merged.pdf"
        count = self.pdf.merge(parts, merged)
        if count != len(pages):
            raise AssemblyFailure(f"merged {count} pages, expected {len(pages)}")

        self.converter.convert(merged, out_path)
        count = self.pdf.page_count(out_path)
        if count != len(pages):
            raise AssemblyFailure(f"converted document has {count} pages, expected {len(pages)}")

    def _overlay(self, job: Job, pages: List[FinalPage], out_path: Path) -> None:
        shutil.copyfile(job.working_path, out_path)
        words = {p.index: p.words for p in pages if not p.passthrough and p.words}
        if not words:
            return
        if not self.pdf.overlay_words(out_path, words):
            # refused incremental update, the untouched copy is still a valid output
            return
        if not _is_prefix_of(job.working_path, out_path):
            raise AssemblyFailure("incremental update altered the signed byte range")
