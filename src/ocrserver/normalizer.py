# src/ocrserver/normalizer.py
from __future__ import annotations

import logging
from pathlib import Path

import fitz

from .models import FinalPage, PageGeometry, PageResult, Word
from .pdf_processor import PDF_LOCK

logger = logging.getLogger("ocrserver")


class PageNormalizer:
    """
    Brings an OCRed page back to the exact geometry of its source page.

    The rasterize-and-recognize round trip loses the page boxes and the
    /Rotate value. The rebuilt page gets the source mediabox and cropbox, the
    OCR page is drawn into the image's original placement (or the whole page),
    and the source rotation is set last.
    """

    def normalize(self, result: PageResult, geometry: PageGeometry, out_dir: Path) -> FinalPage:
        if result.skipped:
            return FinalPage(index=result.index, geometry=geometry, passthrough=True)
        if result.pdf_path:
            return self._rebuild(result, geometry, out_dir)
        return self._register_words(result, geometry)

    def _rebuild(self, result: PageResult, geometry: PageGeometry, out_dir: Path) -> FinalPage:
        out_path = out_dir / f"final-{result.index:04d}.pdf"
        with PDF_LOCK, fitz.open(result.pdf_path) as ocr_doc, fitz.open() as out:
            page = out.new_page(width=geometry.width, height=geometry.height)
            if geometry.mediabox[:2] != (0.0, 0.0):
                page.set_mediabox(fitz.Rect(geometry.mediabox))
            if geometry.cropbox != geometry.mediabox:
                page.set_cropbox(fitz.Rect(geometry.cropbox))
            # drawn while the page is still unrotated, the OCR page is upright
            # as displayed, so it is turned back by the source rotation
            target = fitz.Rect(result.crop) if result.crop else page.rect
            page.show_pdf_page(target, ocr_doc, 0, keep_proportion=False, rotate=geometry.rotation)
            if geometry.rotation:
                page.set_rotation(geometry.rotation)
            out.save(str(out_path), garbage=3, deflate=True)
        return FinalPage(index=result.index, geometry=geometry, pdf_path=str(out_path))

    @staticmethod
    def _register_words(result: PageResult, geometry: PageGeometry) -> FinalPage:
        img_w, img_h = result.image_size
        vis_w, vis_h = geometry.visual_size
        x0, y0, x1, y1 = result.crop or (0.0, 0.0, vis_w, vis_h)
        sx = (x1 - x0) / img_w if img_w else 1.0
        sy = (y1 - y0) / img_h if img_h else 1.0
        words = [
            Word(text=w.text,
                 bbox=(x0 + w.bbox[0] * sx, y0 + w.bbox[1] * sy, x0 + w.bbox[2] * sx, y0 + w.bbox[3] * sy),
                 confidence=w.confidence)
            for w in result.words
        ]
        return FinalPage(index=result.index, geometry=geometry, words=words)
