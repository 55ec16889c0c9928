# src/ocrserver/extractor.py
"""
Page extraction. Every page gets exactly one image for the OCR engine, picked
by a closed set of strategies:

- RASTER, one full-page embedded raster image, taken at native resolution
  together with its placement on the page.
- STENCIL, one full-page image mask. Known limitation: the mask is spread over
  the whole page and its original placement (cropping) is lost, so geometry
  inside stencil pages is best effort.
- UNKNOWN, everything else, including pages with zero or several images. The
  page is rasterized whole at a fixed resolution.

A failing specific strategy falls back to whole-page rasterization. Only a
failing fallback fails the job.
"""
from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .exceptions import ExtractionFailure
from .models import EncodingClass, Page, Rect
from .pdf_processor import BasePDFProcessor, ImageProbe, get_pdf_processor

logger = logging.getLogger("ocrserver")

KNOWN_RASTER_FILTERS = frozenset({
    "",  # uncompressed samples
    "DCTDecode", "FlateDecode", "CCITTFaxDecode", "JBIG2Decode",
    "JPXDecode", "LZWDecode", "RunLengthDecode",
})

# an image must cover this share of the page to stand in for the whole page
MIN_COVERAGE = 0.95


def _area(r: Rect) -> float:
    return max(0.0, r[2] - r[0]) * max(0.0, r[3] - r[1])


def classify_page(images: Sequence[ImageProbe], rotation: int, page_size: Tuple[float, float]) -> EncodingClass:
    """Pick the extraction strategy for a page from its placed images. Pure."""
    if rotation % 360 or len(images) != 1:
        return EncodingClass.UNKNOWN
    img = images[0]
    page_area = page_size[0] * page_size[1]
    if not img.axis_aligned or page_area <= 0 or _area(img.bbox) / page_area < MIN_COVERAGE:
        return EncodingClass.UNKNOWN
    if img.image_mask:
        return EncodingClass.STENCIL
    if img.filter in KNOWN_RASTER_FILTERS and img.bpc >= 1:
        return EncodingClass.RASTER
    return EncodingClass.UNKNOWN


@dataclass
class ExtractedImage:
    path: Path
    size: Tuple[int, int]
    crop: Optional[Rect]            # None means the whole visible page
    encoding: EncodingClass
    dpi: float


def _dpi_for(pixels: int, points: float) -> float:
    return pixels * 72.0 / points if points > 0 else 300.0


# --- Strategies ---
class ExtractionStrategy(ABC):
    encoding: EncodingClass

    @abstractmethod
    def extract(self, pdf: BasePDFProcessor, file_path: Path, page: Page,
                out_path: Path, dpi: int) -> ExtractedImage:
        raise NotImplementedError


class RasterStrategy(ExtractionStrategy):
    encoding = EncodingClass.RASTER

    def extract(self, pdf, file_path, page, out_path, dpi):
        w, h = pdf.extract_image(file_path, page.image_xref, out_path)
        crop = page.crop
        return ExtractedImage(out_path, (w, h), crop, self.encoding,
                              _dpi_for(w, crop[2] - crop[0]) if crop else float(dpi))


class StencilStrategy(ExtractionStrategy):
    encoding = EncodingClass.STENCIL

    def extract(self, pdf, file_path, page, out_path, dpi):
        data = pdf.extract_image_bytes(file_path, page.image_xref)
        with Image.open(io.BytesIO(data)) as im:
            arr = np.asarray(im.convert("L"))
        # masks often decode as white ink on black, OCR wants dark text on light paper
        if arr.mean() < 128:
            arr = 255 - arr
        img = Image.fromarray(arr.astype(np.uint8))
        page_w, _ = page.geometry.visual_size
        res = _dpi_for(img.width, page_w)
        img.save(out_path, format="PNG", dpi=(res, res))
        # the mask is stretched over the full page, its placement is not kept
        return ExtractedImage(out_path, img.size, None, self.encoding, res)


class DefaultFallbackStrategy(ExtractionStrategy):
    encoding = EncodingClass.UNKNOWN

    def extract(self, pdf, file_path, page, out_path, dpi):
        w, h = pdf.render_page(file_path, page.index, dpi, out_path)
        return ExtractedImage(out_path, (w, h), None, self.encoding, float(dpi))


STRATEGIES: Dict[EncodingClass, ExtractionStrategy] = {
    EncodingClass.RASTER: RasterStrategy(),
    EncodingClass.STENCIL: StencilStrategy(),
    EncodingClass.UNKNOWN: DefaultFallbackStrategy(),
}


class PageExtractor:
    """Splits a document into pages and produces one OCR input image per page."""

    def __init__(self, pdf_processor: Optional[BasePDFProcessor] = None, dpi: int = 300):
        self.pdf = pdf_processor or get_pdf_processor()
        self.dpi = dpi

    def probe(self, file_path: Path) -> List[Page]:
        """One Page per real page, driven by page boundaries, never by image count."""
        pages: List[Page] = []
        for info in self.pdf.inspect_pages(file_path):
            encoding = classify_page(info.images, info.geometry.rotation, info.geometry.visual_size)
            img = info.images[0] if encoding is not EncodingClass.UNKNOWN else None
            pages.append(Page(
                index=info.index,
                geometry=info.geometry,
                encoding=encoding,
                image_xref=img.xref if img else 0,
                crop=img.bbox if img else None,
                has_text_layer=info.has_text_layer,
            ))
        return pages

    def extract(self, file_path: Path, page: Page, out_dir: Path) -> ExtractedImage:
        out_path = out_dir / f"page-{page.index:04d}.png"
        strategy = STRATEGIES[page.encoding]
        if page.encoding is not EncodingClass.UNKNOWN:
            try:
                return strategy.extract(self.pdf, file_path, page, out_path, self.dpi)
            except Exception as e:
                logger.warning("%s page %d, %s extraction failed (%s), rasterizing the whole page",
                               file_path.name, page.index, page.encoding.value, e)
        try:
            return STRATEGIES[EncodingClass.UNKNOWN].extract(self.pdf, file_path, page, out_path, self.dpi)
        except Exception as e:
            raise ExtractionFailure(f"page {page.index}: default rasterization failed, {e}") from e
