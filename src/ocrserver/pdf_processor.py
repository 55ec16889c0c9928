# src/ocrserver/pdf_processor.py
from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

import fitz  # PyMuPDF

from .models import PageGeometry, Rect, Word

logger = logging.getLogger("ocrserver")

# PyMuPDF is not thread-safe. Job threads of one process share this lock,
# page workers are separate processes and never contend for it.
PDF_LOCK = threading.RLock()

# Tesseract names the font of its invisible text layer GlyphLessFont
HIDDEN_TEXT_FONTS = ("GlyphLessFont",)
_INVISIBLE_TEXT = re.compile(rb"(?<![\w.])3\s+Tr\b")
_XREF_REF = re.compile(r"(\d+)\s+0\s+R")


@dataclass(frozen=True)
class ImageProbe:
    """One placement of an embedded image on a page."""
    xref: int
    width: int
    height: int
    bpc: int
    colorspace: str
    filter: str
    image_mask: bool
    bbox: Rect
    axis_aligned: bool


@dataclass(frozen=True)
class PageInfo:
    index: int                      # 1-based
    geometry: PageGeometry
    images: Tuple[ImageProbe, ...]
    has_text_layer: bool


def _open(path) -> "fitz.Document":
    # claimed files carry a hidden non-.pdf name, never guess the type from it
    return fitz.open(str(path), filetype="pdf")


def _rect(r) -> Rect:
    return (float(r.x0), float(r.y0), float(r.x1), float(r.y1))


def _content_streams(doc: "fitz.Document", page: "fitz.Page") -> Iterator[bytes]:
    """The page content stream, then every Form XObject it reaches."""
    yield page.read_contents() or b""
    seen = set()
    pending = [x[0] for x in page.get_xobjects()]
    while pending:
        xref = pending.pop()
        if xref <= 0 or xref in seen:
            continue
        seen.add(xref)
        if doc.xref_get_key(xref, "Subtype")[1] != "/Form":
            continue
        yield doc.xref_stream(xref) or b""
        kind, value = doc.xref_get_key(xref, "Resources/XObject")
        if kind == "xref":
            value = doc.xref_object(int(value.split()[0]))
        if kind in ("dict", "xref"):
            pending.extend(int(n) for n in _XREF_REF.findall(value))


def page_has_text_layer(doc: "fitz.Document", page: "fitz.Page") -> bool:
    """
    True when the page already carries an invisible text layer: either
    Tesseract's GlyphLessFont is referenced, or some content stream switches
    to text render mode 3 (neither fill nor stroke).
    """
    for f in page.get_fonts(full=True):
        basefont = f[3] or ""
        if any(marker in basefont for marker in HIDDEN_TEXT_FONTS):
            return True
    return any(_INVISIBLE_TEXT.search(s) for s in _content_streams(doc, page))


def page_geometry(page: "fitz.Page") -> PageGeometry:
    return PageGeometry(mediabox=_rect(page.mediabox), cropbox=_rect(page.cropbox),
                        rotation=int(page.rotation))


# --- Step 1, interface ---
class BasePDFProcessor(ABC):
    """
    Interface for the PDF toolkit and rasterizer capabilities.
    """

    @abstractmethod
    def page_count(self, file_path: Path) -> int:
        raise NotImplementedError

    @abstractmethod
    def inspect_pages(self, file_path: Path) -> List[PageInfo]:
        """Geometry, placed images and text layer state of every page."""
        raise NotImplementedError

    @abstractmethod
    def has_signature(self, file_path: Path) -> bool:
        raise NotImplementedError

    @abstractmethod
    def render_page(self, file_path: Path, index: int, dpi: int, out_path: Path) -> Tuple[int, int]:
        """Rasterize a whole page, returns the pixel size."""
        raise NotImplementedError

    @abstractmethod
    def extract_image(self, file_path: Path, xref: int, out_path: Path) -> Tuple[int, int]:
        """Write an embedded raster image at native resolution, returns the pixel size."""
        raise NotImplementedError

    @abstractmethod
    def extract_image_bytes(self, file_path: Path, xref: int) -> bytes:
        """Encoded bytes of an embedded image, used for stencil masks."""
        raise NotImplementedError

    @abstractmethod
    def copy_page(self, file_path: Path, index: int, out_path: Path) -> None:
        raise NotImplementedError

    @abstractmethod
    def merge(self, pdf_paths: List[Path], out_path: Path) -> int:
        """Concatenate one-page PDFs in the given order, returns the page count."""
        raise NotImplementedError

    @abstractmethod
    def overlay_words(self, file_path: Path, words_by_page: Dict[int, List[Word]]) -> bool:
        """
        Append invisible words as an incremental update. Returns False when the
        file cannot be updated incrementally and was left untouched.
        """
        raise NotImplementedError


# --- Step 2, concrete implementation with PyMuPDF ---
class PyMuPDFProcessor(BasePDFProcessor):
    """PDF processor that uses PyMuPDF."""

    def page_count(self, file_path: Path) -> int:
        with PDF_LOCK, _open(file_path) as doc:
            return len(doc)

    def inspect_pages(self, file_path: Path) -> List[PageInfo]:
        infos: List[PageInfo] = []
        with PDF_LOCK, _open(file_path) as doc:
            for page in doc:
                probes: List[ImageProbe] = []
                for img in page.get_images(full=True):
                    xref, _smask, w, h, bpc, cs, _alt, _name, filt = img[:9]
                    mask = doc.xref_get_key(xref, "ImageMask")[1] == "true"
                    for rect, m in page.get_image_rects(xref, transform=True):
                        probes.append(ImageProbe(
                            xref=xref, width=int(w), height=int(h), bpc=int(bpc),
                            colorspace=str(cs or ""), filter=str(filt or ""), image_mask=mask,
                            bbox=_rect(rect),
                            axis_aligned=abs(m.b) < 1e-6 and abs(m.c) < 1e-6,
                        ))
                infos.append(PageInfo(
                    index=page.number + 1,
                    geometry=page_geometry(page),
                    images=tuple(probes),
                    has_text_layer=page_has_text_layer(doc, page),
                ))
        return infos

    def has_signature(self, file_path: Path) -> bool:
        with PDF_LOCK, _open(file_path) as doc:
            # SigFlags bit 1, SignaturesExist
            flags = doc.get_sigflags()
            if flags > 0 and flags & 1:
                return True
            # any signature dictionary carries the signed byte ranges
            for xref in range(1, doc.xref_length()):
                if doc.xref_get_key(xref, "ByteRange")[0] == "array":
                    return True
        return False

    def render_page(self, file_path: Path, index: int, dpi: int, out_path: Path) -> Tuple[int, int]:
        with PDF_LOCK, _open(file_path) as doc:
            page = doc.load_page(index - 1)
            pix = page.get_pixmap(dpi=dpi, alpha=False)
            pix.save(str(out_path))
            return pix.width, pix.height

    def extract_image(self, file_path: Path, xref: int, out_path: Path) -> Tuple[int, int]:
        with PDF_LOCK, _open(file_path) as doc:
            pix = fitz.Pixmap(doc, xref)
            if pix.alpha:
                pix = fitz.Pixmap(pix, 0)
            if pix.colorspace is not None and pix.colorspace.n not in (1, 3):
                pix = fitz.Pixmap(fitz.csRGB, pix)
            pix.save(str(out_path))
            return pix.width, pix.height

    def extract_image_bytes(self, file_path: Path, xref: int) -> bytes:
        with PDF_LOCK, _open(file_path) as doc:
            info = doc.extract_image(xref)
            if not info or not info.get("image"):
                raise ValueError(f"image xref {xref} could not be extracted")
            return info["image"]

    def copy_page(self, file_path: Path, index: int, out_path: Path) -> None:
        with PDF_LOCK, _open(file_path) as src, fitz.open() as out:
            out.insert_pdf(src, from_page=index - 1, to_page=index - 1)
            out.save(str(out_path))

    def merge(self, pdf_paths: List[Path], out_path: Path) -> int:
        with PDF_LOCK, fitz.open() as out:
            for p in pdf_paths:
                with _open(p) as part:
                    out.insert_pdf(part)
            out.save(str(out_path), garbage=3, deflate=True)
            return len(out)

    def overlay_words(self, file_path: Path, words_by_page: Dict[int, List[Word]]) -> bool:
        with PDF_LOCK, _open(file_path) as doc:
            if not doc.can_save_incrementally():
                logger.warning("%s cannot be updated incrementally, leaving it unchanged", file_path.name)
                return False
            for index, words in sorted(words_by_page.items()):
                page = doc[index - 1]
                derot = page.derotation_matrix
                for w in words:
                    r = fitz.Rect(w.bbox)
                    if r.is_empty or not w.text.strip():
                        continue
                    point = fitz.Point(r.x0, r.y1 - r.height * 0.2) * derot
                    page.insert_text(point, w.text, fontsize=max(1.0, r.height * 0.8),
                                     fontname="helv", render_mode=3, rotate=page.rotation)
            doc.saveIncr()
        return True


# --- Step 3, factory ---
def get_pdf_processor(engine_name: str = "pymupdf") -> BasePDFProcessor:
    """
    Create a PDF processor by name.
    """
    name = (engine_name or "").lower()
    if name == "pymupdf":
        return PyMuPDFProcessor()
    raise ValueError(f"Unknown PDF engine, '{engine_name}'. Supported engines, ['pymupdf']")
