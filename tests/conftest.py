# tests/conftest.py
"""Shared fixtures: generated scan PDFs, a small server config, fake externals."""
from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

import pytest

# spawned page workers inherit sys.path, so both the package and fakes.py resolve there too
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import fitz  # noqa: E402
from PIL import Image, ImageDraw  # noqa: E402

from ocrserver.config import ServerConfig, WatchRoot  # noqa: E402

A4 = (595.0, 842.0)


def scan_png(width: int = 200, height: int = 280, bars: int = 6) -> bytes:
    """A gray page with dark bars, looks enough like text for the fakes."""
    im = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(im)
    step = max(1, height // (bars + 1))
    for i in range(1, bars + 1):
        draw.rectangle([width // 10, i * step, width - width // 10, i * step + step // 3], fill="black")
    buf = io.BytesIO()
    im.save(buf, format="PNG")
    return buf.getvalue()


def make_scan_pdf(path: Path, pages: Sequence[dict] = ({},), signed: bool = False) -> Path:
    """
    Build a scanned-looking PDF. Each page dict may hold:
      size (w, h) in points, image (w, h) in pixels, rotation,
      cropbox (x0, y0, x1, y1), images (count of full-page images, default 1),
      text (visible text instead of images), hidden_text (invisible layer).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with fitz.open() as doc:
        for opts in pages:
            w, h = opts.get("size", A4)
            page = doc.new_page(width=w, height=h)
            for _ in range(opts.get("images", 1)):
                iw, ih = opts.get("image", (200, 280))
                page.insert_image(page.rect, stream=scan_png(iw, ih))
            if opts.get("text"):
                page.insert_text((72, 72), opts["text"], fontsize=12)
            if opts.get("hidden_text"):
                page.insert_text((72, 100), opts["hidden_text"], fontsize=12, render_mode=3)
            if opts.get("cropbox"):
                page.set_cropbox(fitz.Rect(opts["cropbox"]))
            if opts.get("rotation"):
                page.set_rotation(opts["rotation"])
        if signed:
            xref = doc.get_new_xref()
            doc.update_object(xref, "<< /Type /Sig /Filter /Adobe.PPKLite /ByteRange [0 10 20 30] >>")
        doc.save(str(path))
    return path


def make_stencil_pdf(path: Path, size=A4, image=(240, 320)) -> Path:
    """One page painted by a full-page 1-bit /ImageMask, the way some scanners emit fax pages."""
    iw, ih = image
    row = (iw + 7) // 8
    # 1 bits leave the page unpainted, 0 bits paint with the fill colour
    data = bytearray(b"\xff" * row * ih)
    for y in range(ih // 6, ih - ih // 6, 24):
        for line in range(y, min(y + 8, ih)):
            for b in range(2, row - 2):
                data[line * row + b] = 0
    w, h = size
    path.parent.mkdir(parents=True, exist_ok=True)
    with fitz.open() as doc:
        page = doc.new_page(width=w, height=h)
        img = doc.get_new_xref()
        doc.update_object(img, f"<< /Type /XObject /Subtype /Image /Width {iw} /Height {ih} "
                               f"/ImageMask true /BitsPerComponent 1 >>")
        doc.update_stream(img, bytes(data))
        contents = doc.get_new_xref()
        doc.update_object(contents, "<< >>")
        doc.update_stream(contents, f"q 0 g {w:g} 0 0 {h:g} 0 0 cm /Im0 Do Q".encode())
        doc.xref_set_key(page.xref, "Resources", f"<< /XObject << /Im0 {img} 0 R >> >>")
        doc.xref_set_key(page.xref, "Contents", f"{contents} 0 R")
        doc.save(str(path))
    return path


def page_geometries(path: Path):
    with fitz.open(str(path), filetype="pdf") as doc:
        return [(tuple(round(v, 1) for v in p.rect), p.rotation) for p in doc]


def page_texts(path: Path):
    with fitz.open(str(path), filetype="pdf") as doc:
        return [p.get_text() for p in doc]


@pytest.fixture
def root(tmp_path: Path) -> WatchRoot:
    r = WatchRoot(tmp_path / "scanner")
    r.ensure_layout()
    return r


@pytest.fixture
def make_config(tmp_path: Path, root: WatchRoot):
    def _make(roots: Optional[Tuple[WatchRoot, ...]] = None, **overrides) -> ServerConfig:
        params = dict(
            watch_roots=roots or (root,),
            max_files=2,
            max_pgs=2,
            dpi=72,
            stability_interval=0,
            poll_interval=0.1,
            ocr_backend="fakes.FakeEngine",
            error_log_path=tmp_path / "logs" / "errors.jsonl",
            performance_log_path=tmp_path / "logs" / "performance.jsonl",
        )
        params.update(overrides)
        return ServerConfig(**params)
    return _make


@pytest.fixture
def config(make_config) -> ServerConfig:
    return make_config()
