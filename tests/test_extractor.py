from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from conftest import A4, make_scan_pdf, make_stencil_pdf
from ocrserver.exceptions import ExtractionFailure
from ocrserver.extractor import PageExtractor, StencilStrategy, classify_page
from ocrserver.models import EncodingClass, Page, PageGeometry
from ocrserver.pdf_processor import ImageProbe, PyMuPDFProcessor

FULL = (0.0, 0.0, 595.0, 842.0)


def probe(**kw) -> ImageProbe:
    base = dict(xref=5, width=2480, height=3508, bpc=8, colorspace="DeviceGray", filter="FlateDecode",
                image_mask=False, bbox=FULL, axis_aligned=True)
    base.update(kw)
    return ImageProbe(**base)


# --- classification, pure ---
def test_single_full_page_raster():
    assert classify_page([probe()], 0, A4) is EncodingClass.RASTER
    assert classify_page([probe(filter="DCTDecode")], 0, A4) is EncodingClass.RASTER
    assert classify_page([probe(filter="CCITTFaxDecode", bpc=1)], 0, A4) is EncodingClass.RASTER


def test_image_mask_is_stencil():
    assert classify_page([probe(image_mask=True, bpc=1, colorspace="")], 0, A4) is EncodingClass.STENCIL


@pytest.mark.parametrize("images, rotation", [
    ([], 0),
    ([probe(), probe(xref=6)], 0),
    ([probe()], 90),
    ([probe(axis_aligned=False)], 0),
    ([probe(bbox=(0.0, 0.0, 300.0, 400.0))], 0),
    ([probe(filter="SomeVendorDecode")], 0),
])
def test_everything_else_is_unknown(images, rotation):
    assert classify_page(images, rotation, A4) is EncodingClass.UNKNOWN


# --- probing real documents ---
def test_probe_one_page_per_page(tmp_path):
    pdf = make_scan_pdf(tmp_path / "doc.pdf", pages=[{}, {"rotation": 90}, {"images": 0, "text": "typed"}, {"images": 2}])

    pages = PageExtractor(dpi=72).probe(pdf)

    assert [p.index for p in pages] == [1, 2, 3, 4]
    assert [p.encoding for p in pages] == [
        EncodingClass.RASTER, EncodingClass.UNKNOWN, EncodingClass.UNKNOWN, EncodingClass.UNKNOWN]
    assert pages[0].image_xref > 0
    assert pages[0].crop == pytest.approx(FULL)
    assert pages[1].geometry.rotation == 90
    assert not any(p.has_text_layer for p in pages)


def test_probe_detects_existing_hidden_layer(tmp_path):
    pdf = make_scan_pdf(tmp_path / "doc.pdf", pages=[{"hidden_text": "already ocred"}, {}])
    pages = PageExtractor(dpi=72).probe(pdf)
    assert [p.has_text_layer for p in pages] == [True, False]


def test_raster_is_extracted_at_native_resolution(tmp_path):
    pdf = make_scan_pdf(tmp_path / "doc.pdf", pages=[{"image": (300, 420)}])
    extractor = PageExtractor(dpi=72)
    page = extractor.probe(pdf)[0]

    img = extractor.extract(pdf, page, tmp_path)

    assert img.encoding is EncodingClass.RASTER
    assert img.size == (300, 420)
    assert img.path.name == "page-0001.png"
    assert img.crop == pytest.approx(FULL)
    with Image.open(img.path) as im:
        assert im.size == (300, 420)


def test_unknown_page_is_rasterized_whole(tmp_path):
    pdf = make_scan_pdf(tmp_path / "doc.pdf", pages=[{"rotation": 90}])
    extractor = PageExtractor(dpi=72)
    page = extractor.probe(pdf)[0]

    img = extractor.extract(pdf, page, tmp_path)

    assert img.encoding is EncodingClass.UNKNOWN
    assert img.crop is None
    # rendered as displayed, so width and height are swapped
    assert img.size == (842, 595)


def test_failing_raster_strategy_falls_back(tmp_path, monkeypatch):
    pdf = make_scan_pdf(tmp_path / "doc.pdf")
    processor = PyMuPDFProcessor()
    extractor = PageExtractor(processor, dpi=72)
    page = extractor.probe(pdf)[0]

    def broken(*a, **kw):
        raise ValueError("unsupported colorspace")

    monkeypatch.setattr(processor, "extract_image", broken)
    img = extractor.extract(pdf, page, tmp_path)

    assert img.encoding is EncodingClass.UNKNOWN
    assert img.size == (595, 842)


def test_failing_fallback_escalates(tmp_path, monkeypatch):
    pdf = make_scan_pdf(tmp_path / "doc.pdf")
    processor = PyMuPDFProcessor()
    extractor = PageExtractor(processor, dpi=72)
    page = extractor.probe(pdf)[0]

    def broken(*a, **kw):
        raise RuntimeError("rasterizer died")

    monkeypatch.setattr(processor, "extract_image", broken)
    monkeypatch.setattr(processor, "render_page", broken)
    with pytest.raises(ExtractionFailure):
        extractor.extract(pdf, page, tmp_path)


def test_stencil_polarity_is_normalized(tmp_path):
    # white ink on black, the way some masks decode
    mask = Image.new("L", (100, 140), 0)
    mask.paste(255, (10, 10, 90, 20))
    buf = io.BytesIO()
    mask.save(buf, format="PNG")

    class MaskSource:
        def extract_image_bytes(self, file_path, xref):
            return buf.getvalue()

    page = Page(index=1, geometry=PageGeometry(FULL, FULL), encoding=EncodingClass.STENCIL, image_xref=7)
    out = tmp_path / "page-0001.png"

    img = StencilStrategy().extract(MaskSource(), tmp_path / "doc.pdf", page, out, 300)

    assert img.crop is None
    assert img.size == (100, 140)
    with Image.open(out) as im:
        arr = np.asarray(im)
    assert arr.mean() > 128
    assert arr[15, 50] == 0


def test_real_image_mask_page_goes_through_the_stencil_path(tmp_path):
    pdf = make_stencil_pdf(tmp_path / "fax.pdf", image=(240, 320))
    extractor = PageExtractor(dpi=72)
    page = extractor.probe(pdf)[0]

    assert page.encoding is EncodingClass.STENCIL
    assert page.image_xref > 0

    img = extractor.extract(pdf, page, tmp_path)

    assert img.encoding is EncodingClass.STENCIL
    assert img.size == (240, 320)
    assert img.crop is None
    with Image.open(img.path) as im:
        arr = np.asarray(im.convert("L"))
    # dark bars on light paper
    assert arr.mean() >= 128
    assert arr.min() < 128
