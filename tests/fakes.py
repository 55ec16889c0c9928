# tests/fakes.py
"""
Stand-ins for the external programs. The engines are loaded by dotted path
inside spawned page workers, exactly like the real Tesseract backend.
"""
from __future__ import annotations

import io
import os
import shutil
import time
from pathlib import Path
from typing import List

import fitz
from PIL import Image

from ocrserver.converter import BaseDocumentConverter
from ocrserver.models import Word
from ocrserver.ocr_backends.base import BaseOCREngine

FAKE_TEXT = "fakeocr"


class FakeEngine(BaseOCREngine):
    """Returns a one-page PDF with the image and an invisible text line."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.text = kwargs.get("text", FAKE_TEXT)

    def render_searchable_page(self, image: Image.Image) -> bytes:
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        with fitz.open() as doc:
            page = doc.new_page(width=image.width, height=image.height)
            page.insert_image(page.rect, stream=buf.getvalue())
            page.insert_text((5, min(20, image.height - 1)), self.text, fontsize=8, render_mode=3)
            return doc.tobytes()

    def read_words(self, image: Image.Image) -> List[Word]:
        return [Word(text=self.text, bbox=(0, 0, image.width / 2, image.height / 10), confidence=90.0)]


class FailingEngine(FakeEngine):
    """Fails every page at least `fail_min_width` pixels wide (all pages by default)."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_min_width = int(kwargs.get("fail_min_width", 0))

    def _check(self, image: Image.Image):
        if image.width >= self.fail_min_width:
            raise RuntimeError(f"engine crashed on a {image.width}px wide page")

    def render_searchable_page(self, image: Image.Image) -> bytes:
        self._check(image)
        return super().render_searchable_page(image)

    def read_words(self, image: Image.Image) -> List[Word]:
        self._check(image)
        return super().read_words(image)


class GarbageEngine(FakeEngine):
    """Returns bytes that are not a PDF."""

    def render_searchable_page(self, image: Image.Image) -> bytes:
        return b"definitely not a pdf"


class CopyConverter(BaseDocumentConverter):
    """Ghostscript stand-in, copies the merged document as is."""

    def __init__(self):
        self.calls = []

    def convert(self, src: Path, dst: Path) -> None:
        self.calls.append((Path(src), Path(dst)))
        shutil.copyfile(src, dst)


class BrokenConverter(BaseDocumentConverter):
    def convert(self, src: Path, dst: Path) -> None:
        from ocrserver.exceptions import AssemblyFailure
        # leave a partial file behind, it must never be promoted
        Path(dst).write_bytes(b"%PDF-1.7 partial")
        raise AssemblyFailure("gs exited with 1")


# --- page worker functions for scheduler tests ---
def timed_task(task: dict) -> dict:
    task["start"] = time.time()
    time.sleep(float(task.get("sleep", 0.3)))
    task["end"] = time.time()
    task["pid"] = os.getpid()
    return task


def failing_task(task: dict) -> dict:
    task = timed_task(task)
    if task.get("fail"):
        task["error"] = "boom"
        task["stage"] = "ocr"
    return task
