# ocrserver/ocr_backends/tesseract_backend.py
from __future__ import annotations

from typing import List, Dict, Any
import os
import platform
import re
import shutil
from pathlib import Path

from PIL import Image
import pytesseract as pt

from .base import BaseOCREngine
from ..models import Word


def _as_int(x, default: int) -> int:
    try:
        if isinstance(x, str):
            x = x.strip().rstrip(",}] ")
        return int(x)
    except Exception:
        m = re.search(r"-?\d+", str(x))
        return int(m.group()) if m else default


def resolve_tesseract_cmd() -> str | None:
    # 1) explicit env override
    cmd = os.getenv("TESSERACT_CMD")
    if cmd and Path(cmd).exists():
        return cmd

    # 2) look on PATH
    cmd = shutil.which("tesseract")
    if cmd:
        return cmd

    # 3) common fallbacks by OS
    system = platform.system()
    if system == "Windows":
        candidates = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
        ]
    elif system == "Darwin":  # macOS
        candidates = [
            "/opt/homebrew/bin/tesseract",   # Apple Silicon Homebrew
            "/usr/local/bin/tesseract",      # Intel Homebrew/MacPorts
        ]
    else:  # Linux and others
        candidates = [
            "/usr/bin/tesseract",            # apt/yum default
            "/usr/local/bin/tesseract",      # source install
            "/snap/bin/tesseract",           # snap
        ]

    for p in candidates:
        if Path(p).exists():
            return p
    return None

cmd = resolve_tesseract_cmd()
if cmd:
    pt.pytesseract.tesseract_cmd = cmd


# Map common ISO codes to Tesseract's traineddata names
_TESS_LANG_MAP = {
    "pt": "por",
    "en": "eng",
    "es": "spa",
    "vi": "vie",
}


def norm_langs_to_tesseract(langs) -> str:
    # Accept str or list, keep the caller's order (the first model is the primary one)
    if isinstance(langs, str):
        langs = re.split(r"[+,]", langs)
    if not langs:
        langs = ["por", "eng"]
    codes: List[str] = []
    for l in langs:
        code = _TESS_LANG_MAP.get(str(l).strip().lower(), str(l).strip().lower())
        if code and code not in codes:
            codes.append(code)
    return "+".join(codes)


class TesseractOCREngine(BaseOCREngine):
    """
    Pytesseract-based backend.

    Kwargs supported (all optional):
      - languages / lang: list[str] or str, mapped to "por", "eng", ...
      - tesseract_cmd: full path to tesseract binary
      - tessdata_prefix: path to tessdata directory
      - oem: 0..3 (default 0 = legacy engine, pinned for reproducible output)
      - psm: page segmentation mode (default 3 = fully automatic)
      - timeout: seconds before a single page is abandoned (default none)
      - extra_config: str of extra flags (appended to config string)
    """

    def __init__(self, **kwargs: Dict[str, Any]):
        k = dict(kwargs)  # don't mutate caller's dict

        tesseract_cmd = k.pop("tesseract_cmd", None) or k.pop("tesseract_path", None)
        if tesseract_cmd:
            pt.pytesseract.tesseract_cmd = str(tesseract_cmd)
            if not os.path.exists(pt.pytesseract.tesseract_cmd):
                raise RuntimeError(f"Tesseract binary not found: {pt.pytesseract.tesseract_cmd}")

        tessdata_prefix = k.pop("tessdata_prefix", None)
        if tessdata_prefix:
            os.environ["TESSDATA_PREFIX"] = str(tessdata_prefix)

        self.lang = norm_langs_to_tesseract(k.pop("languages", None) or k.pop("lang", None))

        oem = _as_int(k.pop("oem", 0), 0)
        psm = _as_int(k.pop("psm", 3), 3)
        self.timeout = _as_int(k.pop("timeout", 0), 0)
        extra_cfg = str(k.pop("extra_config", "")).strip()

        cfg_parts = [f"--oem {oem}", f"--psm {psm}"]
        if extra_cfg:
            cfg_parts.append(extra_cfg)
        self._config = " ".join(cfg_parts)

    def render_searchable_page(self, image: Image.Image) -> bytes:
        return pt.image_to_pdf_or_hocr(image, lang=self.lang, config=self._config,
                                       extension="pdf", timeout=self.timeout)

    def read_words(self, image: Image.Image) -> List[Word]:
        data = pt.image_to_data(image, lang=self.lang, config=self._config,
                                output_type=pt.Output.DICT, timeout=self.timeout)
        words: List[Word] = []
        for i, text in enumerate(data.get("text", [])):
            text = str(text or "").strip()
            conf = float(data["conf"][i])
            if not text or conf < 0:
                continue
            x, y = int(data["left"][i]), int(data["top"][i])
            w, h = int(data["width"][i]), int(data["height"][i])
            words.append(Word(text=text, bbox=(x, y, x + w, y + h), confidence=conf))
        return words
