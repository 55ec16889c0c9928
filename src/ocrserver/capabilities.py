# src/ocrserver/capabilities.py
from __future__ import annotations

import logging
import re
import subprocess
from typing import Dict, Iterable, Optional, Tuple

import fitz

from .config import ServerConfig
from .converter import resolve_ghostscript_cmd, run_capture
from .exceptions import MissingExternalCapability
from .ocr_worker import _import_obj

logger = logging.getLogger("ocrserver")

MIN_TESSERACT = (4, 0)
MIN_GHOSTSCRIPT = (9, 50)
MIN_PYMUPDF = (1, 23)

TESSERACT_BACKEND = "ocrserver.ocr_backends.tesseract_backend.TesseractOCREngine"


def parse_version(text: str) -> Optional[Tuple[int, ...]]:
    m = re.search(r"(\d+)\.(\d+)(?:\.(\d+))?", text or "")
    if not m:
        return None
    return tuple(int(g) for g in m.groups() if g is not None)


def _fmt(v: Tuple[int, ...]) -> str:
    return ".".join(str(x) for x in v)


def _run(cmd) -> str:
    try:
        rc, out = run_capture(cmd, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise MissingExternalCapability(f"{cmd[0]} could not be run, {e}") from e
    if rc != 0:
        raise MissingExternalCapability(f"{' '.join(cmd)} exited with {rc}: {out.strip()}")
    return out


def check_tesseract(languages: Iterable[str], tesseract_cmd: Optional[str] = None) -> str:
    from .ocr_backends.tesseract_backend import norm_langs_to_tesseract, resolve_tesseract_cmd

    cmd = tesseract_cmd or resolve_tesseract_cmd()
    if not cmd:
        raise MissingExternalCapability("tesseract not found, install it or set TESSERACT_CMD")
    lines = _run([cmd, "--version"]).strip().splitlines()
    version = parse_version(lines[0] if lines else "")
    if version is None or version < MIN_TESSERACT:
        raise MissingExternalCapability(
            f"tesseract {_fmt(MIN_TESSERACT)} or newer is required, found {version and _fmt(version)}")

    # first line is a header, e.g. 'List of available languages in "/usr/share/tessdata/" (3):'
    installed = {line.strip() for line in _run([cmd, "--list-langs"]).splitlines()[1:] if line.strip()}
    wanted = norm_langs_to_tesseract(list(languages)).split("+")
    missing = [lang for lang in wanted if lang not in installed]
    if missing:
        raise MissingExternalCapability(f"tesseract language data not installed, {missing}")
    return _fmt(version)


def check_ghostscript(gs_cmd: Optional[str] = None) -> str:
    cmd = gs_cmd or resolve_ghostscript_cmd()
    if not cmd:
        raise MissingExternalCapability("Ghostscript (gs) not found on PATH")
    version = parse_version(_run([cmd, "--version"]))
    if version is None or version < MIN_GHOSTSCRIPT:
        raise MissingExternalCapability(
            f"Ghostscript {_fmt(MIN_GHOSTSCRIPT)} or newer is required, found {version and _fmt(version)}")
    return _fmt(version)


def check_pymupdf() -> str:
    version = parse_version(getattr(fitz, "VersionBind", None) or fitz.version[0])
    if version is None or version < MIN_PYMUPDF:
        raise MissingExternalCapability(
            f"PyMuPDF {_fmt(MIN_PYMUPDF)} or newer is required, found {version and _fmt(version)}")
    return _fmt(version)


def check_capabilities(config: ServerConfig) -> Dict[str, str]:
    """
    Verify every external program before the first scan. Raises
    MissingExternalCapability, the server must not start without them.
    """
    found = {"pymupdf": check_pymupdf()}
    if config.ocr_backend == TESSERACT_BACKEND:
        found["tesseract"] = check_tesseract(
            config.languages, config.ocr_backend_kwargs.get("tesseract_cmd"))
    else:
        try:
            _import_obj(config.ocr_backend)
        except Exception as e:
            raise MissingExternalCapability(f"OCR backend {config.ocr_backend} cannot be imported, {e}") from e
        found["ocr_backend"] = config.ocr_backend
    found["ghostscript"] = check_ghostscript()
    for name, version in found.items():
        logger.info("Found %s %s", name, version)
    return found
