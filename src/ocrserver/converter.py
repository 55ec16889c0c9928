# src/ocrserver/converter.py
from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from .exceptions import AssemblyFailure, MissingExternalCapability

logger = logging.getLogger("ocrserver")

_GS_NAMES = ("gs", "gswin64c", "gswin32c")


def resolve_ghostscript_cmd() -> Optional[str]:
    for name in _GS_NAMES:
        cmd = shutil.which(name)
        if cmd:
            return cmd
    return None


def run_capture(cmd: List[str], timeout: Optional[float] = None) -> tuple[int, str]:
    p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, timeout=timeout)
    return p.returncode, (p.stdout or "")


class BaseDocumentConverter(ABC):
    @abstractmethod
    def convert(self, src: Path, dst: Path) -> None:
        """Write an archival, compressed copy of `src` to `dst`."""
        raise NotImplementedError


class GhostscriptConverter(BaseDocumentConverter):
    """PDF/A conversion and compression through Ghostscript's pdfwrite device."""

    def __init__(self, pdfa_level: int = 2, pdf_settings: str = "/ebook",
                 gs_cmd: Optional[str] = None, timeout: Optional[float] = None):
        self.pdfa_level = pdfa_level
        self.pdf_settings = pdf_settings
        self.timeout = timeout
        self.gs_cmd = gs_cmd or resolve_ghostscript_cmd()

    def _require_cmd(self) -> str:
        if not self.gs_cmd:
            raise MissingExternalCapability("Ghostscript (gs) not found on PATH")
        return self.gs_cmd

    def build_command(self, src: Path, dst: Path) -> List[str]:
        return [
            self._require_cmd(),
            f"-dPDFA={self.pdfa_level}",
            "-dBATCH", "-dNOPAUSE", "-dSAFER", "-dQUIET",
            "-sDEVICE=pdfwrite",
            "-dPDFACompatibilityPolicy=1",
            "-sColorConversionStrategy=RGB",
            f"-dPDFSETTINGS={self.pdf_settings}",
            # page orientation must survive exactly as normalized
            "-dAutoRotatePages=/None",
            f"-sOutputFile={dst}",
            str(src),
        ]

    def convert(self, src: Path, dst: Path) -> None:
        cmd = self.build_command(src, dst)
        logger.debug("Running %s", " ".join(cmd))
        try:
            rc, out = run_capture(cmd, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise AssemblyFailure(f"Ghostscript timed out after {self.timeout}s") from e
        if rc != 0 or not dst.exists() or dst.stat().st_size == 0:
            raise AssemblyFailure(f"Ghostscript failed with exit code {rc}: {out.strip()[-2000:]}")
