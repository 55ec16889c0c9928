# src/ocrserver/signature.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .pdf_processor import BasePDFProcessor, get_pdf_processor

logger = logging.getLogger("ocrserver")


class SignatureDetector:
    """
    Decides whether a document is digitally signed. A signed document must
    never be rewritten, so this runs before any content-modifying stage and
    selects the overlay assembly strategy.

    An unreadable document propagates its error instead of being treated as
    unsigned.
    """

    def __init__(self, pdf_processor: Optional[BasePDFProcessor] = None):
        self.pdf = pdf_processor or get_pdf_processor()

    def has_signature(self, file_path: Path) -> bool:
        signed = self.pdf.has_signature(file_path)
        if signed:
            logger.info("%s is digitally signed, its content will not be rewritten", file_path.name)
        return signed
