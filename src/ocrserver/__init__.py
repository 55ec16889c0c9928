# src/ocrserver/__init__.py
"""Multi-instance, filesystem-driven OCR server for scanned PDFs."""

__version__ = "1.0.0"
