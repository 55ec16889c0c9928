# src/ocrserver/cli.py
from __future__ import annotations

import argparse
import logging
import multiprocessing as mp
import sys
from pathlib import Path
from typing import List, Optional

from .config import ServerConfig, WatchRoot
from .exceptions import MissingExternalCapability
from .logger import configure_worker_logging, setup_logging

__all__ = ["init_layout", "main"]

logger = logging.getLogger("ocrserver")

_BACKEND_ALIASES = {
    "tess": "ocrserver.ocr_backends.tesseract_backend.TesseractOCREngine",
    "tesseract": "ocrserver.ocr_backends.tesseract_backend.TesseractOCREngine",
    "pytesseract": "ocrserver.ocr_backends.tesseract_backend.TesseractOCREngine",
}


def _normalize_backend_alias(name: str) -> str:
    original = (name or "").strip().strip('"\'')
    return _BACKEND_ALIASES.get(original.lower(), original)


def init_layout(roots: List[Path]) -> List[WatchRoot]:
    """Create Entrada, Saida, Erro and Originais_Processados under every root."""
    created = []
    for base in roots:
        root = WatchRoot(base)
        root.ensure_layout()
        created.append(root)
        logger.info("Layout ready under %s", root.base)
    return created


# -------------------------------
# CLI parsing
# -------------------------------

def _build_init_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    p = subparsers.add_parser("init", help="Create the directory layout under one or more roots")
    p.add_argument("--root", dest="roots", type=Path, action="append", required=True,
                   help="Base directory to prepare; can be used multiple times")
    return p


def _build_run_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    p = subparsers.add_parser("run", help="Watch the roots and OCR every PDF that arrives")

    p.add_argument("--root", dest="roots", type=Path, action="append", required=True,
                   help="Base directory to watch; can be used multiple times")
    p.add_argument(
        "--ignore-keyword",
        action="append",
        dest="ignore_keywords",
        help="Keyword in filename to ignore; can be used multiple times",
    )

    # Concurrency
    p.add_argument("--max-files", type=int, help="Documents processed at once per root")
    p.add_argument("--max-pgs", type=int, help="Pages processed at once per document")

    # OCR behavior
    p.add_argument("-l", "--languages", nargs="+", help="Tesseract language codes, e.g. por eng")
    p.add_argument("-d", "--dpi", type=int, help="DPI used when a page has to be rasterized whole")
    p.add_argument("--oem", type=int, help="Tesseract engine mode (default 0, legacy)")
    p.add_argument("--psm", type=int, help="Tesseract page segmentation mode")
    p.add_argument("--ocr-backend", type=str, help="Dotted path to an OCR backend class")

    # Polling
    p.add_argument("--poll-interval", type=float, help="Seconds between scans of Entrada")
    p.add_argument("--stability-interval", type=float,
                   help="Seconds a file must stay unchanged before it is claimed")
    p.add_argument("--stale-claim-seconds", type=float,
                   help="Reclaim claims of any host older than this at startup")
    p.add_argument("--claim-store", choices=["local", "network"], help="Use 'network' on NFS/SMB mounts")
    p.add_argument("--once", action="store_true", help="Process what is ready now, then exit")
    p.add_argument("--skip-preflight", action="store_true", help="Do not check external programs at startup")

    # Output
    p.add_argument("--pdfa-level", type=int, choices=[1, 2, 3], help="PDF/A conformance level")
    p.add_argument("--pdf-settings", choices=["/screen", "/ebook", "/printer", "/prepress", "/default"],
                   help="Ghostscript compression preset")

    # Logging
    p.add_argument("--progress", action="store_true", help="Show per-job progress on the console")
    p.add_argument("--log-file", type=Path, help="Path of the rotating log file")
    p.add_argument("--error-log-path", type=Path, help="Path to save the error log JSONL file")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug output on the console")

    perf_group = p.add_argument_group("Performance logging")
    perf_group.add_argument("--log-performance", action="store_true", help="Enable performance logging to a file")
    perf_group.add_argument("--performance-log-path", type=Path, help="Path for the performance log JSONL file")
    return p


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ocr-server, turns scanned PDFs dropped in Entrada into searchable PDF/A")
    subparsers = parser.add_subparsers(dest="command")
    _build_init_parser(subparsers)
    _build_run_parser(subparsers)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    cfg_dict = {
        "watch_roots": args.roots,
        "max_files": args.max_files,
        "max_pgs": args.max_pgs,
        "languages": args.languages,
        "dpi": args.dpi,
        "oem": args.oem,
        "psm": args.psm,
        "ocr_backend": _normalize_backend_alias(args.ocr_backend) if args.ocr_backend else None,
        "poll_interval": args.poll_interval,
        "stability_interval": args.stability_interval,
        "stale_claim_seconds": args.stale_claim_seconds,
        "claim_store": args.claim_store,
        "pdfa_level": args.pdfa_level,
        "pdf_settings": args.pdf_settings,
        "ignore_keywords": args.ignore_keywords or [],
        "log_path": args.log_file,
        "error_log_path": args.error_log_path,
        "log_performance": args.log_performance,
        "performance_log_path": args.performance_log_path,
        "show_progress": args.progress,
    }
    cfg_dict = {k: v for k, v in cfg_dict.items() if v is not None}
    return ServerConfig.from_dict(cfg_dict)


# -------------------------------
# Entry points
# -------------------------------

def _run_from_cli(args: argparse.Namespace) -> int:
    ctx = mp.get_context("spawn")
    log_queue = ctx.Manager().Queue(-1)

    try:
        config = build_config(args)
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}")

    listener = setup_logging(
        log_queue=log_queue,
        level=logging.DEBUG if args.verbose else logging.INFO,
        file_path=config.log_path,
        file_level=logging.DEBUG,
        console_progress=config.show_progress,
    )
    listener.start()
    configure_worker_logging(log_queue)

    try:
        from .server import OCRServer  # local import keeps 'init' free of PDF dependencies

        server = OCRServer(config, log_queue=log_queue)
        try:
            server.run(once=args.once, preflight=not args.skip_preflight)
        except MissingExternalCapability as e:
            logger.critical("Cannot start, %s", e)
            return 3
        return 0
    finally:
        try:
            listener.stop()
        except Exception:
            pass


def main(argv: Optional[List[str]] = None):
    args = _parse_args(argv)

    if args.command == "init":
        logging.basicConfig(level=logging.INFO, format="%(levelname)-8s | %(message)s")
        init_layout(args.roots)
        return 0

    if args.command == "run":
        code = _run_from_cli(args)
        if code:
            sys.exit(code)
        return 0

    print("Usage:\n  ocr-server init --root <dir> [--root <dir> ...]\n"
          "  ocr-server run --root <dir> [--root <dir> ...] [options]")
    sys.exit(2)


if __name__ == "__main__":
    main()
