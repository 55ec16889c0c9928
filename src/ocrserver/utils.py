# src/ocrserver/utils.py
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Tuple

from slugify import slugify

logger = logging.getLogger("ocrserver")

_JSONL_LOCK = threading.Lock()


def file_signature(p: Path) -> Tuple[int, int]:
    """Size and integer mtime, or (-1, -1) when the file vanished."""
    try:
        st = p.stat()
        return st.st_size, int(st.st_mtime)
    except OSError:
        return -1, -1


def append_jsonl(path: Path, record: Dict) -> None:
    """
    Append one timestamped JSON line. Threads of this process share the file,
    so writes are serialized.
    """
    entry = {"timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"), **record}
    line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
    with _JSONL_LOCK:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)


def safe_fname(name: str, fallback: str = "file") -> str:
    """
    Create a filesystem safe name, preserve extension when present.
    """
    name = (name or "").strip() or fallback
    if "." in name:
        base, ext = name.rsplit(".", 1)
        return f"{slugify(base)[:100] or fallback}.{ext}"
    return slugify(name)[:100] or fallback


def with_suffix_tag(path: Path, tag: str) -> Path:
    """doc.pdf + tag -> doc_<tag>.pdf, used when a destination name is taken."""
    return path.with_name(f"{path.stem}_{tag}{path.suffix}")
