# src/ocrserver/scanner.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, Sequence, Tuple

from .config import WatchRoot
from .exceptions import UnstableInput
from .models import Job
from .utils import file_signature

logger = logging.getLogger("ocrserver")

PDF_SUFFIXES = (".pdf",)


class JobScanner:
    """
    Polls one WatchRoot's Entrada and yields jobs for files that are ready.

    A file is ready once its size and mtime have not changed between two scans
    at least `stability_interval` seconds apart, so a document still being
    copied in from a share is never claimed truncated. Change notifications are
    not used, they are unreliable on network mounts.
    """

    def __init__(self, root: WatchRoot, stability_interval: float = 5.0,
                 ignore_keywords: Sequence[str] = (), clock: Callable[[], float] = time.monotonic):
        self.root = root
        self.stability_interval = float(stability_interval)
        self.ignore_keywords = [k.lower() for k in ignore_keywords]
        self._clock = clock
        # path -> (signature, first time this signature was seen)
        self._observed: Dict[Path, Tuple[Tuple[int, int], float]] = {}
        self._ignored: set = set()

    def _is_candidate(self, p: Path) -> bool:
        rel_parts = p.relative_to(self.root.entrada).parts
        # hidden names cover claims and staged copies
        if any(part.startswith(".") for part in rel_parts):
            return False
        name = p.name.lower()
        if any(k in name for k in self.ignore_keywords):
            return False
        if not name.endswith(PDF_SUFFIXES):
            if p not in self._ignored:
                self._ignored.add(p)
                logger.info("Ignoring non-PDF input %s", p)
            return False
        return True

    def check_stable(self, p: Path, now: float) -> None:
        """Raise UnstableInput unless `p` has been unchanged for the stability interval."""
        sig = file_signature(p)
        if sig[0] < 0:
            self._observed.pop(p, None)
            raise UnstableInput(f"{p} disappeared")
        if self.stability_interval <= 0:
            return
        seen = self._observed.get(p)
        if seen is None or seen[0] != sig:
            self._observed[p] = (sig, now)
            raise UnstableInput(f"{p} is new or still changing")
        if now - seen[1] < self.stability_interval:
            raise UnstableInput(f"{p} not stable for {self.stability_interval}s yet")

    def scan(self) -> Iterator[Job]:
        """Lazily yield one Job per stable, unclaimed PDF."""
        entrada = self.root.entrada
        if not entrada.exists():
            logger.error("Input directory does not exist, %s", entrada)
            return

        now = self._clock()
        present = set()
        for p in sorted(entrada.rglob("*")):
            if not p.is_file() or not self._is_candidate(p):
                continue
            present.add(p)
            try:
                self.check_stable(p, now)
            except UnstableInput as e:
                logger.debug("Deferring, %s", e)
                continue
            yield Job(root=self.root, relative_path=p.relative_to(entrada))

        # forget files that were claimed, routed or deleted since the last pass
        for gone in set(self._observed) - present:
            del self._observed[gone]
        self._ignored = {p for p in self._ignored if p.exists()}

    def forget(self, job: Job) -> None:
        self._observed.pop(job.source_path, None)
