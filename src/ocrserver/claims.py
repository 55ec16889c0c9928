# src/ocrserver/claims.py
"""
Rename-based claims. The filesystem is the only state shared between
instances, possibly on different hosts over a network mount.

A claim is a single rename of the visible input to a hidden name carrying the
claimer's token, in the same directory. Whoever renames first wins. The loser
sees the source gone. Destination names are unique per token, so a rename
never clobbers someone else's claim.
"""
from __future__ import annotations

import errno
import logging
import os
import re
import shutil
import socket
import time
import uuid
from abc import ABC
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from .config import WatchRoot
from .exceptions import ClaimConflict
from .models import ClaimToken
from .utils import with_suffix_tag

logger = logging.getLogger("ocrserver")

CLAIM_SUFFIX = ".ocrclaim"

# errors meaning "this filesystem cannot hard link", not "the link failed"
_NO_LINK_ERRNOS = {errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EMLINK, errno.ENOSYS}


# --- Tokens and names ---
def _host_tag() -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", socket.gethostname()) or "host"


def new_token() -> str:
    return f"{_host_tag()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def parse_token(token: str) -> Optional[Tuple[str, int, str]]:
    """host, pid, nonce, or None when the string is not one of ours."""
    parts = token.rsplit("-", 2)
    if len(parts) != 3 or not parts[1].isdigit():
        return None
    return parts[0], int(parts[1]), parts[2]


def claimed_name(name: str, token: str) -> str:
    return f".{name}.{token}{CLAIM_SUFFIX}"


def is_claim_name(name: str) -> bool:
    return name.startswith(".") and name.endswith(CLAIM_SUFFIX)


def split_claim_name(name: str) -> Optional[Tuple[str, str]]:
    """'.doc.pdf.<token>.ocrclaim' -> ('doc.pdf', '<token>')."""
    if not is_claim_name(name):
        return None
    inner = name[1:-len(CLAIM_SUFFIX)]
    original, _, token = inner.rpartition(".")
    if not original or parse_token(token) is None:
        return None
    return original, token


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# --- Atomic placement ---
def _link_into_place(src: Path, dst: Path, tag: str) -> Path:
    try:
        os.link(src, dst)
    except FileExistsError:
        target = with_suffix_tag(dst, tag)
        logger.warning("%s already exists, placing as %s", dst, target.name)
        os.rename(src, target)
        return target
    os.unlink(src)
    return dst


def place_atomically(src: Path, dst: Path, tag: str) -> Path:
    """
    Make `src` appear at `dst` in one step, never overwriting an existing file.

    A hard link is an atomic create-if-absent, so the destination is either
    absent or complete. When the name is taken, the file lands beside it
    under a name unique to `tag`. Returns the path actually used.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        return _link_into_place(src, dst, tag)
    except OSError as e:
        if e.errno == errno.EXDEV:
            # other device: stage a hidden copy next to the destination first
            staged = dst.parent / f".{dst.name}.{tag}.part"
            shutil.copy2(src, staged)
            placed = place_atomically(staged, dst, tag)
            os.unlink(src)
            return placed
        if e.errno in _NO_LINK_ERRNOS:
            target = with_suffix_tag(dst, tag)
            os.rename(src, target)
            return target
        raise


# --- Claim stores ---
class ClaimStore(ABC):
    """
    Interface shared by every claim store variant. Subclasses differ only in
    how they interpret a failed claim rename.
    """

    def __init__(self, token_factory: Callable[[], str] = new_token):
        self._new_token = token_factory

    def claim(self, source: Path) -> ClaimToken:
        """Take exclusive ownership of `source` or raise ClaimConflict."""
        token = self._new_token()
        claimed = source.with_name(claimed_name(source.name, token))
        try:
            os.rename(source, claimed)
        except FileNotFoundError:
            return self._rename_failed(source, claimed, token)
        logger.debug("Claimed %s as %s", source, token)
        return ClaimToken(token=token, source_path=source, claimed_path=claimed)

    def _rename_failed(self, source: Path, claimed: Path, token: str) -> ClaimToken:
        raise ClaimConflict(f"{source} was claimed by another instance")

    def release(self, claim: ClaimToken, destination: Path) -> Path:
        """Terminal move of the claimed file to `destination`. Returns where it landed."""
        return place_atomically(claim.claimed_path, destination, claim.token)

    def restore(self, claimed_path: Path) -> Optional[Path]:
        """Give a claimed file back to the scanners under its visible name."""
        parsed = split_claim_name(claimed_path.name)
        if parsed is None:
            return None
        original, token = parsed
        return place_atomically(claimed_path, claimed_path.with_name(original), token)

    @staticmethod
    def iter_claims(directory: Path) -> Iterator[Path]:
        if not directory.exists():
            return
        for p in directory.rglob(f"*{CLAIM_SUFFIX}"):
            if p.is_file() and split_claim_name(p.name):
                yield p

    def is_stale(self, token: str, age_seconds: float, stale_seconds: Optional[float]) -> bool:
        parsed = parse_token(token)
        if parsed is None:
            return False
        host, pid, _ = parsed
        if host == _host_tag() and pid != os.getpid() and not pid_alive(pid):
            return True
        return stale_seconds is not None and age_seconds > stale_seconds

    def recover_stale(self, root: WatchRoot, stale_seconds: Optional[float] = None,
                      now: Optional[float] = None) -> List[Path]:
        """
        Hand back claims abandoned by crashed instances and drop their temp areas.
        A claim is abandoned when its process on this host is gone, or, on any
        host, when it is older than `stale_seconds`.
        """
        now = time.time() if now is None else now
        restored: List[Path] = []
        for claimed in list(self.iter_claims(root.entrada)):
            _, token = split_claim_name(claimed.name)
            try:
                age = now - claimed.stat().st_ctime
            except FileNotFoundError:
                continue
            if not self.is_stale(token, age, stale_seconds):
                continue
            try:
                back = self.restore(claimed)
            except FileNotFoundError:
                # another instance recovered it first
                continue
            logger.warning("Recovered abandoned claim %s -> %s", claimed.name, back)
            restored.append(back)

        if root.temp.exists():
            for area in root.temp.iterdir():
                parts = area.name.rsplit("-", 3)
                if not area.is_dir() or len(parts) != 4:
                    continue
                token = "-".join(parts[1:])
                try:
                    age = now - area.stat().st_mtime
                except FileNotFoundError:
                    continue
                if self.is_stale(token, age, stale_seconds):
                    logger.info("Removing abandoned temp area %s", area)
                    shutil.rmtree(area, ignore_errors=True)
        return restored


class LocalFilesystemClaimStore(ClaimStore):
    """Claims on a local filesystem, where rename results are reported faithfully."""


class NetworkFilesystemClaimStore(ClaimStore):
    """
    Claims on NFS-style mounts. A retransmitted rename whose first reply was
    lost can report ENOENT although it succeeded, so before conceding the
    claim, check whether our own claimed name is there.
    """

    def _rename_failed(self, source: Path, claimed: Path, token: str) -> ClaimToken:
        if claimed.exists():
            logger.warning("Rename of %s reported missing source but the claim holds", source)
            return ClaimToken(token=token, source_path=source, claimed_path=claimed)
        raise ClaimConflict(f"{source} was claimed by another instance")


def get_claim_store(kind: str = "local") -> ClaimStore:
    name = (kind or "").lower()
    if name == "local":
        return LocalFilesystemClaimStore()
    if name in ("network", "nfs", "smb"):
        return NetworkFilesystemClaimStore()
    raise ValueError(f"Unknown claim store, '{kind}'. Supported, ['local', 'network']")
