# src/ocrserver/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Dict, Any

from .config import WatchRoot
from .exceptions import InvalidTransition

Rect = Tuple[float, float, float, float]


class ProcessingState(str, Enum):
    DISCOVERED = "discovered"
    CLAIMED = "claimed"
    EXTRACTING = "extracting"
    OCRING = "ocring"
    ASSEMBLING = "assembling"
    DONE = "done"
    ERRORED = "errored"


_TRANSITIONS = {
    ProcessingState.DISCOVERED: {ProcessingState.CLAIMED},
    ProcessingState.CLAIMED: {ProcessingState.EXTRACTING, ProcessingState.ERRORED},
    ProcessingState.EXTRACTING: {ProcessingState.OCRING, ProcessingState.ERRORED},
    ProcessingState.OCRING: {ProcessingState.ASSEMBLING, ProcessingState.ERRORED},
    ProcessingState.ASSEMBLING: {ProcessingState.DONE, ProcessingState.ERRORED},
    ProcessingState.DONE: set(),
    ProcessingState.ERRORED: set(),
}


class EncodingClass(str, Enum):
    RASTER = "raster"
    STENCIL = "stencil"
    UNKNOWN = "unknown"


class AssemblyStrategy(str, Enum):
    """How the searchable layer gets into the output document."""
    REBUILD = "rebuild"   # per-page OCR PDFs merged, converted to PDF/A
    OVERLAY = "overlay"   # invisible words appended incrementally, signed content untouched


@dataclass(frozen=True)
class PageGeometry:
    """Page boxes as PyMuPDF reports them (unrotated) plus the page /Rotate value."""
    mediabox: Rect
    cropbox: Rect
    rotation: int = 0

    @property
    def width(self) -> float:
        return self.mediabox[2] - self.mediabox[0]

    @property
    def height(self) -> float:
        return self.mediabox[3] - self.mediabox[1]

    @property
    def visual_size(self) -> Tuple[float, float]:
        w = self.cropbox[2] - self.cropbox[0]
        h = self.cropbox[3] - self.cropbox[1]
        if self.rotation % 180:
            return h, w
        return w, h


@dataclass(frozen=True)
class ClaimToken:
    """Proof that this instance owns a job, plus where the claimed file now lives."""
    token: str
    source_path: Path
    claimed_path: Path


@dataclass
class Page:
    """One page of a job."""
    index: int                       # 1-based
    geometry: PageGeometry
    encoding: EncodingClass = EncodingClass.UNKNOWN
    image_xref: int = 0
    crop: Optional[Rect] = None      # where the extracted image sits, in page coordinates
    has_text_layer: bool = False
    result: Optional["PageResult"] = None
    final: Optional["FinalPage"] = None


@dataclass
class Word:
    text: str
    bbox: Rect                       # pixels on OCR input, points after normalization
    confidence: float = -1.0


@dataclass
class PageResult:
    """What the OCR stage produced for one page. Opaque to the pipeline."""
    index: int
    skipped: bool = False            # page already carried a hidden text layer
    pdf_path: Optional[str] = None   # rebuild strategy, one-page PDF with invisible text
    words: List[Word] = field(default_factory=list)
    image_size: Tuple[int, int] = (0, 0)
    crop: Optional[Rect] = None
    duration_seconds: float = 0.0


@dataclass
class FinalPage:
    """A page ready for the assembler, geometry already matching the source."""
    index: int
    geometry: PageGeometry
    passthrough: bool = False
    pdf_path: Optional[str] = None
    words: List[Word] = field(default_factory=list)


@dataclass
class Job:
    """One discovered document, from scan to its terminal route."""
    root: WatchRoot
    relative_path: Path              # relative to Entrada, subpath preserved
    claim: Optional[ClaimToken] = None
    signed: bool = False
    pages: List[Page] = field(default_factory=list)
    state: ProcessingState = ProcessingState.DISCOVERED
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    temp_dir: Optional[Path] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_path(self) -> Path:
        return self.root.entrada / self.relative_path

    @property
    def working_path(self) -> Path:
        """The claimed file once owned, the visible source before that."""
        return self.claim.claimed_path if self.claim else self.source_path

    @property
    def strategy(self) -> AssemblyStrategy:
        return AssemblyStrategy.OVERLAY if self.signed else AssemblyStrategy.REBUILD

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProcessingState.DONE, ProcessingState.ERRORED)

    def advance(self, state: ProcessingState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.relative_path}: {self.state.value} -> {state.value}")
        self.state = state
