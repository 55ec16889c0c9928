# src/ocrserver/config.py
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Tuple, Dict, Any, Optional
from multiprocessing import cpu_count

ENTRADA = "Entrada"
SAIDA = "Saida"
ERRO = "Erro"
ORIGINAIS = "Originais_Processados"
TEMP = ".ocr-tmp"


@dataclass(frozen=True)
class WatchRoot:
    """One watched base directory and its fixed subdirectories."""
    base: Path

    def __post_init__(self):
        object.__setattr__(self, "base", Path(self.base))

    @property
    def name(self) -> str:
        return self.base.name or str(self.base)

    @property
    def entrada(self) -> Path:
        return self.base / ENTRADA

    @property
    def saida(self) -> Path:
        return self.base / SAIDA

    @property
    def erro(self) -> Path:
        return self.base / ERRO

    @property
    def archive(self) -> Path:
        return self.base / ORIGINAIS

    @property
    def temp(self) -> Path:
        # lives under the root so every terminal move stays on one filesystem
        return self.base / TEMP

    def ensure_layout(self) -> None:
        for p in (self.entrada, self.saida, self.erro, self.archive, self.temp):
            p.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for an ocrserver instance. Built once at startup, never mutated."""
    watch_roots: Tuple[WatchRoot, ...]

    max_files: int = 2
    max_pgs: int = field(default_factory=cpu_count)

    languages: Tuple[str, ...] = ("por", "eng")
    oem: int = 0            # legacy engine, pinned for reproducible output
    psm: int = 3
    dpi: int = 300

    ocr_backend: str = "ocrserver.ocr_backends.tesseract_backend.TesseractOCREngine"
    ocr_backend_kwargs: Dict[str, Any] = field(default_factory=dict)

    poll_interval: float = 10.0
    stability_interval: float = 5.0
    stale_claim_seconds: Optional[float] = None
    claim_store: str = "local"      # "network" on NFS/SMB mounts

    pdfa_level: int = 2
    pdf_settings: str = "/ebook"

    ignore_keywords: Tuple[str, ...] = ()

    log_path: Optional[Path] = None
    error_log_path: Path = Path("ocr_server_errors.jsonl")
    log_performance: bool = False
    performance_log_path: Path = Path("ocr_server_performance.jsonl")
    show_progress: bool = False

    def __post_init__(self):
        roots = tuple(r if isinstance(r, WatchRoot) else WatchRoot(Path(r)) for r in self.watch_roots)
        object.__setattr__(self, "watch_roots", roots)
        object.__setattr__(self, "languages", tuple(self.languages))
        object.__setattr__(self, "ignore_keywords", tuple(self.ignore_keywords))
        if not roots:
            raise ValueError("At least one watch root is required")
        if len({r.base.resolve() for r in roots}) != len(roots):
            raise ValueError("Watch roots must be distinct")
        if self.max_files < 1:
            raise ValueError("max_files must be >= 1")
        if self.max_pgs < 1:
            raise ValueError("max_pgs must be >= 1")
        if self.dpi <= 0:
            raise ValueError("dpi must be > 0")
        if not self.languages:
            raise ValueError("At least one OCR language is required")

    def ocr_settings(self) -> Dict[str, Any]:
        """The picklable subset the page workers need."""
        return {
            "languages": list(self.languages),
            "oem": self.oem,
            "psm": self.psm,
            "dpi": self.dpi,
            "ocr_backend": self.ocr_backend,
            "ocr_backend_kwargs": dict(self.ocr_backend_kwargs),
        }

    def to_dict(self):
        """Converts config to a dictionary suitable for multiprocessing (pickling)."""
        d = asdict(self)
        d["watch_roots"] = [str(r.base) for r in self.watch_roots]
        for key, value in d.items():
            if isinstance(value, Path):
                d[key] = str(value)
            elif isinstance(value, tuple):
                d[key] = list(value)
        return d

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)

        d["watch_roots"] = tuple(
            r if isinstance(r, WatchRoot) else WatchRoot(Path(r)) for r in d.get("watch_roots", ())
        )

        for key in ["log_path", "error_log_path", "performance_log_path"]:
            if key in d and isinstance(d[key], str):
                d[key] = Path(d[key])

        # allow explicit None to mean use default
        for key in ["max_files", "max_pgs", "dpi", "oem", "psm", "languages", "poll_interval",
                    "stability_interval", "error_log_path", "performance_log_path", "ignore_keywords"]:
            if d.get(key) is None:
                d.pop(key, None)

        return cls(**d)
