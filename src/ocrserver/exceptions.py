# src/ocrserver/exceptions.py
class OCRServerError(Exception):
    """Base exception for the ocrserver library."""
    pass

class ClaimConflict(OCRServerError):
    """Another instance already claimed the source. Not an error, the job is skipped."""
    pass

class UnstableInput(OCRServerError):
    """The source is still being written, the claim is deferred to a later scan."""
    pass

class ExtractionFailure(OCRServerError):
    """No extraction strategy, including the default rasterization, produced a page image."""
    pass

class OCRFailure(OCRServerError):
    """Recognition failed or returned invalid output for a page."""
    pass

class AssemblyFailure(OCRServerError):
    """Merging or archival conversion failed."""
    pass

class RoutingError(OCRServerError):
    """A terminal move could not be performed."""
    pass

class MissingExternalCapability(OCRServerError):
    """A required external program is absent or too old. Fatal at startup."""
    pass

class InvalidTransition(OCRServerError):
    """A job was asked to move between processing states in an illegal order."""
    pass


class StageError(OCRServerError):
    """Carries the failing stage alongside the original error for diagnostics."""

    def __init__(self, stage: str, error: BaseException):
        super().__init__(f"{stage}: {error}")
        self.stage = stage
        self.error = error
