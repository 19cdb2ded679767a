# core/errors.py
from __future__ import annotations


class SlideCaptureError(Exception):
    """Base error. `code` is a stable machine token, `detail` is shown to users."""

    code = "SLIDE_CAPTURE_ERROR"

    def __init__(self, detail: str, code: str | None = None):
        super().__init__(detail)
        self.detail = detail
        if code:
            self.code = code


# admission
class AdmissionRejected(SlideCaptureError):
    code = "ADMISSION_REJECTED"


# extraction
class InvalidArchive(SlideCaptureError):
    code = "INVALID_ARCHIVE"


class PathTraversal(SlideCaptureError):
    code = "PATH_TRAVERSAL"


class NoContent(SlideCaptureError):
    code = "NO_CONTENT"


# detection / structure
class NoDocuments(SlideCaptureError):
    code = "NO_DOCUMENTS"


class LayoutMismatch(SlideCaptureError):
    code = "LAYOUT_MISMATCH"


# capture runtime
class RenderTimeout(SlideCaptureError):
    code = "RENDER_TIMEOUT"


class Cancelled(SlideCaptureError):
    code = "CANCELLED"


class EngineDisconnected(SlideCaptureError):
    code = "ENGINE_DISCONNECTED"


class PostProcessError(SlideCaptureError):
    code = "POSTPROCESS_FAILED"


# output
class PackagingError(SlideCaptureError):
    code = "PACKAGING_ERROR"


# queries
class NotFound(SlideCaptureError):
    code = "NOT_FOUND"


class NotReady(SlideCaptureError):
    code = "NOT_READY"


class Expired(SlideCaptureError):
    code = "EXPIRED"
