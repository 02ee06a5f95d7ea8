"""Error taxonomy. Every user-visible failure carries a stable `kind` and a human message."""


class QRTrackError(Exception):
    """Base class for reportable failures."""

    kind = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message, "error_code": self.kind}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(QRTrackError):
    """Bad input shape, size or settings. Never retried automatically."""

    kind = "VALIDATION_ERROR"
    status_code = 400


class TemplateNotFoundError(QRTrackError):
    kind = "TEMPLATE_NOT_FOUND"
    status_code = 404


class CodeNotFoundError(QRTrackError):
    kind = "CODE_NOT_FOUND"
    status_code = 404


class NoCodeFoundError(QRTrackError):
    """The image was well-formed but no barcode region was detected."""

    kind = "QR_NOT_FOUND"
    status_code = 422


class StoreUnavailableError(QRTrackError):
    """Record store or cache infrastructure failure. Safe to retry with backoff."""

    kind = "STORE_UNAVAILABLE"
    status_code = 503


class DegradedQualityWarning(UserWarning):
    """Labels degrade-to-default log records. Never raised."""
