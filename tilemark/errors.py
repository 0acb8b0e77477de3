"""Error taxonomy for the transform pipeline.

Every request-scoped failure is a ``TransformError``; the subclass names the
stage family that failed and the HTTP status surfaced to the caller. Only
``FontLoadError`` is process-fatal.
"""


class TransformError(Exception):
    kind = "TransformError"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(TransformError):
    kind = "BadRequest"
    status_code = 400


class FetchError(TransformError):
    kind = "FetchError"
    status_code = 502


class RenderError(TransformError):
    kind = "RenderError"
    status_code = 422


class EncodeError(TransformError):
    kind = "EncodeError"
    status_code = 500


class DeliveryError(TransformError):
    kind = "DeliveryError"
    status_code = 502


class FontLoadError(RuntimeError):
    """Raised at startup when the configured font cannot be used."""
