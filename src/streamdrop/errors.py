"""Error definitions for StreamDrop.

Every error the service reports to a caller is a ``StreamDropError``
subclass. The ``code`` string tags the error kind and ``http_status`` is
the status the HTTP layer responds with.
"""


class StreamDropError(Exception):
    """A service error with code, message, and HTTP status.

    Attributes:
        code: The error code string (e.g. "NotFound", "MissingChunk").
        message: Human-readable error description.
        http_status: The HTTP status code to return.
        extra_fields: Additional key-value pairs included in the JSON error body.
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        extra_fields: dict | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            code: Error code.
            message: Error description.
            http_status: HTTP status code (default 400).
            extra_fields: Optional extra payload fields.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra_fields = extra_fields or {}

    def to_dict(self) -> dict:
        """Return the structured error payload for this error."""
        payload = {
            "error": True,
            "code": self.code,
            "message": self.message,
            "status": self.http_status,
        }
        payload.update(self.extra_fields)
        return payload


# -- Client errors -------------------------------------------------------------


class ValidationError(StreamDropError):
    """A request parameter or content type is missing or invalid."""

    def __init__(self, message: str = "Invalid request") -> None:
        super().__init__(code="ValidationError", message=message, http_status=400)


class Unauthorized(StreamDropError):
    """The bearer token is missing or was rejected by the identity service."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(code="Unauthorized", message=message, http_status=401)


class NotFound(StreamDropError):
    """The requested object does not exist."""

    def __init__(self, key: str = "", message: str = "File not found") -> None:
        super().__init__(
            code="NotFound",
            message=message,
            http_status=404,
            extra_fields={"key": key} if key else {},
        )


class MethodNotAllowed(StreamDropError):
    """The HTTP method is not supported on this path."""

    def __init__(self, message: str = "Method not allowed") -> None:
        super().__init__(code="MethodNotAllowed", message=message, http_status=405)


class CombineInProgress(StreamDropError):
    """Another request is currently combining this upload."""

    def __init__(self, upload_id: str = "") -> None:
        super().__init__(
            code="CombineInProgress",
            message="A combine for this upload is already in progress.",
            http_status=409,
            extra_fields={"uploadId": upload_id} if upload_id else {},
        )


class UploadClosed(StreamDropError):
    """The upload session no longer accepts chunks or combines."""

    def __init__(self, upload_id: str = "", state: str = "") -> None:
        message = "The upload is no longer accepting changes."
        if state:
            message = f"The upload is {state} and no longer accepting changes."
        super().__init__(
            code="UploadClosed",
            message=message,
            http_status=409,
            extra_fields={"uploadId": upload_id} if upload_id else {},
        )


class UploadExpired(StreamDropError):
    """The upload session outlived its time-to-live."""

    def __init__(self, upload_id: str = "") -> None:
        super().__init__(
            code="UploadExpired",
            message="The upload session has expired.",
            http_status=410,
            extra_fields={"uploadId": upload_id} if upload_id else {},
        )


class PayloadTooLarge(StreamDropError):
    """The body or the declared upload exceeds a configured size limit."""

    def __init__(self, message: str = "File too large") -> None:
        super().__init__(code="PayloadTooLarge", message=message, http_status=413)


class UnsatisfiableRange(StreamDropError):
    """The requested byte range lies outside the object."""

    def __init__(self, size: int | None = None) -> None:
        super().__init__(
            code="UnsatisfiableRange",
            message="The requested range is not satisfiable.",
            http_status=416,
            extra_fields={"size": size} if size is not None else {},
        )
        self.size = size


# -- Server errors -------------------------------------------------------------


class MissingChunk(StreamDropError):
    """A declared part was not found while combining."""

    def __init__(self, part_index: int) -> None:
        super().__init__(
            code="MissingChunk",
            message=f"Missing chunk {part_index}",
            http_status=500,
            extra_fields={"partIndex": part_index},
        )
        self.part_index = part_index


class SizeMismatch(StreamDropError):
    """The combined size does not match the declared total size."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            code="SizeMismatch",
            message=f"Size mismatch: expected {expected} bytes, got {actual}",
            http_status=500,
            extra_fields={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class StorageError(StreamDropError):
    """The object store failed to complete an operation."""

    def __init__(self, message: str = "Storage operation failed") -> None:
        super().__init__(code="StorageError", message=message, http_status=500)


class InternalError(StreamDropError):
    """An internal server error occurred."""

    def __init__(self, message: str = "Internal Server Error") -> None:
        super().__init__(code="InternalError", message=message, http_status=500)
