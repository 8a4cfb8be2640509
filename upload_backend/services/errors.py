"""Error taxonomy for the chunked upload service.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer should answer with. Services raise these; the error handlers in
``upload_backend.middleware.error_handler`` turn them into the response envelope.
"""


class UploadError(Exception):
    code = "UPLOAD_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidArgument(UploadError):
    code = "INVALID_ARGUMENT"
    status_code = 400


class NotFound(UploadError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidState(UploadError):
    code = "INVALID_STATE"
    status_code = 409


class IncompleteUpload(InvalidState):
    """Completion requested before every chunk arrived."""

    code = "INCOMPLETE_UPLOAD"

    def __init__(self, uploaded: int, total: int, missing: list[int]):
        super().__init__(
            f"Not all chunks uploaded. {uploaded}/{total} ({total - uploaded} missing)",
            details={"uploadedChunks": uploaded, "totalChunks": total, "missingChunks": missing},
        )
        self.uploaded = uploaded
        self.total = total
        self.missing = missing

    @property
    def shortfall(self) -> int:
        return self.total - self.uploaded


class ChecksumMismatch(UploadError):
    code = "CHECKSUM_MISMATCH"
    status_code = 422


class IOFailure(UploadError):
    code = "IO_FAILURE"
    status_code = 500
