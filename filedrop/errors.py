from typing import Any, Dict, Optional


class PickupError(Exception):
    """Base class for failures raised by the pickup store."""

    code = "PICKUP_ERROR"
    message = "Request failed"

    def __init__(self, message: Optional[str] = None, *, pickup_code: Optional[str] = None):
        super().__init__(message or self.message)
        self.pickup_code = pickup_code

    def to_payload(self) -> Dict[str, Any]:
        return {"success": False, "error": str(self), "code": self.code}


class InvalidFormatError(PickupError, ValueError):
    """Raised when a pickup code does not match the expected format."""

    code = "INVALID_CODE_FORMAT"
    message = "Invalid pickup code format"


class InvalidMetadataError(PickupError, ValueError):
    """Raised when upload metadata falls outside the accepted bounds."""

    code = "VALIDATION_ERROR"
    message = "Invalid upload metadata"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.field is not None:
            payload["field"] = self.field
        return payload


class NotFoundError(PickupError, LookupError):
    code = "NOT_FOUND"
    message = "Pickup code does not exist"


class FileMissingError(NotFoundError):
    """The record existed but its file was gone; the record has been purged.

    Callers see it as a plain :class:`NotFoundError`.
    """


class ExpiredError(PickupError):
    code = "EXPIRED"
    message = "Pickup code has expired"

    def __init__(self, expired_at: int, *, pickup_code: Optional[str] = None):
        super().__init__(pickup_code=pickup_code)
        self.expired_at = expired_at

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["expired_at"] = self.expired_at
        return payload


class CodeSpaceExhaustedError(PickupError, RuntimeError):
    """No free pickup code was found within the attempt budget."""

    code = "CODE_GENERATION_FAILED"
    message = "Could not allocate a unique pickup code, please retry later"

    def __init__(self, attempts: int):
        super().__init__()
        self.attempts = attempts


class StorageWriteError(PickupError, OSError):
    code = "STORAGE_WRITE_FAILED"
    message = "Failed to store file"


class StorageReadError(PickupError, OSError):
    code = "STORAGE_READ_FAILED"
    message = "Failed to read stored file"


class CorruptIndexError(PickupError, RuntimeError):
    """The persisted index exists but cannot be parsed.

    The store refuses to continue until the index is repaired or restored
    from a backup; treating it as empty would orphan every stored file.
    """

    code = "INDEX_CORRUPT"
    message = "File index is unreadable"

    def __init__(self, message: Optional[str] = None, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
