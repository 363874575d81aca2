from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_MIME_TYPE = "application/octet-stream"
MAX_DESCRIPTION_LENGTH = 500
MAX_TAGS_LENGTH = 200

_REQUIRED_KEYS = (
    "pickup_code",
    "original_name",
    "stored_name",
    "size",
    "uploaded_at",
    "expires_at",
)


@dataclass
class FileRecord:
    """Metadata for one uploaded file, keyed by its pickup code.

    Timestamps are epoch milliseconds.
    """

    pickup_code: str
    original_name: str
    stored_name: str
    size: int
    uploaded_at: int
    expires_at: int
    mime_type: str = DEFAULT_MIME_TYPE
    download_count: int = 0
    last_download_at: Optional[int] = None
    last_download_source: Optional[str] = None
    description: str = ""
    tags: str = ""
    uploader_source: Optional[str] = None

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at

    def remaining_ms(self, now_ms: int) -> int:
        return max(self.expires_at - now_ms, 0)

    def copy(self) -> "FileRecord":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        """Build a record from its persisted form.

        Unknown keys are ignored and optional keys fall back to their
        defaults. Raises ``ValueError`` when a required key is missing or
        a value has the wrong type.
        """

        if not isinstance(data, dict):
            raise ValueError("record must be an object")
        missing = [key for key in _REQUIRED_KEYS if key not in data]
        if missing:
            raise ValueError(f"record missing keys: {', '.join(missing)}")

        known = {field.name for field in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        try:
            values["size"] = int(values["size"])
            values["uploaded_at"] = int(values["uploaded_at"])
            values["expires_at"] = int(values["expires_at"])
            values["download_count"] = int(values.get("download_count") or 0)
            if values.get("last_download_at") is not None:
                values["last_download_at"] = int(values["last_download_at"])
        except (TypeError, ValueError) as error:
            raise ValueError(f"record has invalid numeric field: {error}") from error

        for key in ("pickup_code", "original_name", "stored_name"):
            if not isinstance(values[key], str) or not values[key]:
                raise ValueError(f"record field {key} must be a non-empty string")

        values["mime_type"] = values.get("mime_type") or DEFAULT_MIME_TYPE
        values["description"] = values.get("description") or ""
        values["tags"] = values.get("tags") or ""
        return cls(**values)


@dataclass(frozen=True)
class DownloadTicket:
    """Everything a caller needs to stream a successful download."""

    record: FileRecord
    path: Path

    @property
    def original_name(self) -> str:
        return self.record.original_name

    @property
    def mime_type(self) -> str:
        return self.record.mime_type

    @property
    def size(self) -> int:
        return self.record.size
