from enum import Enum
from typing import Any, Dict, Optional


class MediaError(Exception):
    """
    Base error for a media request.
    Carries the HTTP status and an i18n key; rendered as {"error": ...}.
    """
    status_code: int = 500
    message_key: str = "error.internal"

    def __init__(self, message_key: Optional[str] = None, **params: Any):
        self.message_key = message_key or self.message_key
        self.params: Dict[str, Any] = params
        super().__init__(self.message_key)

    def __str__(self) -> str:
        if not self.params:
            return self.message_key
        details = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.message_key} ({details})"


class InvalidRequest(MediaError):
    """Malformed or non-matching source URL"""
    status_code = 400
    message_key = "error.invalid_url"


class ExtractionReason(str, Enum):
    PRIVATE = "private"
    AGE_RESTRICTED = "age_restricted"
    REMOVED = "removed"
    LIVE = "live"
    FORBIDDEN = "forbidden"
    UNKNOWN = "unknown"


EXTRACTION_STATUS = {
    ExtractionReason.PRIVATE: 403,
    ExtractionReason.AGE_RESTRICTED: 403,
    ExtractionReason.REMOVED: 410,
    ExtractionReason.LIVE: 400,
    ExtractionReason.FORBIDDEN: 403,
    ExtractionReason.UNKNOWN: 500,
}


class ExtractionError(MediaError):
    """Source unavailable for a content reason"""

    def __init__(self, reason: ExtractionReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        self.status_code = EXTRACTION_STATUS[reason]
        super().__init__(f"error.extraction.{reason.value}")

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.detail[:200]}" if self.detail else self.reason.value


class NoViableFormat(MediaError):
    """Selection yielded nothing; caller should enable external muxing"""
    status_code = 409
    message_key = "error.no_viable_format"


class DeliveryFailure(MediaError):
    """I/O or process failure while moving bytes"""
    status_code = 500
    message_key = "error.delivery_failed"
