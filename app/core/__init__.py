from .errors import (
    DeliveryFailure,
    ExtractionError,
    ExtractionReason,
    InvalidRequest,
    MediaError,
    NoViableFormat,
)

__all__ = [
    "DeliveryFailure",
    "ExtractionError",
    "ExtractionReason",
    "InvalidRequest",
    "MediaError",
    "NoViableFormat",
]
