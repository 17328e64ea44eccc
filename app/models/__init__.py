from .internal import MediaIntent
from .request import MediaRequest
from .response import DiskDelivery, ErrorResponse

__all__ = ["DiskDelivery", "ErrorResponse", "MediaIntent", "MediaRequest"]
