from pydantic import BaseModel
from typing import Optional
from app.services.variants import MediaType, QualityRequest

class MediaIntent(BaseModel):
    """Internal media intent (separated from HTTP concerns)"""
    url: str
    download: bool
    media_type: MediaType
    quality: QualityRequest
    to_disk: bool
    filename: Optional[str]
    allow_external_mux: bool
