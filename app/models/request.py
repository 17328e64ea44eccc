from pydantic import BaseModel, Field, field_validator
from typing import Optional
from app.models.internal import MediaIntent
from app.services.variants import MediaType, QualityRequest

TRUTHY = ("true", "1")

class MediaRequest(BaseModel):
    """
    Query parameters of GET /api/media.
    Unknown values fall back to defaults instead of failing the request.
    """
    url: Optional[str] = Field(None, description="Source video URL")
    mode: str = Field("stream", description="stream (inline) or download (attachment)")
    type: str = Field("video", description="video or audio")
    quality: str = Field("highest", description="highest, lowest, or an exact itag")
    download_target: str = Field("response", description="response or disk")
    filename: Optional[str] = Field(None, description="Filename override")
    enable_external_mux: bool = Field(False, description="Allow ffmpeg muxing/re-encoding")

    @field_validator('mode')
    @classmethod
    def normalize_mode(cls, v):
        return "download" if v and v.strip().lower() == "download" else "stream"

    @field_validator('download_target')
    @classmethod
    def normalize_target(cls, v):
        return "disk" if v and v.strip().lower() == "disk" else "response"

    @field_validator('enable_external_mux', mode='before')
    @classmethod
    def parse_flag(cls, v):
        if isinstance(v, bool):
            return v
        return str(v or "").strip().lower() in TRUTHY

    @field_validator('filename')
    @classmethod
    def blank_filename(cls, v):
        return v if v and v.strip() else None

    def to_intent(self) -> MediaIntent:
        """Convert to media intent"""
        download = self.mode == "download"
        return MediaIntent(
            url=(self.url or "").strip(),
            download=download,
            media_type=MediaType.parse(self.type),
            quality=QualityRequest.parse(self.quality),
            # Disk persistence is a download-mode option only
            to_disk=download and self.download_target == "disk",
            filename=self.filename,
            allow_external_mux=self.enable_external_mux,
        )
