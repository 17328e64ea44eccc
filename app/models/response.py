from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Error body for every failure reported before streaming"""
    error: str


class DiskDelivery(BaseModel):
    """Result of persisting media to the download directory"""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    filename: str
    path: str
    size_bytes: int = Field(alias="sizeBytes")
