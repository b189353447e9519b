from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, StrictStr


class DownloadRequest(BaseModel):
    url: StrictStr = Field(min_length=1, description="Page or document URL to fetch the PDF from.")


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    browser_up: bool = Field(alias="browserUp", description="Whether the shared browser is running.")
    queue_length: int = Field(alias="queueLength", description="Requests waiting behind the active one.")


class ErrorResponse(BaseModel):
    error: str
    details: str | None = None


class DownloadToolResponse(BaseModel):
    url: str = Field(description="The requested URL.")
    size_bytes: int = Field(description="Size of the captured PDF.")
    pdf_base64: str = Field(description="The captured PDF, base64-encoded.")
