from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


ExportFormat = Literal["pdf", "pptx"]

SUPPORTED_EXTRACTION_MIME_TYPES = {
    "text/plain",
    "text/markdown",
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


class BrandKitOverrides(BaseModel):
    primary_color: str | None = None
    secondary_color: str | None = None
    logo_url: str | None = None


class GenerationRequest(BaseModel):
    input_text: str = Field(min_length=1, max_length=50000)
    text_mode: Literal["generate", "condense", "preserve"] = "generate"
    language: str = "no"
    tone: str | None = None
    audience: str | None = None
    amount: Literal["brief", "medium", "detailed"] = "medium"
    num_slides: int | None = Field(default=None, ge=1, le=50)
    theme_id: str | None = None
    image_mode: Literal["none", "ai"] = "none"
    image_style: str | None = None
    additional_instructions: str | None = Field(default=None, max_length=1000)
    export_as: list[ExportFormat] = Field(default_factory=list)
    outline: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _dedupe_export_formats(self):
        self.export_as = list(dict.fromkeys(self.export_as))
        return self


class ExportRequest(BaseModel):
    deck_id: str = Field(min_length=1)
    format: ExportFormat
    theme_id: str | None = None
    brand_kit: BrandKitOverrides | None = None
    generation_job_id: str | None = None


class ExtractionRequest(BaseModel):
    source_key: str = Field(min_length=1)
    mime_type: str

    @model_validator(mode="after")
    def _validate_mime_type(self):
        if self.mime_type not in SUPPORTED_EXTRACTION_MIME_TYPES:
            raise ValueError(f"Unsupported MIME type: {self.mime_type}")
        return self


PAYLOAD_SCHEMAS: dict[str, type[BaseModel]] = {
    "generation": GenerationRequest,
    "export": ExportRequest,
    "extraction": ExtractionRequest,
}


class JobErrorOut(BaseModel):
    code: str
    message: str


class JobOut(BaseModel):
    id: str
    family: str
    status: str
    progress: int
    result_refs: dict[str, Any] | None = None
    error: JobErrorOut | None = None
    parent_job_id: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class SubmitOut(BaseModel):
    job_id: str
    status: str


class ProgressEvent(BaseModel):
    job_id: str
    type: str
    timestamp: int
    payload: dict[str, Any] = Field(default_factory=dict)
