"""MaterialFlow extraction data model — jobs, data layers, results."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from materialflow.modules.extraction.agent_schemas import (
    AgentDefinition,
    AgentExecutionMetadata,
)

JobStatus = Literal["queued", "running", "completed", "failed"]
DataLayerStatus = Literal["pending", "processing", "completed", "failed"]
ResultStatus = Literal["pending", "accepted", "rejected", "edited"]
FileType = Literal["pdf", "zip", "other"]
LogLevel = Literal["info", "warn", "error"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Source files
# ---------------------------------------------------------------------------


class DataLayer(BaseModel):
    """A reference to one uploaded file. Archive members point at their zip."""

    id: str = Field(default_factory=_new_id)
    name: str
    file_type: FileType
    file_path: str = Field(..., description="Storage path of the file bytes")
    mime_type: str | None = None
    parent_id: str | None = Field(None, description="Zip data layer this file was expanded from")


class JobDataLayer(BaseModel):
    """Link between a job and one data layer, with the per-job status."""

    data_layer_id: str
    processing_order: int
    status: DataLayerStatus = "pending"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    level: LogLevel = "info"
    message: str


class ExtractionJob(BaseModel):
    """One extraction run over one or more source files."""

    id: str = Field(default_factory=_new_id)
    schema_id: str
    organization_id: str | None = None
    status: JobStatus = "queued"
    progress: int = Field(0, ge=0, le=100)
    data_layer_ids: list[str] = Field(default_factory=list)
    logs: list[JobLogEntry] = Field(default_factory=list)
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class JobSummary(BaseModel):
    """Summary stored on a completed job's metadata."""

    files_processed: int
    total_files: int
    total_records: int
    average_confidence: float | None = None
    extracted_files: list[str] = Field(default_factory=list)
    has_agent_errors: bool = False


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class CompiledSchema(BaseModel):
    """An extraction schema resolved into everything the pipeline needs."""

    id: str
    name: str = ""
    json_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON Schema of one extracted record (properties, required)",
    )
    output_schema: dict[str, Any] | None = Field(
        None, description="Shape shown to the model for its output"
    )
    prompt: str = Field("", description="Schema-specific extraction instructions")
    examples: list[dict[str, Any]] = Field(default_factory=list)
    agents: list[AgentDefinition] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class Evidence(BaseModel):
    source_text: str | None = None
    page_number: int | None = None
    location: str | None = None


class ExtractionResult(BaseModel):
    """One persisted extracted record.

    ``raw_extraction`` is never modified after insert; human corrections
    land in ``verified_data`` and are merged key by key.
    """

    id: str = Field(default_factory=_new_id)
    job_id: str
    raw_extraction: dict[str, Any]
    evidence: Evidence = Field(default_factory=Evidence)
    verified_data: dict[str, Any] | None = None
    agent_execution_metadata: list[AgentExecutionMetadata] = Field(default_factory=list)
    status: ResultStatus = "pending"
    confidence_score: float | None = Field(None, ge=0.0, le=1.0)
    source_data_layer_id: str | None = None
    source_file_name: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def data(self) -> dict[str, Any]:
        """Verified data when a reviewer has supplied any, else the raw extraction."""
        if self.verified_data:
            return self.verified_data
        return self.raw_extraction


# ---------------------------------------------------------------------------
# PDF batches
# ---------------------------------------------------------------------------


class PageBatch(BaseModel):
    """A 1-based, inclusive page range."""

    index: int
    start: int
    end: int


class FailedBatch(BaseModel):
    start: int
    end: int
    error: str
    retryable: bool = False


class PdfExtractionOutput(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)
    failed_batches: list[FailedBatch] = Field(default_factory=list)
    total_pages: int = 0
    total_batches: int = 0
