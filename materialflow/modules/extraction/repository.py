"""MaterialFlow persistence interface for jobs, data layers and results.

``JobRepository`` is what the orchestrator needs from storage. The
in-memory implementation backs the CLI runner and the test suite.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from materialflow.core.exceptions import InputError
from materialflow.modules.extraction.agent_schemas import AgentExecutionMetadata
from materialflow.modules.extraction.schemas import (
    DataLayer,
    DataLayerStatus,
    Evidence,
    ExtractionJob,
    ExtractionResult,
    JobDataLayer,
    JobLogEntry,
    JobStatus,
    ResultStatus,
)

logger = structlog.get_logger()


class JobRepository(Protocol):
    async def create_job(self, job: ExtractionJob) -> ExtractionJob: ...

    async def get_job(self, job_id: str) -> ExtractionJob | None: ...

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: int | None = None,
        error: str | None = None,
        metadata_patch: dict[str, Any] | None = None,
    ) -> None: ...

    async def append_job_log(self, job_id: str, entry: JobLogEntry) -> None: ...

    async def create_data_layer(self, data_layer: DataLayer) -> DataLayer: ...

    async def get_data_layer(self, data_layer_id: str) -> DataLayer | None: ...

    async def get_job_data_layers(self, job_id: str) -> list[tuple[JobDataLayer, DataLayer]]: ...

    async def add_data_layer_to_job(self, job_id: str, data_layer_id: str, order: int) -> None: ...

    async def update_data_layer_status(
        self, job_id: str, data_layer_id: str, status: DataLayerStatus
    ) -> None: ...

    async def bulk_insert_results(self, job_id: str, records: list[dict[str, Any]]) -> int: ...

    async def get_results_by_job(self, job_id: str) -> list[ExtractionResult]: ...

    async def get_approved_results(self, job_id: str) -> list[ExtractionResult]: ...

    async def update_verified_data(
        self,
        result_id: str,
        verified_data: dict[str, Any],
        status: ResultStatus | None = None,
    ) -> ExtractionResult: ...

    async def update_result_status(self, result_id: str, status: ResultStatus) -> None: ...


# ---------------------------------------------------------------------------
# Record -> ExtractionResult
# ---------------------------------------------------------------------------


def build_result(job_id: str, record: dict[str, Any]) -> ExtractionResult:
    """Split a pipeline record into raw extraction, evidence and metadata."""
    raw = {k: v for k, v in record.items() if k != "agentExecutionMetadata"}

    page_number = record.get("pageNumber")
    confidence = record.get("confidenceScore")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    else:
        confidence = max(0.0, min(1.0, float(confidence)))

    metadata = [
        m if isinstance(m, AgentExecutionMetadata) else AgentExecutionMetadata.model_validate(m)
        for m in record.get("agentExecutionMetadata") or []
    ]

    return ExtractionResult(
        job_id=job_id,
        raw_extraction=raw,
        evidence=Evidence(
            source_text=record.get("sourceText") or record.get("originalSnippet"),
            page_number=page_number if isinstance(page_number, int) else None,
            location=record.get("location") or record.get("locationInDocument"),
        ),
        agent_execution_metadata=metadata,
        confidence_score=confidence,
        source_data_layer_id=record.get("sourceDataLayerId"),
        source_file_name=record.get("sourceFileName"),
    )


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryJobRepository:
    """Dict-backed JobRepository. Records every progress write per job."""

    def __init__(self) -> None:
        self.jobs: dict[str, ExtractionJob] = {}
        self.data_layers: dict[str, DataLayer] = {}
        self.job_links: dict[str, list[JobDataLayer]] = {}
        self.results: dict[str, ExtractionResult] = {}
        self.progress_history: dict[str, list[int]] = {}
        self.insert_batches: dict[str, list[int]] = {}

    def _job(self, job_id: str) -> ExtractionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise InputError(f"Job not found: {job_id}")
        return job

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: ExtractionJob) -> ExtractionJob:
        self.jobs[job.id] = job
        self.job_links[job.id] = [
            JobDataLayer(data_layer_id=dl_id, processing_order=i)
            for i, dl_id in enumerate(job.data_layer_ids)
        ]
        self.progress_history[job.id] = [job.progress]
        return job

    async def get_job(self, job_id: str) -> ExtractionJob | None:
        return self.jobs.get(job_id)

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: int | None = None,
        error: str | None = None,
        metadata_patch: dict[str, Any] | None = None,
    ) -> None:
        job = self._job(job_id)
        job.status = status
        if progress is not None:
            job.progress = progress
            self.progress_history[job_id].append(progress)
        if error is not None:
            job.error = error
        if metadata_patch:
            job.metadata.update(metadata_patch)
        if status in ("completed", "failed"):
            job.completed_at = datetime.now(timezone.utc)

    async def append_job_log(self, job_id: str, entry: JobLogEntry) -> None:
        self._job(job_id).logs.append(entry)

    # ------------------------------------------------------------------
    # Data layers
    # ------------------------------------------------------------------

    async def create_data_layer(self, data_layer: DataLayer) -> DataLayer:
        self.data_layers[data_layer.id] = data_layer
        return data_layer

    async def get_data_layer(self, data_layer_id: str) -> DataLayer | None:
        return self.data_layers.get(data_layer_id)

    async def get_job_data_layers(self, job_id: str) -> list[tuple[JobDataLayer, DataLayer]]:
        links = sorted(self.job_links.get(job_id, []), key=lambda link: link.processing_order)
        return [
            (link, self.data_layers[link.data_layer_id])
            for link in links
            if link.data_layer_id in self.data_layers
        ]

    async def add_data_layer_to_job(self, job_id: str, data_layer_id: str, order: int) -> None:
        job = self._job(job_id)
        job.data_layer_ids.append(data_layer_id)
        self.job_links[job_id].append(
            JobDataLayer(data_layer_id=data_layer_id, processing_order=order)
        )

    async def update_data_layer_status(
        self, job_id: str, data_layer_id: str, status: DataLayerStatus
    ) -> None:
        for link in self.job_links.get(job_id, []):
            if link.data_layer_id == data_layer_id:
                link.status = status
                return
        raise InputError(f"Data layer {data_layer_id} is not part of job {job_id}")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def bulk_insert_results(self, job_id: str, records: list[dict[str, Any]]) -> int:
        self._job(job_id)
        for record in records:
            result = build_result(job_id, record)
            self.results[result.id] = result
        self.insert_batches.setdefault(job_id, []).append(len(records))
        return len(records)

    async def get_results_by_job(self, job_id: str) -> list[ExtractionResult]:
        return [r for r in self.results.values() if r.job_id == job_id]

    async def get_approved_results(self, job_id: str) -> list[ExtractionResult]:
        return [
            r for r in self.results.values() if r.job_id == job_id and r.status == "accepted"
        ]

    async def update_verified_data(
        self,
        result_id: str,
        verified_data: dict[str, Any],
        status: ResultStatus | None = None,
    ) -> ExtractionResult:
        """Merge ``verified_data`` into the stored override layer."""
        result = self.results.get(result_id)
        if result is None:
            raise InputError(f"Extraction result not found: {result_id}")

        result.verified_data = {**(result.verified_data or {}), **verified_data}
        result.status = status or "edited"
        return result

    async def update_result_status(self, result_id: str, status: ResultStatus) -> None:
        result = self.results.get(result_id)
        if result is None:
            raise InputError(f"Extraction result not found: {result_id}")
        result.status = status
