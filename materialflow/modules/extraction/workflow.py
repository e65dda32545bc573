"""MaterialFlow job workflow helpers — job log, progress, summary."""

from __future__ import annotations

import math
from typing import Any

import structlog

from materialflow.core.exceptions import PersistenceError
from materialflow.modules.extraction.repository import JobRepository
from materialflow.modules.extraction.schemas import JobLogEntry, JobSummary, LogLevel

logger = structlog.get_logger()

# Share of the progress bar covered by per-file work; the rest is finalization
FILE_PROGRESS_SPAN = 90


class JobLog:
    """Writes one message to both the structured log and the job's own log."""

    def __init__(self, repository: JobRepository, job_id: str) -> None:
        self.repository = repository
        self.job_id = job_id

    async def __call__(self, message: str, level: LogLevel = "info") -> None:
        log_method = {"info": logger.info, "warn": logger.warning, "error": logger.error}[level]
        log_method(message, job_id=self.job_id)
        try:
            await self.repository.append_job_log(
                self.job_id, JobLogEntry(level=level, message=message)
            )
        except Exception as e:
            raise PersistenceError(f"Could not append job log: {e}") from e


class ProgressReporter:
    """Maps file/batch completion onto 0..100 and never moves backwards.

    File k of N owns [k*90/N, (k+1)*90/N]; 100 is only written by
    ``complete``.
    """

    def __init__(self, repository: JobRepository, job_id: str) -> None:
        self.repository = repository
        self.job_id = job_id
        self.current = 0

    @staticmethod
    def file_progress(file_index: int, total_files: int, fraction: float = 0.0) -> int:
        if total_files <= 0:
            return 0
        fraction = max(0.0, min(1.0, fraction))
        return math.floor((file_index + fraction) / total_files * FILE_PROGRESS_SPAN)

    async def report(self, progress: int, metadata_patch: dict[str, Any] | None = None) -> int:
        self.current = max(self.current, min(99, progress))
        try:
            await self.repository.update_job_status(
                self.job_id, "running", self.current, metadata_patch=metadata_patch
            )
        except Exception as e:
            raise PersistenceError(f"Could not update job progress: {e}") from e
        return self.current

    async def complete(self, metadata_patch: dict[str, Any] | None = None) -> None:
        self.current = 100
        await self.repository.update_job_status(
            self.job_id, "completed", 100, metadata_patch=metadata_patch
        )


def average_confidence(values: list[Any]) -> float | None:
    """Mean of the positive numeric confidence values, if any."""
    scores = [
        float(v)
        for v in values
        if isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0
    ]
    if not scores:
        return None
    return round(sum(scores) / len(scores), 4)


def build_summary(
    *,
    files_processed: int,
    total_files: int,
    total_records: int,
    confidences: list[Any],
    extracted_files: list[str],
    has_agent_errors: bool,
) -> JobSummary:
    return JobSummary(
        files_processed=files_processed,
        total_files=total_files,
        total_records=total_records,
        average_confidence=average_confidence(confidences),
        extracted_files=extracted_files,
        has_agent_errors=has_agent_errors,
    )
