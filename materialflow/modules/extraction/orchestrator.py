"""MaterialFlow Job Orchestrator — one extraction job from submit to summary.

Pure controller, no direct LLM calls:

  submit(schema_id, data_layer_ids)
    -> job persisted as "queued", process() scheduled as a background task

  process(job_id)
    1. Load job + compiled schema, status "running"
    2. Expand every zip into member files appended to the SAME job
    3. For each non-zip file, sequentially:
         download -> PDF batch extraction -> (validator + agents)
         -> tag with source file -> buffer -> flush every N records
    4. Flush the rest, write the summary, status "completed" at 100

A per-file error marks that file failed and the loop moves on. A missing
job or schema, the wall-clock deadline, or a persistence failure fails the
whole job; still-open files are then force-marked failed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from materialflow.core.config import settings
from materialflow.core.exceptions import InputError, JobDeadlineExceeded, PersistenceError
from materialflow.core.llm import ModelClient
from materialflow.modules.extraction.agents.diagnostics import (
    analyze_pipeline_execution,
    format_for_logging,
)
from materialflow.modules.extraction.agents.executor import (
    AgentPipelineExecutor,
    SchemaContext,
    active_agents,
)
from materialflow.modules.extraction.agents.validator import format_report, validate_records
from materialflow.modules.extraction.archive import (
    ArchiveExpander,
    ZipArchiveExpander,
    file_type_for,
)
from materialflow.modules.extraction.batch_extractor import PdfBatchExtractor
from materialflow.modules.extraction.repository import JobRepository
from materialflow.modules.extraction.schema_registry import SchemaProvider
from materialflow.modules.extraction.schemas import (
    CompiledSchema,
    DataLayer,
    ExtractionJob,
    JobDataLayer,
    PageBatch,
)
from materialflow.modules.extraction.storage import Storage
from materialflow.modules.extraction.workflow import JobLog, ProgressReporter, build_summary

logger = structlog.get_logger()


@dataclass
class _RunState:
    """Mutable per-run counters, owned by the single task processing the job."""

    buffer: list[dict[str, Any]] = field(default_factory=list)
    total_records: int = 0
    confidences: list[Any] = field(default_factory=list)
    files_processed: int = 0
    extracted_files: list[str] = field(default_factory=list)
    has_agent_errors: bool = False


class JobOrchestrator:
    """Top-level state machine for extraction jobs."""

    def __init__(
        self,
        repository: JobRepository,
        storage: Storage,
        schema_provider: SchemaProvider,
        model: ModelClient,
        archive: ArchiveExpander | None = None,
        *,
        extractor: PdfBatchExtractor | None = None,
        executor: AgentPipelineExecutor | None = None,
        flush_batch_size: int | None = None,
        job_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.schema_provider = schema_provider
        self.archive = archive or ZipArchiveExpander()
        self.extractor = extractor or PdfBatchExtractor(model)
        self.executor = executor or AgentPipelineExecutor(model)
        self.flush_batch_size = max(1, min(500, flush_batch_size or settings.flush_batch_size))
        self.job_timeout_seconds = job_timeout_seconds or settings.job_timeout_seconds
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        schema_id: str,
        data_layer_ids: list[str],
        organization_id: str | None = None,
    ) -> ExtractionJob:
        """Persist a queued job and start processing it in the background.

        Returns immediately; the caller never waits on pipeline work.
        """
        if not data_layer_ids:
            raise InputError("At least one data layer is required")

        job = await self.repository.create_job(
            ExtractionJob(
                schema_id=schema_id,
                organization_id=organization_id,
                data_layer_ids=list(data_layer_ids),
            )
        )
        logger.info("Extraction job queued", job_id=job.id, files=len(data_layer_ids))

        task = asyncio.create_task(self._run_in_background(job.id), name=f"extraction-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def wait_for_background(self) -> None:
        """Wait until every scheduled job task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_in_background(self, job_id: str) -> None:
        try:
            await self.process(job_id)
        except Exception:
            # process() records its own failures; this only catches a broken fail path
            logger.exception("Background extraction task crashed", job_id=job_id)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, job_id: str) -> None:
        started = self._clock()
        deadline = started + self.job_timeout_seconds
        job_log = JobLog(self.repository, job_id)
        progress = ProgressReporter(self.repository, job_id)

        try:
            job = await self.repository.get_job(job_id)
            if job is None:
                raise InputError(f"Extraction job not found: {job_id}")

            schema = await self.schema_provider.get_and_compile_by_id(job.schema_id)
            if schema is None:
                raise InputError(f"Extraction schema not found: {job.schema_id}")

            links = await self.repository.get_job_data_layers(job_id)
            if not links:
                raise InputError("No data layers found for extraction job")

            await self.repository.update_job_status(
                job_id, "running", 0, metadata_patch={"stage": "starting"}
            )

            expanded: set[str] = set()
            zips = [(link, dl) for link, dl in links if dl.file_type == "zip"]
            if zips:
                await job_log(f"Found {len(zips)} ZIP file(s) to extract")
                for link, zip_layer in zips:
                    self._check_deadline(deadline, f"before expanding {zip_layer.name}")
                    if await self._expand_zip(job_id, zip_layer, job_log):
                        expanded.add(zip_layer.id)
                links = await self.repository.get_job_data_layers(job_id)
                await job_log(f"Refreshed job - now tracking {len(links)} files")

            files = [(link, dl) for link, dl in links if dl.id not in expanded]
            state = _RunState()
            await job_log(f"Processing {len(files)} files")

            for index, (link, data_layer) in enumerate(files):
                self._check_deadline(deadline, f"before processing {data_layer.name}")
                if link.status in ("completed", "failed"):
                    continue

                await self._process_one(job_id, index, len(files), data_layer, schema, state, progress, job_log)

                if len(state.buffer) >= self.flush_batch_size:
                    await self._flush(job_id, state, job_log)

                await progress.report(
                    ProgressReporter.file_progress(index + 1, len(files)),
                    {
                        "stage": "extracting_data",
                        "filesCompleted": index + 1,
                        "totalFiles": len(files),
                        "totalRecordsFound": state.total_records,
                    },
                )

            await self._flush(job_id, state, job_log)

            summary = build_summary(
                files_processed=state.files_processed,
                total_files=len(files),
                total_records=state.total_records,
                confidences=state.confidences,
                extracted_files=state.extracted_files,
                has_agent_errors=state.has_agent_errors,
            )
            await progress.complete({"stage": "completed", "summary": summary.model_dump()})

            duration_ms = int((self._clock() - started) * 1000)
            await job_log(
                f"Extraction job completed: {summary.total_records} records from "
                f"{summary.files_processed}/{summary.total_files} files"
            )
            logger.info("Extraction job complete", job_id=job_id, duration_ms=duration_ms)

        except Exception as e:
            await self._fail_job(job_id, e, started, job_log)

    def _check_deadline(self, deadline: float, where: str) -> None:
        if self._clock() > deadline:
            raise JobDeadlineExceeded(
                f"Job timeout exceeded ({self.job_timeout_seconds:g}s) {where}"
            )

    # ------------------------------------------------------------------
    # Zip expansion
    # ------------------------------------------------------------------

    async def _expand_zip(self, job_id: str, zip_layer: DataLayer, job_log: JobLog) -> bool:
        """Append the zip's members to the job. Returns False if the zip is unreadable."""
        await self.repository.update_data_layer_status(job_id, zip_layer.id, "processing")
        try:
            zip_bytes = await self.storage.get_bytes(zip_layer.file_path)
            members = self.archive.expand(zip_bytes)
        except (InputError, FileNotFoundError) as e:
            await self.repository.update_data_layer_status(job_id, zip_layer.id, "failed")
            await job_log(f"Could not expand {zip_layer.name}: {e}", "error")
            return False

        links = await self.repository.get_job_data_layers(job_id)
        next_order = max((link.processing_order for link, _ in links), default=-1) + 1

        for offset, member in enumerate(members):
            path = f"extractions/{job_id}/{zip_layer.id}/{member.path}"
            await self.storage.put_bytes(path, member.data, member.mime_type)
            data_layer = await self.repository.create_data_layer(
                DataLayer(
                    name=member.name,
                    file_type=file_type_for(member.name, member.mime_type),
                    file_path=path,
                    mime_type=member.mime_type,
                    parent_id=zip_layer.id,
                )
            )
            await self.repository.add_data_layer_to_job(job_id, data_layer.id, next_order + offset)

        await self.repository.update_data_layer_status(job_id, zip_layer.id, "completed")
        await job_log(f"Extracted {len(members)} files from {zip_layer.name}")
        return True

    # ------------------------------------------------------------------
    # Per-file pipeline
    # ------------------------------------------------------------------

    async def _process_one(
        self,
        job_id: str,
        index: int,
        total_files: int,
        data_layer: DataLayer,
        schema: CompiledSchema,
        state: _RunState,
        progress: ProgressReporter,
        job_log: JobLog,
    ) -> None:
        """Run one file; any error here except a persistence failure stays with this file."""
        await job_log(f"Processing file {index + 1}/{total_files}: {data_layer.name}")
        await self.repository.update_data_layer_status(job_id, data_layer.id, "processing")

        if data_layer.file_type != "pdf":
            await job_log(
                f"Skipping {data_layer.name}: unsupported file type ({data_layer.file_type})",
                "warn",
            )
            await self.repository.update_data_layer_status(job_id, data_layer.id, "completed")
            return

        try:
            file_bytes = await self.storage.get_bytes(data_layer.file_path)

            async def on_batch(done: int, total: int, batch: PageBatch) -> None:
                await progress.report(
                    ProgressReporter.file_progress(index, total_files, done / total),
                    {
                        "stage": "extracting_data",
                        "currentFile": data_layer.name,
                        "currentBatch": done,
                        "totalBatches": total,
                        "pagesProcessed": batch.end,
                    },
                )

            output = await self.extractor.extract(
                file_bytes, job_id, schema, on_progress=on_batch, job_log=job_log
            )
            if output.failed_batches:
                logger.warning(
                    "PDF extraction partial failure",
                    job_id=job_id,
                    data_layer_id=data_layer.id,
                    failed_batches=[b.model_dump() for b in output.failed_batches],
                )
                if len(output.failed_batches) == output.total_batches:
                    raise RuntimeError(f"All {output.total_batches} batches failed")

            records = output.results
            if records and active_agents(schema.agents):
                records = await self._run_agents(schema, records, state, job_log)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(
                "File processing failed",
                job_id=job_id,
                data_layer_id=data_layer.id,
                file=data_layer.name,
                error=str(e),
            )
            await job_log(f"Failed to process {data_layer.name}: {e}", "error")
            await self.repository.update_data_layer_status(job_id, data_layer.id, "failed")
            return

        tagged = [
            {**record, "sourceDataLayerId": data_layer.id, "sourceFileName": data_layer.name}
            for record in records
        ]
        state.buffer.extend(tagged)
        state.total_records += len(tagged)
        state.confidences.extend(r.get("confidenceScore") for r in tagged)
        state.files_processed += 1
        state.extracted_files.append(data_layer.name)

        await self.repository.update_data_layer_status(job_id, data_layer.id, "completed")
        await job_log(f"{data_layer.name}: {len(tagged)} records extracted")

    async def _run_agents(
        self,
        schema: CompiledSchema,
        records: list[dict[str, Any]],
        state: _RunState,
        job_log: JobLog,
    ) -> list[dict[str, Any]]:
        agents = active_agents(schema.agents)
        await job_log(f"Applying {len(agents)} post-processing agents to {len(records)} results")

        report = validate_records(records, schema.json_schema)
        if report.invalid:
            await job_log(format_report(report), "warn")

        try:
            run = await self.executor.execute_batch(
                agents,
                report.valid,
                SchemaContext(name=schema.name or "Unknown Schema", definition=schema.json_schema),
            )
        except Exception as e:
            logger.error("Agent pipeline failed", error=str(e))
            await job_log(f"Agent pipeline failed: {e}. Using original extractions.", "warn")
            state.has_agent_errors = True
            return records

        processed: list[dict[str, Any]] = []
        for record, history in zip(run.records, run.metadata):
            if not isinstance(record, dict):
                logger.warning("Dropping non-object agent output", type=type(record).__name__)
                continue
            processed.append({**record, "agentExecutionMetadata": history})
        processed.extend(report.invalid)

        diagnostics = analyze_pipeline_execution(run.metadata, len(agents))
        logger.info("Agent pipeline diagnostics", **format_for_logging(diagnostics))

        if run.has_errors:
            state.has_agent_errors = True
            failing = "; ".join(
                f"{s.agent_name}: {s.failure_count + s.timeout_count} failures "
                f"({s.success_rate:.1f}% success)"
                for s in diagnostics.agent_stats
                if s.success_rate < 100
            )
            await job_log(
                f"Agent issues detected: {failing}. "
                f"Overall success: {diagnostics.overall_success_rate:.1f}%",
                "warn",
            )
            if diagnostics.critical_issues:
                await job_log("Issues: " + "; ".join(diagnostics.critical_issues))
        else:
            await job_log(
                f"All agents completed successfully ({len(processed)} results, "
                f"success rate {diagnostics.overall_success_rate:.1f}%)"
            )

        return processed

    async def _flush(self, job_id: str, state: _RunState, job_log: JobLog) -> None:
        if not state.buffer:
            return
        await job_log(f"Saving {len(state.buffer)} extracted records")
        await self.repository.bulk_insert_results(job_id, list(state.buffer))
        state.buffer.clear()

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _fail_job(
        self,
        job_id: str,
        error: Exception,
        started: float,
        job_log: JobLog,
    ) -> None:
        message = str(error) or type(error).__name__
        duration_ms = int((self._clock() - started) * 1000)
        logger.error(
            "Extraction job failed",
            job_id=job_id,
            error=message,
            error_type=type(error).__name__,
            duration_ms=duration_ms,
        )

        try:
            await job_log(f"Extraction job failed after {duration_ms // 1000}s: {message}", "error")
            await self.repository.update_job_status(job_id, "failed", error=message)
        except Exception:
            logger.exception("Could not record job failure", job_id=job_id)

        try:
            links: list[tuple[JobDataLayer, DataLayer]] = await self.repository.get_job_data_layers(job_id)
            for link, _ in links:
                if link.status in ("pending", "processing"):
                    await self.repository.update_data_layer_status(job_id, link.data_layer_id, "failed")
        except Exception:
            logger.exception("Failed to clean up data layers of failed job", job_id=job_id)
