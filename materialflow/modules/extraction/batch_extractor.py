"""MaterialFlow PDF Batch Extractor — page-batched model extraction.

A PDF is split into consecutive ranges of BATCH_SIZE pages. Each range is
copied into its own small PDF and sent to the model together with its
position in the document (pages X-Y of N) so items crossing a batch
boundary can be recognised. Responses go through the tolerant parser.

A failed batch (timeout, unrepairable output, provider error) is recorded
in ``failed_batches`` and the next batch still runs.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog

from materialflow.core.config import settings
from materialflow.core.llm import LLMOptions, ModelClient
from materialflow.core.timeouts import race_with_timeout
from materialflow.modules.extraction.parsing import is_retryable_error, parse_extraction_response
from materialflow.modules.extraction.pdf_service import (
    extract_page_range,
    plan_batches,
    validate_pdf,
)
from materialflow.modules.extraction.prompts import build_pdf_extraction_prompt
from materialflow.modules.extraction.schemas import (
    CompiledSchema,
    FailedBatch,
    LogLevel,
    PageBatch,
    PdfExtractionOutput,
)

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, PageBatch], Awaitable[None]]
LogCallback = Callable[[str, LogLevel], Awaitable[None]]


async def _no_log(message: str, level: LogLevel = "info") -> None:
    return None


class PdfBatchExtractor:
    """Extracts records from one PDF, one page batch at a time."""

    def __init__(
        self,
        model: ModelClient,
        batch_size: int | None = None,
        batch_timeout_seconds: float | None = None,
    ) -> None:
        self.model = model
        self.batch_size = batch_size or settings.pdf_batch_size
        self.batch_timeout_seconds = batch_timeout_seconds or settings.pdf_batch_timeout_seconds

    async def extract(
        self,
        pdf_bytes: bytes,
        job_id: str,
        schema: CompiledSchema,
        *,
        on_progress: ProgressCallback | None = None,
        job_log: LogCallback | None = None,
    ) -> PdfExtractionOutput:
        """Run every batch of ``pdf_bytes`` through the model.

        Raises:
            InputError: the bytes are not a readable PDF.
        """
        job_log = job_log or _no_log
        start = time.time()

        total_pages = validate_pdf(pdf_bytes)
        batches = plan_batches(total_pages, self.batch_size)
        await job_log(
            f"PDF contains {total_pages} pages, processing in {len(batches)} "
            f"batches of {self.batch_size}",
            "info",
        )

        output = PdfExtractionOutput(total_pages=total_pages, total_batches=len(batches))

        for done, batch in enumerate(batches, start=1):
            label = f"Batch {done}/{len(batches)} (pages {batch.start}-{batch.end})"
            try:
                records = await self._run_batch(pdf_bytes, job_id, schema, batch, total_pages)
            except Exception as e:
                logger.warning(
                    "PDF batch failed",
                    job_id=job_id,
                    start=batch.start,
                    end=batch.end,
                    error=str(e),
                )
                await job_log(f"{label} failed: {e}", "warn")
                output.failed_batches.append(
                    FailedBatch(
                        start=batch.start,
                        end=batch.end,
                        error=str(e),
                        retryable=is_retryable_error(e),
                    )
                )
            else:
                output.results.extend(records)
                await job_log(f"{label}: {len(records)} items extracted", "info")

            if on_progress is not None:
                await on_progress(done, len(batches), batch)

        duration_ms = int((time.time() - start) * 1000)
        logger.info(
            "PDF extraction complete",
            job_id=job_id,
            records=len(output.results),
            batches=len(batches),
            failed_batches=len(output.failed_batches),
            duration_ms=duration_ms,
        )
        return output

    async def _run_batch(
        self,
        pdf_bytes: bytes,
        job_id: str,
        schema: CompiledSchema,
        batch: PageBatch,
        total_pages: int,
    ) -> list[dict]:
        batch_pdf = extract_page_range(pdf_bytes, batch.start, batch.end)
        system_prompt, user_prompt = build_pdf_extraction_prompt(
            schema, batch.start, batch.end, total_pages
        )

        response = await race_with_timeout(
            self.model.generate_with_buffers(
                system_prompt,
                user_prompt,
                batch_pdf,
                "application/pdf",
                criticality="high",
                options=LLMOptions(
                    temperature=settings.pdf_batch_temperature,
                    max_output_tokens=settings.pdf_batch_max_output_tokens,
                    timeout_ms=int(self.batch_timeout_seconds * 1000),
                ),
                correlation_id=job_id,
            ),
            self.batch_timeout_seconds,
            "PDF batch timeout",
        )

        return parse_extraction_response(response, batch.start, schema.json_schema)
