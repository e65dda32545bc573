"""Unit tests for PdfBatchExtractor.

The model is a scripted fake; PDFs are real (PyMuPDF-generated) so page
range copies and batch planning run for real.
"""

from __future__ import annotations

import json

import pytest

from materialflow.core.exceptions import ExternalCallError, InputError
from materialflow.modules.extraction.batch_extractor import PdfBatchExtractor
from materialflow.modules.extraction.schemas import CompiledSchema, PageBatch
from tests.conftest import Delayed, FakeModelClient, build_pdf


def _items(*names: str) -> str:
    return json.dumps([{"name": n, "quantity": 1} for n in names])


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


async def test_extracts_every_batch(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(buffers=[_items("Tile"), _items("Brick", "Sand")])
    extractor = PdfBatchExtractor(model, batch_size=5)

    output = await extractor.extract(build_pdf(7), "job-1", material_schema)

    assert output.total_pages == 7
    assert output.total_batches == 2
    assert output.failed_batches == []
    assert [(r["name"], r["pageNumber"]) for r in output.results] == [
        ("Tile", 1),
        ("Brick", 6),
        ("Sand", 6),
    ]


async def test_prompt_carries_document_position(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(buffers=[_items("Tile")])
    await PdfBatchExtractor(model, batch_size=5).extract(build_pdf(7), "job-1", material_schema)

    prompts = [c["system_prompt"] + c["user_prompt"] for c in model.buffer_calls]
    assert "pages 1-5 of a 7-page document" in prompts[0]
    assert "pages 6-7 of a 7-page document" in prompts[1]
    assert all(c["mime_type"] == "application/pdf" for c in model.buffer_calls)
    assert all(c["criticality"] == "high" for c in model.buffer_calls)
    assert all(c["correlation_id"] == "job-1" for c in model.buffer_calls)


async def test_progress_reported_after_each_batch(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(buffers=[_items("Tile")])
    seen: list[tuple[int, int, int]] = []

    async def on_progress(done: int, total: int, batch: PageBatch) -> None:
        seen.append((done, total, batch.end))

    await PdfBatchExtractor(model, batch_size=2).extract(
        build_pdf(5), "job-1", material_schema, on_progress=on_progress
    )

    assert seen == [(1, 3, 2), (2, 3, 4), (3, 3, 5)]


# ---------------------------------------------------------------------------
# Batch isolation
# ---------------------------------------------------------------------------


async def test_failed_batch_does_not_stop_the_rest(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(
        buffers=[_items("Tile"), ExternalCallError("All LLM providers failed"), _items("Sand")]
    )

    output = await PdfBatchExtractor(model, batch_size=2).extract(
        build_pdf(5), "job-1", material_schema
    )

    assert [r["name"] for r in output.results] == ["Tile", "Sand"]
    assert len(output.failed_batches) == 1
    failed = output.failed_batches[0]
    assert (failed.start, failed.end) == (3, 4)
    assert "All LLM providers failed" in failed.error


async def test_timed_out_batch_is_retryable(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(buffers=[Delayed(0.3, _items("Late")), _items("Sand")])

    output = await PdfBatchExtractor(model, batch_size=2, batch_timeout_seconds=0.05).extract(
        build_pdf(3), "job-1", material_schema
    )

    assert [r["name"] for r in output.results] == ["Sand"]
    assert output.failed_batches[0].retryable is True
    assert "PDF batch timeout" in output.failed_batches[0].error


async def test_unparseable_batch_is_recorded(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(buffers=["I could not find any materials."])

    output = await PdfBatchExtractor(model).extract(build_pdf(1), "job-1", material_schema)

    assert output.results == []
    assert len(output.failed_batches) == 1


async def test_truncated_batch_keeps_complete_items(material_schema: CompiledSchema) -> None:
    model = FakeModelClient(buffers=['[{"name": "Tile", "quantity": 2}, {"name": "Gra'])

    output = await PdfBatchExtractor(model).extract(build_pdf(1), "job-1", material_schema)

    assert [r["name"] for r in output.results] == ["Tile"]
    assert output.failed_batches == []


async def test_invalid_pdf_raises(material_schema: CompiledSchema) -> None:
    with pytest.raises(InputError):
        await PdfBatchExtractor(FakeModelClient()).extract(b"not a pdf", "job-1", material_schema)
