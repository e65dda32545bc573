"""Integration tests for the extraction job pipeline.

These tests run the real orchestrator, PDF batching (PyMuPDF), zip
expansion, agent executor and in-memory persistence end to end, with only
the model replaced by a scripted fake. They verify:

  - A zip of two PDFs expands into the same job and completes at 100
  - Progress written to the job never moves backwards
  - Unsupported and broken files are contained to their own file
  - Agents post-process records and their stage history is persisted
  - The wall-clock deadline fails the job but keeps flushed records
  - A missing schema fails the job and closes every open file
"""

from __future__ import annotations

import itertools
import json
from typing import Any

import fitz  # PyMuPDF
import pytest

from materialflow.core.exceptions import InputError
from materialflow.modules.extraction.agent_schemas import AgentDefinition
from materialflow.modules.extraction.batch_extractor import PdfBatchExtractor
from materialflow.modules.extraction.orchestrator import JobOrchestrator
from materialflow.modules.extraction.repository import InMemoryJobRepository
from materialflow.modules.extraction.schema_registry import InMemorySchemaProvider
from materialflow.modules.extraction.schemas import CompiledSchema, DataLayer, FileType
from materialflow.modules.extraction.storage import InMemoryStorage
from tests.conftest import FakeModelClient, build_pdf, build_zip

MATERIALS = json.dumps(
    [
        {"name": "Granite tile", "quantity": 40, "confidenceScore": 0.9},
        {"name": "Rebar", "quantity": 12, "confidenceScore": 0.7},
    ]
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _add_file(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    name: str,
    data: bytes,
    file_type: FileType,
) -> DataLayer:
    path = f"uploads/{name}"
    await storage.put_bytes(path, data, "application/octet-stream")
    return await repository.create_data_layer(
        DataLayer(name=name, file_type=file_type, file_path=path)
    )


def _orchestrator(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    model: FakeModelClient,
    **kwargs,
) -> JobOrchestrator:
    return JobOrchestrator(
        repository,
        storage,
        schema_provider,
        model,
        extractor=PdfBatchExtractor(model, batch_size=5),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


async def test_zip_of_two_pdfs_completes(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    bundle = build_zip({"tender/floor.pdf": build_pdf(3), "tender/walls.pdf": build_pdf(2)})
    zip_layer = await _add_file(repository, storage, "tender.zip", bundle, "zip")
    model = FakeModelClient(buffers=[MATERIALS])
    orchestrator = _orchestrator(repository, storage, schema_provider, model)

    job = await orchestrator.submit(material_schema.id, [zip_layer.id], organization_id="org-1")
    assert job.status == "queued"
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "completed", job.error
    assert job.progress == 100
    assert len(model.buffer_calls) == 2

    summary = job.metadata["summary"]
    assert summary["extracted_files"] == ["floor.pdf", "walls.pdf"]
    assert summary["files_processed"] == 2
    assert summary["total_records"] == 4
    assert summary["average_confidence"] == 0.8
    assert summary["has_agent_errors"] is False

    history = repository.progress_history[job.id]
    assert history == sorted(history)
    assert history[-1] == 100
    assert 100 not in history[:-1]

    links = await repository.get_job_data_layers(job.id)
    assert [(dl.name, link.status) for link, dl in links] == [
        ("tender.zip", "completed"),
        ("floor.pdf", "completed"),
        ("walls.pdf", "completed"),
    ]
    assert all(dl.parent_id == zip_layer.id for _, dl in links[1:])

    results = await repository.get_results_by_job(job.id)
    assert sorted(r.source_file_name for r in results) == ["floor.pdf", "floor.pdf", "walls.pdf", "walls.pdf"]
    assert all(r.raw_extraction["extractionMethod"] == "dynamic-schema" for r in results)


async def test_same_name_members_in_different_folders_are_kept_apart(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    bundle = build_zip({"a/report.pdf": build_pdf(3), "b/report.pdf": build_pdf(2)})
    zip_layer = await _add_file(repository, storage, "reports.zip", bundle, "zip")
    model = FakeModelClient(buffers=[MATERIALS])
    orchestrator = _orchestrator(repository, storage, schema_provider, model)

    job = await orchestrator.submit(material_schema.id, [zip_layer.id])
    await orchestrator.wait_for_background()

    pages_sent = []
    for call in model.buffer_calls:
        with fitz.open(stream=call["file_bytes"], filetype="pdf") as doc:
            pages_sent.append(doc.page_count)
    assert sorted(pages_sent) == [2, 3]

    members = [dl for _, dl in await repository.get_job_data_layers(job.id) if dl.parent_id]
    assert [dl.name for dl in members] == ["report.pdf", "report.pdf"]
    assert len({dl.file_path for dl in members}) == 2


async def test_records_are_flushed_in_batches(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    layers = [
        await _add_file(repository, storage, f"doc{i}.pdf", build_pdf(1), "pdf") for i in range(3)
    ]
    orchestrator = _orchestrator(
        repository, storage, schema_provider, FakeModelClient(buffers=[MATERIALS]), flush_batch_size=3
    )

    job = await orchestrator.submit(material_schema.id, [dl.id for dl in layers])
    await orchestrator.wait_for_background()

    assert repository.insert_batches[job.id] == [4, 2]


async def test_submit_requires_files(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
) -> None:
    orchestrator = _orchestrator(repository, storage, schema_provider, FakeModelClient())
    with pytest.raises(InputError):
        await orchestrator.submit("schema-materials", [])


# ---------------------------------------------------------------------------
# File isolation
# ---------------------------------------------------------------------------


async def test_bad_files_do_not_fail_the_job(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    notes = await _add_file(repository, storage, "notes.txt", b"hello", "other")
    broken = await _add_file(repository, storage, "broken.pdf", b"%PDF-1.7 truncated", "pdf")
    good = await _add_file(repository, storage, "good.pdf", build_pdf(2), "pdf")
    orchestrator = _orchestrator(repository, storage, schema_provider, FakeModelClient(buffers=[MATERIALS]))

    job = await orchestrator.submit(material_schema.id, [notes.id, broken.id, good.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "completed"
    assert job.metadata["summary"]["extracted_files"] == ["good.pdf"]

    statuses = {dl.name: link.status for link, dl in await repository.get_job_data_layers(job.id)}
    assert statuses == {"notes.txt": "completed", "broken.pdf": "failed", "good.pdf": "completed"}

    messages = [entry.message for entry in job.logs]
    assert any("Skipping notes.txt" in m for m in messages)
    assert any("Failed to process broken.pdf" in m for m in messages)


async def test_unreadable_zip_does_not_fail_the_job(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    bundle = build_zip({"ok.pdf": b"%PDF hello world"}).replace(b"hello world", b"jello world")
    broken_zip = await _add_file(repository, storage, "broken.zip", bundle, "zip")
    good = await _add_file(repository, storage, "g.pdf", build_pdf(1), "pdf")
    orchestrator = _orchestrator(repository, storage, schema_provider, FakeModelClient(buffers=[MATERIALS]))

    job = await orchestrator.submit(material_schema.id, [broken_zip.id, good.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "completed", job.error
    assert job.metadata["summary"]["extracted_files"] == ["g.pdf"]
    statuses = {dl.name: link.status for link, dl in await repository.get_job_data_layers(job.id)}
    assert statuses == {"broken.zip": "failed", "g.pdf": "completed"}
    assert any("Could not expand broken.zip" in entry.message for entry in job.logs)


async def test_all_batches_failing_marks_file_failed(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    layer = await _add_file(repository, storage, "doc.pdf", build_pdf(7), "pdf")
    model = FakeModelClient(buffers=[RuntimeError("All LLM providers failed")])
    orchestrator = _orchestrator(repository, storage, schema_provider, model)

    job = await orchestrator.submit(material_schema.id, [layer.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "completed"
    assert job.metadata["summary"]["files_processed"] == 0
    [(link, _)] = await repository.get_job_data_layers(job.id)
    assert link.status == "failed"


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


async def test_agents_post_process_records(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    material_schema: CompiledSchema,
) -> None:
    schema = material_schema.model_copy(
        update={"agents": [AgentDefinition(name="Units", prompt="Add units.", order=1)]}
    )
    layer = await _add_file(repository, storage, "doc.pdf", build_pdf(1), "pdf")
    model = FakeModelClient(
        buffers=[MATERIALS],
        ask=[json.dumps([{"name": "Granite tile", "quantity": 40, "unit": "m2", "confidenceScore": 0.9}])],
    )
    orchestrator = _orchestrator(repository, storage, InMemorySchemaProvider([schema]), model)

    job = await orchestrator.submit(schema.id, [layer.id])
    await orchestrator.wait_for_background()

    [result] = await repository.get_results_by_job(job.id)
    assert result.raw_extraction["unit"] == "m2"
    assert result.source_file_name == "doc.pdf"
    assert [m.status for m in result.agent_execution_metadata] == ["success"]


async def test_failed_agent_keeps_extracted_records(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    material_schema: CompiledSchema,
) -> None:
    schema = material_schema.model_copy(
        update={"agents": [AgentDefinition(name="Units", prompt="Add units.", order=1)]}
    )
    layer = await _add_file(repository, storage, "doc.pdf", build_pdf(1), "pdf")
    model = FakeModelClient(buffers=[MATERIALS], ask=["Sorry, I cannot help with that."])
    orchestrator = _orchestrator(repository, storage, InMemorySchemaProvider([schema]), model)

    job = await orchestrator.submit(schema.id, [layer.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    results = await repository.get_results_by_job(job.id)
    assert len(results) == 2
    assert all(r.agent_execution_metadata[0].status == "failed" for r in results)
    assert job.metadata["summary"]["has_agent_errors"] is True
    assert any("Agent issues detected" in entry.message for entry in job.logs)


# ---------------------------------------------------------------------------
# Job-level failures
# ---------------------------------------------------------------------------


async def test_deadline_fails_job_and_keeps_flushed_records(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    first = await _add_file(repository, storage, "first.pdf", build_pdf(1), "pdf")
    second = await _add_file(repository, storage, "second.pdf", build_pdf(1), "pdf")
    ticks = itertools.count(0, 100)
    orchestrator = _orchestrator(
        repository,
        storage,
        schema_provider,
        FakeModelClient(buffers=[MATERIALS]),
        flush_batch_size=1,
        job_timeout_seconds=150,
        clock=lambda: next(ticks),
    )

    job = await orchestrator.submit(material_schema.id, [first.id, second.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "failed"
    assert "Job timeout exceeded" in job.error
    assert len(await repository.get_results_by_job(job.id)) == 2

    statuses = {dl.name: link.status for link, dl in await repository.get_job_data_layers(job.id)}
    assert statuses == {"first.pdf": "completed", "second.pdf": "failed"}


class _ProgressWritesFail(InMemoryJobRepository):
    """Accepts status changes but loses the connection on batch progress writes."""

    async def update_job_status(self, job_id: str, status: str, progress: int | None = None, **kwargs: Any) -> None:
        if "currentBatch" in (kwargs.get("metadata_patch") or {}):
            raise ConnectionError("database unavailable")
        await super().update_job_status(job_id, status, progress, **kwargs)


async def test_persistence_failure_during_batch_fails_the_job(
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
    material_schema: CompiledSchema,
) -> None:
    repository = _ProgressWritesFail()
    first = await _add_file(repository, storage, "first.pdf", build_pdf(1), "pdf")
    second = await _add_file(repository, storage, "second.pdf", build_pdf(1), "pdf")
    model = FakeModelClient(buffers=[MATERIALS])
    orchestrator = _orchestrator(repository, storage, schema_provider, model)

    job = await orchestrator.submit(material_schema.id, [first.id, second.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "failed"
    assert "database unavailable" in job.error
    assert len(model.buffer_calls) == 1
    statuses = {dl.name: link.status for link, dl in await repository.get_job_data_layers(job.id)}
    assert statuses == {"first.pdf": "failed", "second.pdf": "failed"}


async def test_missing_schema_fails_job(
    repository: InMemoryJobRepository,
    storage: InMemoryStorage,
    schema_provider: InMemorySchemaProvider,
) -> None:
    layer = await _add_file(repository, storage, "doc.pdf", build_pdf(1), "pdf")
    model = FakeModelClient()
    orchestrator = _orchestrator(repository, storage, schema_provider, model)

    job = await orchestrator.submit("no-such-schema", [layer.id])
    await orchestrator.wait_for_background()

    job = await repository.get_job(job.id)
    assert job.status == "failed"
    assert "schema not found" in job.error
    assert job.logs[-1].level == "error"
    [(link, _)] = await repository.get_job_data_layers(job.id)
    assert link.status == "failed"
    assert model.buffer_calls == []
