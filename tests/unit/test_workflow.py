"""Unit tests for job progress, summaries, archive expansion and the in-memory repository."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from materialflow.core.exceptions import InputError, PersistenceError
from materialflow.modules.extraction.archive import ZipArchiveExpander, file_type_for
from materialflow.modules.extraction.repository import InMemoryJobRepository, build_result
from materialflow.modules.extraction.schemas import ExtractionJob
from materialflow.modules.extraction.workflow import (
    JobLog,
    ProgressReporter,
    average_confidence,
    build_summary,
)
from tests.conftest import build_pdf, build_zip

# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("file_index", "total", "fraction", "expected"),
    [(0, 2, 0.0, 0), (0, 2, 0.5, 22), (1, 2, 0.0, 45), (2, 2, 0.0, 90), (0, 3, 1.0, 30), (0, 0, 0.5, 0)],
)
def test_file_progress_spans(file_index: int, total: int, fraction: float, expected: int) -> None:
    assert ProgressReporter.file_progress(file_index, total, fraction) == expected


async def test_progress_never_moves_backwards() -> None:
    repository = InMemoryJobRepository()
    job = await repository.create_job(ExtractionJob(schema_id="s"))
    progress = ProgressReporter(repository, job.id)

    for value in (10, 40, 25, 120):
        await progress.report(value)
    await progress.complete({"summary": {}})

    assert repository.progress_history[job.id] == [0, 10, 40, 40, 99, 100]
    assert repository.jobs[job.id].status == "completed"
    assert repository.jobs[job.id].completed_at is not None


async def test_job_log_appends_entries() -> None:
    repository = InMemoryJobRepository()
    job = await repository.create_job(ExtractionJob(schema_id="s"))

    await JobLog(repository, job.id)("Skipping notes.txt", "warn")

    entry = repository.jobs[job.id].logs[0]
    assert (entry.level, entry.message) == ("warn", "Skipping notes.txt")


async def test_repository_failures_surface_as_persistence_errors() -> None:
    repository = InMemoryJobRepository()
    job = await repository.create_job(ExtractionJob(schema_id="s"))
    repository.update_job_status = AsyncMock(side_effect=ConnectionError("db down"))
    repository.append_job_log = AsyncMock(side_effect=ConnectionError("db down"))

    with pytest.raises(PersistenceError, match="db down"):
        await ProgressReporter(repository, job.id).report(10)
    with pytest.raises(PersistenceError, match="db down"):
        await JobLog(repository, job.id)("hello")


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def test_average_confidence_ignores_missing_and_non_positive() -> None:
    assert average_confidence([0.9, None, 0, "high", True, 0.7]) == 0.8
    assert average_confidence([None]) is None


def test_build_summary() -> None:
    summary = build_summary(
        files_processed=2,
        total_files=3,
        total_records=4,
        confidences=[0.5, 1.0],
        extracted_files=["a.pdf", "b.pdf"],
        has_agent_errors=False,
    )
    assert summary.average_confidence == 0.75
    assert summary.extracted_files == ["a.pdf", "b.pdf"]


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def test_zip_expansion_skips_noise() -> None:
    data = build_zip(
        {
            "specs/floor.pdf": build_pdf(1),
            "__MACOSX/specs/._floor.pdf": b"junk",
            ".DS_Store": b"junk",
            "notes.txt": b"hello",
        }
    )

    members = ZipArchiveExpander().expand(data)

    assert [(m.name, m.mime_type) for m in members] == [
        ("floor.pdf", "application/pdf"),
        ("notes.txt", "text/plain"),
    ]


def test_zip_members_keep_their_relative_paths() -> None:
    data = build_zip({"a/report.pdf": build_pdf(3), "b/report.pdf": build_pdf(2)})

    members = ZipArchiveExpander().expand(data)

    assert [(m.name, m.path) for m in members] == [
        ("report.pdf", "a/report.pdf"),
        ("report.pdf", "b/report.pdf"),
    ]


def test_bad_zip_raises() -> None:
    with pytest.raises(InputError):
        ZipArchiveExpander().expand(b"not a zip")


def test_unreadable_member_raises_input_error() -> None:
    data = build_zip({"ok.pdf": b"%PDF hello world"})
    corrupted = data.replace(b"hello world", b"jello world")

    with pytest.raises(InputError, match="ok.pdf"):
        ZipArchiveExpander().expand(corrupted)


@pytest.mark.parametrize(
    ("name", "mime", "expected"),
    [("a.PDF", None, "pdf"), ("bundle.zip", None, "zip"), ("scan", "application/pdf", "pdf"), ("a.docx", None, "other")],
)
def test_file_type_for(name: str, mime: str | None, expected: str) -> None:
    assert file_type_for(name, mime) == expected


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


def test_build_result_splits_record() -> None:
    result = build_result(
        "job-1",
        {
            "name": "Tile",
            "confidenceScore": 1.4,
            "sourceText": "Tile 600x600",
            "pageNumber": 3,
            "sourceFileName": "a.pdf",
            "agentExecutionMetadata": [
                {"agent_name": "Normalize", "agent_order": 1, "agent_prompt": "p", "status": "success"}
            ],
        },
    )

    assert "agentExecutionMetadata" not in result.raw_extraction
    assert result.raw_extraction["name"] == "Tile"
    assert result.confidence_score == 1.0
    assert (result.evidence.source_text, result.evidence.page_number) == ("Tile 600x600", 3)
    assert result.agent_execution_metadata[0].agent_name == "Normalize"
    assert result.source_file_name == "a.pdf"


async def test_verified_data_merges_and_raw_is_untouched() -> None:
    repository = InMemoryJobRepository()
    job = await repository.create_job(ExtractionJob(schema_id="s"))
    await repository.bulk_insert_results(job.id, [{"name": "Tile", "quantity": 3}])
    result_id = next(iter(repository.results))

    await repository.update_verified_data(result_id, {"quantity": 4})
    result = await repository.update_verified_data(result_id, {"unit": "m2"}, status="accepted")

    assert result.verified_data == {"quantity": 4, "unit": "m2"}
    assert result.raw_extraction == {"name": "Tile", "quantity": 3}
    assert result.status == "accepted"
    assert [r.id for r in await repository.get_approved_results(job.id)] == [result_id]


async def test_unknown_data_layer_status_update_raises() -> None:
    repository = InMemoryJobRepository()
    job = await repository.create_job(ExtractionJob(schema_id="s"))
    with pytest.raises(InputError):
        await repository.update_data_layer_status(job.id, "missing", "completed")
