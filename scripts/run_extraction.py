#!/usr/bin/env python3
"""MaterialFlow Extraction Runner — run one extraction job over local files.

Loads PDFs and zip archives from disk into in-memory storage, runs the full
job pipeline (zip expansion, PDF batches, agents) against the configured
LLM providers, and writes the persisted results to JSON.

Usage:
    # Extract with a schema definition
    python -m scripts.run_extraction tender.zip --schema schemas/materials.json

    # Several files, smaller flush batches
    python -m scripts.run_extraction a.pdf b.pdf --schema s.json --flush-size 5

    # Accept everything and match against a supplier catalogue
    python -m scripts.run_extraction a.pdf --schema s.json \\
        --suppliers suppliers.json --organization org-1
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

# Add project root to path for imports
_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_root))

# Load .env before importing materialflow modules
from dotenv import load_dotenv
load_dotenv(_root / ".env")

import structlog

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

from materialflow.core.llm import LLMService
from materialflow.modules.extraction.archive import file_type_for, guess_mime_type
from materialflow.modules.extraction.orchestrator import JobOrchestrator
from materialflow.modules.extraction.repository import InMemoryJobRepository
from materialflow.modules.extraction.schema_registry import InMemorySchemaProvider
from materialflow.modules.extraction.schemas import CompiledSchema, DataLayer
from materialflow.modules.extraction.storage import InMemoryStorage
from materialflow.modules.suppliers.matching import SupplierMatchingService
from materialflow.modules.suppliers.repository import InMemorySupplierRepository
from materialflow.modules.suppliers.schemas import Supplier

logger = structlog.get_logger()

DEFAULT_OUTPUT = _root / "output" / "extraction_results.json"


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


async def run_job(
    files: list[Path],
    schema: CompiledSchema,
    output_path: Path,
    *,
    flush_size: int | None = None,
    timeout_minutes: int | None = None,
    suppliers: list[Supplier] | None = None,
    organization_id: str | None = None,
) -> int:
    repository = InMemoryJobRepository()
    storage = InMemoryStorage()
    model = LLMService()

    data_layer_ids = []
    for path in files:
        mime_type = guess_mime_type(path.name)
        stored = await storage.put_bytes(f"uploads/{path.name}", path.read_bytes(), mime_type)
        data_layer = await repository.create_data_layer(
            DataLayer(
                name=path.name,
                file_type=file_type_for(path.name, mime_type),
                file_path=stored,
                mime_type=mime_type,
            )
        )
        data_layer_ids.append(data_layer.id)

    orchestrator = JobOrchestrator(
        repository,
        storage,
        InMemorySchemaProvider([schema]),
        model,
        flush_batch_size=flush_size,
        job_timeout_seconds=timeout_minutes * 60 if timeout_minutes else None,
    )

    start = time.time()
    job = await orchestrator.submit(schema.id, data_layer_ids, organization_id=organization_id)
    await orchestrator.wait_for_background()
    job = await repository.get_job(job.id)
    results = await repository.get_results_by_job(job.id)

    print()
    print("=" * 80)
    print(f"  Job {job.id}: {job.status.upper()} in {time.time() - start:.1f}s")
    print("=" * 80)
    for entry in job.logs:
        print(f"  [{entry.level:5s}] {entry.message}")
    if job.error:
        print(f"\n  Error: {job.error}")

    matches: dict[str, list[dict]] = {}
    if suppliers and organization_id and results:
        for result in results:
            await repository.update_result_status(result.id, "accepted")
        supplier_repository = InMemorySupplierRepository(suppliers)
        stats = await SupplierMatchingService(model, repository, supplier_repository).match_job(
            job.id, organization_id
        )
        print(f"\n  Supplier matching: {stats.matched_results}/{stats.total_results} results matched")
        for result in results:
            matches[result.id] = [
                m.model_dump(mode="json") for m in await supplier_repository.get_matches(result.id)
            ]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "job": job.model_dump(mode="json"),
        "results": [
            {**r.model_dump(mode="json"), "supplier_matches": matches.get(r.id, [])}
            for r in results
        ],
    }
    output_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False))
    print(f"\n  {len(results)} results written to {output_path}")

    return 0 if job.status == "completed" else 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(
        description="MaterialFlow Extraction — run one extraction job over local PDFs and zips"
    )
    parser.add_argument("files", type=Path, nargs="+", help="PDF or zip files to extract")
    parser.add_argument(
        "--schema", type=Path, required=True,
        help="JSON file with the compiled schema (id, name, json_schema, prompt, agents)"
    )
    parser.add_argument(
        "--output", type=Path, default=DEFAULT_OUTPUT,
        help=f"Output JSON path (default: {DEFAULT_OUTPUT})"
    )
    parser.add_argument(
        "--flush-size", type=int, default=None,
        help="Records per database flush (default: from config)"
    )
    parser.add_argument(
        "--timeout-minutes", type=int, default=None,
        help="Job wall-clock limit (default: from config)"
    )
    parser.add_argument(
        "--suppliers", type=Path, default=None,
        help="JSON list of suppliers; accepts all results and runs supplier matching"
    )
    parser.add_argument("--organization", type=str, default=None, help="Organization id")

    args = parser.parse_args()

    missing = [str(p) for p in args.files if not p.exists()]
    if missing:
        parser.error(f"File(s) not found: {', '.join(missing)}")

    schema = CompiledSchema.model_validate_json(args.schema.read_text())
    suppliers = None
    if args.suppliers:
        suppliers = [Supplier.model_validate(s) for s in json.loads(args.suppliers.read_text())]

    exit_code = asyncio.run(
        run_job(
            args.files,
            schema,
            args.output,
            flush_size=args.flush_size,
            timeout_minutes=args.timeout_minutes,
            suppliers=suppliers,
            organization_id=args.organization,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
