"""MaterialFlow Supplier Matching — accepted results x supplier catalogue.

Flow for one job:
  1. Load the job's accepted results and the organization's suppliers
  2. Key suppliers 1..N (the model answers with keys, never names or ids)
  3. Chunks of 15 results, one model call each, raced against 180s
  4. Keys mapped back to supplier ids, top 3 by confidence kept
  5. Results with at least one match are persisted

A failed chunk (timeout, provider error, unrecoverable output) yields empty
matches for its own results; the other chunks are unaffected.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from materialflow.core.config import settings
from materialflow.core.exceptions import ResponseParseError
from materialflow.core.llm import ModelClient
from materialflow.core.timeouts import race_with_timeout
from materialflow.modules.extraction.parsing import strip_code_fences
from materialflow.modules.extraction.repository import JobRepository
from materialflow.modules.extraction.schemas import ExtractionResult
from materialflow.modules.suppliers.repository import SupplierRepository
from materialflow.modules.suppliers.schemas import (
    MatchedSupplier,
    MatchingStats,
    ResultMatches,
    Supplier,
    SupplierMatchItem,
    SupplierMatchResponse,
)

logger = structlog.get_logger()

MAX_MATCHES_PER_RESULT = 3
MAX_FIELD_LENGTH = 150
MAX_MATERIALS_LENGTH = 200
NO_MATERIALS = "No materials specified"

# Provenance and bookkeeping fields, useless for matching
EXCLUDED_FIELDS = frozenset({
    "boundingBox",
    "sourceText",
    "pageNumber",
    "sourceFileName",
    "sourceDataLayerId",
    "extractionMethod",
    "agentExecutionMetadata",
    "sourceTextIncomplete",
    "missingFieldsInSourceText",
    "snippetImageKey",
})

# Start of a {"extractionResultId": "...", "matches": [...]} pair, up to the opening bracket
PARTIAL_RESULT_PATTERN = re.compile(
    r'"extractionResultId":\s*"([^"]+)",\s*"matches":\s*(?=\[)'
)


# ---------------------------------------------------------------------------
# Prompt inputs
# ---------------------------------------------------------------------------


def chunked(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def summarize_record(data: dict[str, Any]) -> dict[str, str]:
    """Non-empty, non-provenance fields as strings of at most 150 chars."""
    summary: dict[str, str] = {}
    for key, value in (data or {}).items():
        if value is None or value == "" or key in EXCLUDED_FIELDS:
            continue
        text = json.dumps(value, ensure_ascii=False) if isinstance(value, (dict, list)) else str(value)
        if not text or text == "null":
            continue
        summary[key] = text[:MAX_FIELD_LENGTH] + "..." if len(text) > MAX_FIELD_LENGTH else text
    return summary


def summarize_materials(materials_offered: Any) -> str:
    """Join materials with '; ' within 200 chars, dropping whole items that don't fit."""
    if not materials_offered:
        return NO_MATERIALS

    if not isinstance(materials_offered, list):
        text = str(materials_offered)
        return text[:MAX_MATERIALS_LENGTH] + "..." if len(text) > MAX_MATERIALS_LENGTH else text

    materials = [str(m).strip() for m in materials_offered if str(m).strip()]
    if not materials:
        return NO_MATERIALS

    joined = "; ".join(materials)
    if len(joined) <= MAX_MATERIALS_LENGTH:
        return joined

    truncated = ""
    for material in materials:
        if len(truncated) + len(material) + 2 > MAX_MATERIALS_LENGTH - 5:
            truncated += "..."
            break
        truncated += ("; " if truncated else "") + material

    if truncated == "...":
        return joined[:MAX_MATERIALS_LENGTH] + "..."
    return truncated


def build_matching_prompt(results: list[ExtractionResult], suppliers: list[Supplier]) -> str:
    records = [{"id": r.id, **summarize_record(r.data)} for r in results]
    catalogue = [
        {"key": i, "name": s.name, "materials": summarize_materials(s.materials_offered)}
        for i, s in enumerate(suppliers, start=1)
    ]

    return f"""# Supplier Matching Task

You are an expert procurement assistant matching construction material extraction results with suppliers.

## Your Goal
For each extraction result, identify the TOP 3 BEST suppliers who can provide the required materials.
Be selective - only match suppliers who can actually fulfill the requirements.

## Extraction Results ({len(records)} items)
{json.dumps(records, indent=2, ensure_ascii=False)}

## Available Suppliers ({len(catalogue)} suppliers)
Reference suppliers by their KEY, not their name.
{json.dumps(catalogue, indent=2, ensure_ascii=False)}

## Matching Criteria (in order of importance)
1. Material Type Match: does the supplier offer this specific material type?
2. Specifications: can the supplier meet grade, size, finish and similar specs?
3. Quantity Capability: can the supplier handle the required quantity?
4. Quality Standards: does the supplier meet quality requirements?

## Confidence Score Guidelines
- 0.9-1.0: supplier explicitly offers this exact material with matching specs
- 0.7-0.89: supplier offers this material type, specs likely compatible
- 0.5-0.69: supplier offers similar materials, may need verification
- Below 0.5: only use if no better options exist

## Output Format
Return a JSON object with a "results" array. Use supplier KEY (1, 2, 3, ...) not names:
{{
  "results": [
    {{
      "extractionResultId": "result-id-1",
      "matches": [
        {{"supplierId": 1, "confidenceScore": 0.95, "matchReason": "Offers granite border matching specs"}}
      ]
    }}
  ]
}}

## Critical Rules
- Return at most 3 matches per result
- If NO suppliers match, return an empty matches array: []
- Match reasons should be concise (under 80 chars)
- Every extraction result must appear in the results array

Begin matching now:"""


# ---------------------------------------------------------------------------
# Model output
# ---------------------------------------------------------------------------


def _array_end(text: str, start: int) -> int | None:
    """Index just past the bracket closing the array at ``start``; None if truncated."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def recover_partial_results(text: str) -> list[SupplierMatchItem]:
    """Pull complete result objects out of a truncated response."""
    recovered: list[SupplierMatchItem] = []
    for match in PARTIAL_RESULT_PATTERN.finditer(text):
        end = _array_end(text, match.end())
        if end is None:
            continue
        try:
            recovered.append(
                SupplierMatchItem(
                    extractionResultId=match.group(1),
                    matches=json.loads(text[match.end():end]),
                )
            )
        except (json.JSONDecodeError, ValidationError):
            continue
    return recovered


def _extract_json(text: str) -> str:
    cleaned = strip_code_fences(text)
    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    return cleaned[min(starts):] if starts else cleaned


def parse_match_response(output: Any) -> list[SupplierMatchItem]:
    """Typed response, JSON text, or partial recovery, in that order.

    Raises:
        ResponseParseError: nothing usable in the response.
    """
    if isinstance(output, SupplierMatchResponse):
        return output.results
    if isinstance(output, BaseModel):
        return SupplierMatchResponse.model_validate(output.model_dump()).results
    if not isinstance(output, str):
        raise ResponseParseError(f"Unexpected matching output type: {type(output).__name__}")

    cleaned = _extract_json(output)
    try:
        parsed = json.loads(cleaned)
        items = parsed.get("results", parsed) if isinstance(parsed, dict) else parsed
        if not isinstance(items, list):
            raise ResponseParseError("Model must return an array of match results")
        return SupplierMatchResponse(results=items).results
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Failed to parse matching response", preview=output[:500], error=str(e))
        recovered = recover_partial_results(cleaned or output)
        if recovered:
            logger.warning("Recovered partial matching results", count=len(recovered))
            return recovered
        raise ResponseParseError(f"Model returned invalid JSON: {e}") from e


def map_supplier_keys(
    items: list[SupplierMatchItem], lookup: dict[int, str]
) -> dict[str, list[MatchedSupplier]]:
    """Resolve keys to supplier ids; keep the 3 most confident matches."""
    mapped: dict[str, list[MatchedSupplier]] = {}
    for item in items:
        matches = []
        for candidate in item.matches:
            try:
                supplier_id = lookup.get(int(str(candidate.supplierId).strip()))
            except ValueError:
                supplier_id = None
            if supplier_id is None:
                continue
            matches.append(
                MatchedSupplier(
                    supplier_id=supplier_id,
                    confidence_score=candidate.confidenceScore,
                    match_reason=candidate.matchReason,
                )
            )
        matches.sort(key=lambda m: m.confidence_score, reverse=True)
        mapped.setdefault(item.extractionResultId, matches[:MAX_MATCHES_PER_RESULT])
    return mapped


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SupplierMatchingService:
    def __init__(
        self,
        model: ModelClient,
        results: JobRepository,
        suppliers: SupplierRepository,
        chunk_size: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.model = model
        self.results = results
        self.suppliers = suppliers
        self.chunk_size = chunk_size or settings.supplier_matching_chunk_size
        self.timeout_seconds = timeout_seconds or settings.supplier_matching_timeout_seconds

    async def match_job(self, job_id: str, organization_id: str) -> MatchingStats:
        """Match every accepted result of ``job_id`` and persist the matches."""
        try:
            results = await self.results.get_approved_results(job_id)
            if not results:
                logger.warning("No approved extraction results", job_id=job_id)
                return MatchingStats(job_id=job_id)

            suppliers = await self.suppliers.get_suppliers_by_organization(organization_id)
            if not suppliers:
                logger.warning("No suppliers for organization", organization_id=organization_id)
                return MatchingStats(job_id=job_id, total_results=len(results))

            logger.info(
                "Supplier matching started",
                job_id=job_id,
                results=len(results),
                suppliers=len(suppliers),
            )
            matched = 0
            for result_matches in await self.batch_match(results, suppliers):
                if result_matches.matches:
                    await self.suppliers.create_matches(
                        result_matches.extraction_result_id, result_matches.matches
                    )
                    matched += 1

        except Exception:
            logger.exception("Supplier matching failed", job_id=job_id)
            return MatchingStats(job_id=job_id, status="failed")

        logger.info("Supplier matching complete", job_id=job_id, matched=matched, total=len(results))
        return MatchingStats(job_id=job_id, total_results=len(results), matched_results=matched)

    async def batch_match(
        self, results: list[ExtractionResult], suppliers: list[Supplier]
    ) -> list[ResultMatches]:
        """One entry per input result, in input order."""
        lookup = {i: s.id for i, s in enumerate(suppliers, start=1)}
        chunks = chunked(results, self.chunk_size)
        logger.info("Matching in chunks", results=len(results), chunks=len(chunks), chunk_size=self.chunk_size)

        output: list[ResultMatches] = []
        for index, chunk in enumerate(chunks, start=1):
            mapped = await self._match_chunk(index, len(chunks), chunk, suppliers, lookup)
            output.extend(
                ResultMatches(extraction_result_id=r.id, matches=mapped.get(r.id, []))
                for r in chunk
            )
        return output

    async def _match_chunk(
        self,
        index: int,
        total: int,
        chunk: list[ExtractionResult],
        suppliers: list[Supplier],
        lookup: dict[int, str],
    ) -> dict[str, list[MatchedSupplier]]:
        start = time.time()
        try:
            raw = await race_with_timeout(
                self.model.ask(
                    "",
                    build_matching_prompt(chunk, suppliers),
                    schema=SupplierMatchResponse,
                    criticality="high",
                    max_output_tokens=settings.supplier_matching_max_output_tokens,
                ),
                self.timeout_seconds,
                "Matching timeout",
            )
            mapped = map_supplier_keys(parse_match_response(raw), lookup)
        except Exception as e:
            logger.error(
                "Matching chunk failed",
                chunk=index,
                chunks=total,
                batch_size=len(chunk),
                suppliers=len(suppliers),
                error=str(e),
            )
            return {}

        logger.info(
            "Matching chunk complete",
            chunk=index,
            chunks=total,
            matches=sum(len(m) for m in mapped.values()),
            duration_ms=int((time.time() - start) * 1000),
        )
        return mapped
