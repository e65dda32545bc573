"""MaterialFlow prompt templates — PDF batch extraction and agent stages."""

from __future__ import annotations

import json
from typing import Any

from materialflow.modules.extraction.schemas import CompiledSchema

_BASE_SYSTEM_PROMPT = (
    "You are an expert document extraction system specialized in processing PDF documents."
)

_EXTRACTION_RULES = """\
CRITICAL INSTRUCTIONS FOR MULTI-PAGE ITEMS:
- Items may span across multiple pages within this batch
- If an item spans pages within this batch, combine the information into ONE complete item
- An item cut off at the first or last page of this batch may continue in a neighbouring batch; extract what is visible
- Include all page numbers where the item appears in the location field

CRITICAL RULES FOR MISSING DATA:
- If you cannot find a value for a field, use null or empty string ("")
- NEVER use field descriptions, instructions, or placeholder text as values
- Only extract actual data you can see in the document

EVIDENCE REQUIREMENTS:
For EACH extracted item, you MUST also include:
- sourceText: a brief snippet (max 150 chars) showing the key identifying information.
  Use ellipsis (...) to shorten, and always close the quotes.
- location: brief location reference (e.g. 'Page 3', 'Pages 5-7')

JSON FORMATTING REQUIREMENTS:
- EVERY string must have properly closed quotes
- Return ONLY valid, parseable JSON and ALWAYS close the array with ]
- If the response is getting long, extract fewer details per item"""


# ---------------------------------------------------------------------------
# PDF batch extraction
# ---------------------------------------------------------------------------


def build_pdf_extraction_prompt(
    schema: CompiledSchema,
    start_page: int,
    end_page: int,
    total_pages: int,
) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for one page batch."""
    system_prompt = _BASE_SYSTEM_PROMPT
    if schema.prompt:
        system_prompt += f" {schema.prompt}"
    else:
        system_prompt += " Extract all materials and items from the document."

    batch_context = (
        f"DOCUMENT CONTEXT: You are viewing pages {start_page}-{end_page} "
        f"of a {total_pages}-page document."
    )

    field_lines = []
    for field_name, field_schema in (schema.json_schema.get("properties") or {}).items():
        if isinstance(field_schema, dict) and field_schema.get("extractionInstructions"):
            title = field_schema.get("title") or field_name
            field_lines.append(f"- {title}: {field_schema['extractionInstructions']}")

    parts = [f"You are viewing a PDF document.\n\n{batch_context}\n\nExtract all items from the provided pages."]
    output_schema = schema.output_schema or schema.json_schema
    if output_schema:
        parts.append(
            "Extract data according to this OUTPUT STRUCTURE:\n"
            + json.dumps(output_schema, indent=2, ensure_ascii=False)
        )
    if field_lines:
        parts.append("FIELD EXTRACTION INSTRUCTIONS:\n" + "\n".join(field_lines))
    if schema.examples:
        parts.append(
            "EXAMPLES OF CORRECTLY EXTRACTED ITEMS:\n"
            + json.dumps(schema.examples[:3], indent=2, ensure_ascii=False)
        )
    parts.append(_EXTRACTION_RULES)
    parts.append(
        "Return the extracted data as a JSON array of items, "
        "with sourceText and location fields added."
    )

    return system_prompt, "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Agent stages
# ---------------------------------------------------------------------------


def build_agent_batch_prompt(
    agent_prompt: str,
    records: list[Any],
    schema_name: str,
    schema_definition: dict[str, Any],
) -> str:
    count = len(records)
    return f"""\
# Batch Post-Processing Task

You are processing {count} extraction results from the schema: {schema_name}

## Your Task
{agent_prompt}

## Current Data (Array of {count} results)
{json.dumps(records, indent=2, ensure_ascii=False, default=str)}

## Schema Structure (for reference)
{json.dumps(schema_definition, indent=2, ensure_ascii=False)}

## Critical Instructions
1. Process ALL {count} results according to your task
2. Return ONLY a valid JSON ARRAY - nothing else
3. DO NOT include markdown code blocks or explanations
4. The output array length may differ from input (filtering/deduplicating is OK)
5. Each result MUST be a valid object matching the schema

First character must be [ and last character must be ]."""


def build_agent_single_prompt(
    agent_prompt: str,
    record: Any,
    schema_name: str,
    schema_definition: dict[str, Any],
) -> str:
    return f"""\
# Post-Processing Task

You are processing extraction results from the schema: {schema_name}

## Your Task
{agent_prompt}

## Current Data
{json.dumps(record, indent=2, ensure_ascii=False, default=str)}

## Schema Structure (for reference)
{json.dumps(schema_definition, indent=2, ensure_ascii=False)}

## Critical Instructions
1. Process the data according to your task
2. Return ONLY valid JSON - no markdown code blocks, no explanations
3. Maintain the schema structure"""
