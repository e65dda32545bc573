"""Shared test fixtures for the MaterialFlow test suite.

No real LLM providers are called: ``FakeModelClient`` replays scripted
responses. PDFs are generated on the fly with PyMuPDF.
"""

from __future__ import annotations

import asyncio
import io
import zipfile
from dataclasses import dataclass
from typing import Any

import fitz  # PyMuPDF
import pytest

from materialflow.modules.extraction.repository import InMemoryJobRepository
from materialflow.modules.extraction.schema_registry import InMemorySchemaProvider
from materialflow.modules.extraction.schemas import CompiledSchema
from materialflow.modules.extraction.storage import InMemoryStorage

# ---------------------------------------------------------------------------
# Fake model client
# ---------------------------------------------------------------------------


@dataclass
class Delayed:
    """Scripted response that only arrives after ``seconds``."""

    seconds: float
    value: Any


class FakeModelClient:
    """Replays scripted responses in call order.

    Script items may be a value, an exception instance (raised), a
    ``Delayed`` wrapper, or a callable taking the user prompt. The last
    item repeats once the script is exhausted.
    """

    def __init__(
        self,
        ask: list[Any] | None = None,
        buffers: list[Any] | None = None,
    ) -> None:
        self.ask_script = list(ask or [])
        self.buffer_script = list(buffers or [])
        self.ask_calls: list[dict[str, Any]] = []
        self.buffer_calls: list[dict[str, Any]] = []

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        schema: Any = None,
        criticality: str = "medium",
        max_output_tokens: int | None = None,
    ) -> Any:
        self.ask_calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "schema": schema,
                "criticality": criticality,
                "max_output_tokens": max_output_tokens,
            }
        )
        return await self._next(self.ask_script, user_prompt)

    async def generate_with_buffers(
        self,
        system_prompt: str,
        user_prompt: str,
        file_bytes: bytes,
        mime_type: str,
        *,
        criticality: str = "medium",
        options: Any = None,
        correlation_id: str | None = None,
    ) -> str:
        self.buffer_calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "file_bytes": file_bytes,
                "mime_type": mime_type,
                "criticality": criticality,
                "options": options,
                "correlation_id": correlation_id,
            }
        )
        return await self._next(self.buffer_script, user_prompt)

    @staticmethod
    async def _next(script: list[Any], prompt: str) -> Any:
        if not script:
            raise AssertionError("Unexpected model call")
        item = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(item, Delayed):
            await asyncio.sleep(item.seconds)
            item = item.value
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(prompt)
        return item


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def build_pdf(pages: int, label: str = "Page") -> bytes:
    doc = fitz.open()
    try:
        for i in range(pages):
            page = doc.new_page()
            page.insert_text((72, 72), f"{label} {i + 1}: Granite tile 600x600, 40 m2")
        return doc.tobytes()
    finally:
        doc.close()


def build_zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Schemas and collaborators
# ---------------------------------------------------------------------------

MATERIAL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "quantity": {"type": "number"},
        "unit": {"type": "string"},
    },
    "required": ["name"],
}


@pytest.fixture
def material_schema() -> CompiledSchema:
    return CompiledSchema(
        id="schema-materials",
        name="Construction Materials",
        json_schema=MATERIAL_SCHEMA,
        prompt="Extract every construction material with its quantity.",
    )


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def schema_provider(material_schema: CompiledSchema) -> InMemorySchemaProvider:
    return InMemorySchemaProvider([material_schema])
