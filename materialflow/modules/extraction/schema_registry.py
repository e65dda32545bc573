"""MaterialFlow schema provider — resolves a schema id to a CompiledSchema."""

from __future__ import annotations

from typing import Protocol

from materialflow.modules.extraction.schemas import CompiledSchema


class SchemaProvider(Protocol):
    async def get_and_compile_by_id(self, schema_id: str) -> CompiledSchema | None: ...


class InMemorySchemaProvider:
    def __init__(self, schemas: list[CompiledSchema] | None = None) -> None:
        self._schemas = {s.id: s for s in schemas or []}

    def register(self, schema: CompiledSchema) -> None:
        self._schemas[schema.id] = schema

    async def get_and_compile_by_id(self, schema_id: str) -> CompiledSchema | None:
        return self._schemas.get(schema_id)
