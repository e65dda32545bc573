"""MaterialFlow supplier persistence interface and in-memory implementation."""

from __future__ import annotations

from typing import Protocol

from materialflow.modules.suppliers.schemas import MatchedSupplier, Supplier, SupplierMatch


class SupplierRepository(Protocol):
    async def get_suppliers_by_organization(self, organization_id: str) -> list[Supplier]: ...

    async def create_matches(
        self, extraction_result_id: str, matches: list[MatchedSupplier]
    ) -> list[SupplierMatch]: ...

    async def get_matches(self, extraction_result_id: str) -> list[SupplierMatch]: ...


class InMemorySupplierRepository:
    def __init__(self, suppliers: list[Supplier] | None = None) -> None:
        self.suppliers: list[Supplier] = list(suppliers or [])
        self.matches: dict[str, list[SupplierMatch]] = {}

    async def get_suppliers_by_organization(self, organization_id: str) -> list[Supplier]:
        return [s for s in self.suppliers if s.organization_id == organization_id]

    async def create_matches(
        self, extraction_result_id: str, matches: list[MatchedSupplier]
    ) -> list[SupplierMatch]:
        """Replace the stored matches of one result."""
        created = [
            SupplierMatch(
                extraction_result_id=extraction_result_id,
                supplier_id=m.supplier_id,
                confidence_score=m.confidence_score,
                match_reason=m.match_reason,
            )
            for m in matches
        ]
        self.matches[extraction_result_id] = created
        return created

    async def get_matches(self, extraction_result_id: str) -> list[SupplierMatch]:
        return list(self.matches.get(extraction_result_id, []))
