"""MaterialFlow supplier data model and the matching model-output contract."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


class Supplier(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    name: str
    materials_offered: list[str] = Field(default_factory=list)


class SupplierMatch(BaseModel):
    """A persisted candidate supplier for one extraction result."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    extraction_result_id: str
    supplier_id: str
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    match_reason: str = ""
    is_selected: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Model output
# ---------------------------------------------------------------------------


class SupplierMatchCandidate(BaseModel):
    supplierId: int | str = Field(..., description="Supplier KEY from the prompt (1..N)")
    confidenceScore: float = Field(..., ge=0.0, le=1.0)
    matchReason: str = ""


class SupplierMatchItem(BaseModel):
    extractionResultId: str
    matches: list[SupplierMatchCandidate] = Field(default_factory=list)


class SupplierMatchResponse(BaseModel):
    """Wrapped in an object because structured-output APIs want an object root."""

    results: list[SupplierMatchItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Service output
# ---------------------------------------------------------------------------


class MatchedSupplier(BaseModel):
    supplier_id: str
    confidence_score: float
    match_reason: str = ""


class ResultMatches(BaseModel):
    extraction_result_id: str
    matches: list[MatchedSupplier] = Field(default_factory=list)


class MatchingStats(BaseModel):
    job_id: str
    status: Literal["completed", "failed"] = "completed"
    total_results: int = 0
    matched_results: int = 0
