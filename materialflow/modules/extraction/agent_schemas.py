"""MaterialFlow Agent Contracts — Pydantic models for the post-processing pipeline.

Defines the data structures that flow through the agent stages:
  Schema      -> Executor:     AgentDefinition
  Executor    -> Result:       AgentExecutionMetadata (one per stage)
  Executor    -> Orchestrator: PipelineRunResult
  Validator   -> Executor:     InputValidationReport
  Diagnostics -> Job log:      PipelineDiagnostics
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

AgentStatus = Literal["success", "failed", "timeout"]
FailureMode = Literal["skip_on_error", "individual_fallback"]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class AgentDefinition(BaseModel):
    """One configured post-processing stage, owned by the extraction schema."""

    name: str = Field(..., description="Human-readable agent name")
    prompt: str = Field(..., description="Instruction applied to the record batch")
    order: int = Field(..., ge=1, description="Processing order, ascending")
    enabled: bool = True
    criticality: Literal["high", "medium", "low"] = Field(
        "medium", description="Model tier hint passed to the model client"
    )
    timeout_ms: int = Field(120_000, gt=0)
    retry_count: int = Field(0, ge=0, le=3, description="Additional attempts after the first")
    skip_on_validation_error: bool = False


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


class AgentExecutionMetadata(BaseModel):
    """Outcome of one agent stage. Never modified after creation."""

    model_config = ConfigDict(frozen=True)

    agent_name: str
    agent_order: int
    agent_prompt: str
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0
    status: AgentStatus
    error: str | None = None
    failure_mode: FailureMode | None = Field(
        None, description="Fallback applied after retries ran out"
    )


class PipelineRunResult(BaseModel):
    """Output of one batch pipeline run.

    ``metadata[i]`` is the ordered stage history of ``records[i]``.
    """

    records: list[Any] = Field(default_factory=list)
    metadata: list[list[AgentExecutionMetadata]] = Field(default_factory=list)
    has_errors: bool = False


class SingleRunResult(BaseModel):
    record: Any = None
    metadata: list[AgentExecutionMetadata] = Field(default_factory=list)
    has_errors: bool = False


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InvalidRecord(BaseModel):
    index: int
    error: str


class InputValidationReport(BaseModel):
    valid: list[dict[str, Any]] = Field(default_factory=list)
    invalid: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Records flagged with _validationError / _skipAgents",
    )
    errors: list[InvalidRecord] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.invalid)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class AgentStats(BaseModel):
    agent_name: str
    agent_order: int
    success_count: int = 0
    failure_count: int = 0
    timeout_count: int = 0
    success_rate: float = 0.0
    errors: list[str] = Field(default_factory=list, description="Up to 3 sample errors")
    json_error_count: int = 0
    array_error_count: int = 0


class PipelineDiagnostics(BaseModel):
    total_results: int = 0
    total_agents: int = 0
    successful_agents: int = Field(0, description="Agents with a 100% success rate")
    failed_agents: int = 0
    overall_success_rate: float = Field(100.0, ge=0.0, le=100.0)
    agent_stats: list[AgentStats] = Field(default_factory=list)
    critical_issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
