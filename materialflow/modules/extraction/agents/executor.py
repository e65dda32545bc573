"""MaterialFlow Agent Pipeline Executor — sequential LLM post-processing stages.

Batch mode (default):
  For each enabled agent, ordered by ``order``:
    1. One prompt carrying ALL current records + the agent instruction
    2. Model call raced against ``timeout_ms`` (timed-out calls are abandoned)
    3. Output must be a JSON array; it becomes the next stage's input
    4. On failure: up to ``retry_count`` more attempts, no backoff, then the
       stage's input is forwarded unchanged and the stage is marked failed
       or timeout. A failed stage never stops later stages.

Single mode:
  One call per agent for one record, low criticality, 60s timeout, no retries.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from materialflow.core.config import settings
from materialflow.core.exceptions import CallTimeoutError, ResponseParseError
from materialflow.core.llm import ModelClient
from materialflow.core.timeouts import race_with_timeout
from materialflow.modules.extraction.agent_schemas import (
    AgentDefinition,
    AgentExecutionMetadata,
    FailureMode,
    PipelineRunResult,
    SingleRunResult,
)
from materialflow.modules.extraction.parsing import parse_json_array, strip_code_fences
from materialflow.modules.extraction.prompts import (
    build_agent_batch_prompt,
    build_agent_single_prompt,
)

logger = structlog.get_logger()

AGENT_TIMEOUT_MESSAGE = "Agent execution timeout"


@dataclass
class SchemaContext:
    """Schema name and record definition shown to every agent."""

    name: str
    definition: dict[str, Any] = field(default_factory=dict)


def active_agents(agents: list[AgentDefinition]) -> list[AgentDefinition]:
    """Enabled agents in processing order."""
    return sorted((a for a in agents if a.enabled), key=lambda a: a.order)


class AgentPipelineExecutor:
    """Runs a schema's agents over extracted records."""

    def __init__(
        self,
        model: ModelClient,
        single_timeout_seconds: float | None = None,
    ) -> None:
        self.model = model
        self.single_timeout_seconds = (
            single_timeout_seconds or settings.agent_single_timeout_seconds
        )

    # ------------------------------------------------------------------
    # Batch mode
    # ------------------------------------------------------------------

    async def execute_batch(
        self,
        agents: list[AgentDefinition],
        records: list[Any],
        schema_context: SchemaContext,
    ) -> PipelineRunResult:
        """Run every enabled agent over the whole record batch.

        Every stage acts on all records at once, so each final record shares
        the same ordered stage history.
        """
        ordered = active_agents(agents)
        if not ordered or not records:
            return PipelineRunResult(
                records=list(records),
                metadata=[[] for _ in records],
                has_errors=False,
            )

        logger.info(
            "Agent pipeline started",
            records=len(records),
            agents=[(a.name, a.order, a.criticality) for a in ordered],
        )

        current = records
        history: list[AgentExecutionMetadata] = []
        has_errors = False

        for agent in ordered:
            output, entry = await self._run_batch_stage(agent, current, schema_context)
            history.append(entry)
            if entry.status == "success":
                current = output
            else:
                has_errors = True

        logger.info(
            "Agent pipeline complete",
            input_records=len(records),
            output_records=len(current),
            has_errors=has_errors,
        )

        return PipelineRunResult(
            records=current,
            metadata=[list(history) for _ in current],
            has_errors=has_errors,
        )

    async def _run_batch_stage(
        self,
        agent: AgentDefinition,
        records: list[Any],
        schema_context: SchemaContext,
    ) -> tuple[list[Any], AgentExecutionMetadata]:
        start = time.time()
        timeout_seconds = (agent.timeout_ms or settings.agent_default_timeout_ms) / 1000
        prompt = build_agent_batch_prompt(
            agent.prompt, records, schema_context.name, schema_context.definition
        )
        last_error: Exception | None = None

        for attempt in range(agent.retry_count + 1):
            try:
                raw = await race_with_timeout(
                    self.model.ask("", prompt, criticality=agent.criticality),
                    timeout_seconds,
                    AGENT_TIMEOUT_MESSAGE,
                )
                output = raw if isinstance(raw, list) else parse_json_array(str(raw))
                return output, AgentExecutionMetadata(
                    agent_name=agent.name,
                    agent_order=agent.order,
                    agent_prompt=agent.prompt,
                    duration_ms=int((time.time() - start) * 1000),
                    status="success",
                )
            except Exception as e:
                last_error = e
                if attempt < agent.retry_count:
                    logger.warning(
                        "Agent batch retry",
                        agent=agent.name,
                        attempt=attempt + 1,
                        max_retries=agent.retry_count,
                        error=str(e),
                    )

        failure_mode: FailureMode = (
            "skip_on_error" if agent.skip_on_validation_error else "individual_fallback"
        )
        timed_out = isinstance(last_error, CallTimeoutError)
        status = "timeout" if timed_out and failure_mode == "individual_fallback" else "failed"

        logger.warning(
            "Agent batch fallback",
            agent=agent.name,
            order=agent.order,
            batch_size=len(records),
            failure_mode=failure_mode,
            status=status,
            error=str(last_error),
        )

        return records, AgentExecutionMetadata(
            agent_name=agent.name,
            agent_order=agent.order,
            agent_prompt=agent.prompt,
            duration_ms=int((time.time() - start) * 1000),
            status=status,
            error=str(last_error),
            failure_mode=failure_mode,
        )

    # ------------------------------------------------------------------
    # Single-record mode
    # ------------------------------------------------------------------

    async def execute_single(
        self,
        agents: list[AgentDefinition],
        record: Any,
        schema_context: SchemaContext,
    ) -> SingleRunResult:
        current = record
        history: list[AgentExecutionMetadata] = []
        has_errors = False

        for agent in active_agents(agents):
            start = time.time()
            prompt = build_agent_single_prompt(
                agent.prompt, current, schema_context.name, schema_context.definition
            )
            try:
                raw = await race_with_timeout(
                    self.model.ask("", prompt, criticality="low"),
                    self.single_timeout_seconds,
                    AGENT_TIMEOUT_MESSAGE,
                )
                output = raw if not isinstance(raw, str) else _parse_any(raw)
            except Exception as e:
                timed_out = isinstance(e, CallTimeoutError)
                logger.error(
                    "Agent timed out" if timed_out else "Agent failed",
                    agent=agent.name,
                    order=agent.order,
                    error=str(e),
                )
                history.append(
                    AgentExecutionMetadata(
                        agent_name=agent.name,
                        agent_order=agent.order,
                        agent_prompt=agent.prompt,
                        duration_ms=int((time.time() - start) * 1000),
                        status="timeout" if timed_out else "failed",
                        error=str(e),
                    )
                )
                has_errors = True
                continue

            history.append(
                AgentExecutionMetadata(
                    agent_name=agent.name,
                    agent_order=agent.order,
                    agent_prompt=agent.prompt,
                    duration_ms=int((time.time() - start) * 1000),
                    status="success",
                )
            )
            current = output

        return SingleRunResult(record=current, metadata=history, has_errors=has_errors)


def _parse_any(raw: str) -> Any:
    try:
        return json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Agent returned invalid JSON: {e.msg}") from e
