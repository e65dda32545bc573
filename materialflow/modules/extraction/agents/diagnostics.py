"""MaterialFlow agent diagnostics — reliability report over a pipeline run.

Pure aggregation, no LLM calls. Input is the per-record stage history
produced by the executor (``metadata[record][stage]``).
"""

from __future__ import annotations

from typing import Any

from materialflow.modules.extraction.agent_schemas import (
    AgentExecutionMetadata,
    AgentStats,
    PipelineDiagnostics,
)

MAX_SAMPLE_ERRORS = 3
MAX_RECOMMENDATIONS = 5
FAILURE_SHARE_THRESHOLD = 0.2


def analyze_pipeline_execution(
    metadata: list[list[AgentExecutionMetadata]],
    total_agents: int,
) -> PipelineDiagnostics:
    """Summarize per-agent success, failure and timeout counts.

    Overall success rate = success entries / (records x agents) x 100,
    clamped to [0, 100]. An empty run reports 100.
    """
    if not metadata:
        return PipelineDiagnostics(total_agents=total_agents)

    total_results = len(metadata)

    grouped: dict[tuple[str, int], list[AgentExecutionMetadata]] = {}
    for history in metadata:
        for entry in history:
            grouped.setdefault((entry.agent_name, entry.agent_order), []).append(entry)

    stats: list[AgentStats] = []
    critical_issues: list[str] = []

    for (name, order), entries in sorted(grouped.items(), key=lambda kv: kv[0][1]):
        success = sum(1 for e in entries if e.status == "success")
        failures = sum(1 for e in entries if e.status == "failed")
        timeouts = sum(1 for e in entries if e.status == "timeout")
        errors = [e.error or "Unknown error" for e in entries if e.status != "success"]

        agent = AgentStats(
            agent_name=name,
            agent_order=order,
            success_count=success,
            failure_count=failures,
            timeout_count=timeouts,
            success_rate=success / len(entries) * 100,
            errors=errors[:MAX_SAMPLE_ERRORS],
            json_error_count=sum(1 for e in errors if "json" in e.lower()),
            array_error_count=sum(1 for e in errors if "array" in e.lower()),
        )
        stats.append(agent)

        if timeouts > 0:
            critical_issues.append(
                f'Agent "{name}" timed out {timeouts} times (consider increasing timeout)'
            )
        if failures > total_results * FAILURE_SHARE_THRESHOLD:
            critical_issues.append(
                f'Agent "{name}" has {failures} failures '
                f"({agent.success_rate:.1f}% success rate)"
            )
        if errors and agent.json_error_count > len(errors) / 2:
            critical_issues.append(
                f'Agent "{name}" returned invalid JSON {agent.json_error_count} times - review prompt'
            )

    total_success = sum(1 for history in metadata for e in history if e.status == "success")
    if total_agents > 0:
        overall = total_success / (total_results * total_agents) * 100
    else:
        overall = 100.0
    overall = max(0.0, min(100.0, overall))

    successful_agents = sum(1 for s in stats if s.success_rate == 100)

    return PipelineDiagnostics(
        total_results=total_results,
        total_agents=total_agents,
        successful_agents=successful_agents,
        failed_agents=len(stats) - successful_agents,
        overall_success_rate=overall,
        agent_stats=stats,
        critical_issues=critical_issues,
        recommendations=_recommendations(stats, overall),
    )


def _recommendations(stats: list[AgentStats], overall: float) -> list[str]:
    recs: list[str] = []

    if overall < 50:
        recs.append(
            "Overall agent pipeline success rate is very low. "
            "Consider disabling agents or reviewing schemas."
        )
    elif overall < 80:
        recs.append("Agent pipeline success rate below 80%. Review agent prompts for clarity.")

    for agent in stats:
        name = agent.agent_name
        if agent.success_rate < 50:
            recs.append(
                f'Agent "{name}": Success rate {agent.success_rate:.1f}% - likely has unclear '
                "prompt. Rewrite with explicit format requirements."
            )
        if agent.timeout_count > 0:
            recs.append(
                f'Agent "{name}": Timeouts detected. Consider a simpler prompt, '
                "a smaller batch or a higher timeout."
            )
        failed_entries = agent.failure_count + agent.timeout_count
        if failed_entries and agent.json_error_count > failed_entries / 2:
            recs.append(
                f'Agent "{name}": Invalid JSON errors - add to prompt: '
                '"Return ONLY valid JSON. NO markdown code blocks. NO explanations."'
            )
        if agent.array_error_count > 0:
            recs.append(
                f'Agent "{name}": Not returning arrays - ensure prompt says '
                '"Return a JSON array [...]"'
            )

    return recs[:MAX_RECOMMENDATIONS]


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_for_logging(diagnostics: PipelineDiagnostics) -> dict[str, Any]:
    """Flat key/value context for a structlog event."""
    return {
        "total_results": diagnostics.total_results,
        "total_agents": diagnostics.total_agents,
        "successful_agents": diagnostics.successful_agents,
        "failed_agents": diagnostics.failed_agents,
        "overall_success_rate": round(diagnostics.overall_success_rate, 1),
        "issue_count": len(diagnostics.critical_issues),
        "recommendation_count": len(diagnostics.recommendations),
    }


def format_for_display(diagnostics: PipelineDiagnostics) -> str:
    lines = [
        "Agent Pipeline Summary",
        f"Total Results: {diagnostics.total_results}",
        f"Success Rate: {diagnostics.overall_success_rate:.1f}%",
        f"{diagnostics.successful_agents}/{diagnostics.total_agents} agents successful",
    ]
    if diagnostics.critical_issues:
        lines.append("")
        lines.append("Issues:")
        lines.extend(f"- {issue}" for issue in diagnostics.critical_issues)
    if diagnostics.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(f"- {rec}" for rec in diagnostics.recommendations)
    return "\n".join(lines)
