"""MaterialFlow agent post-processing.

Agents are schema-configured LLM stages run in order over a file's records:
  Validator   — structural pre-check, invalid records bypass the agents
  Executor    — batch (one call per stage) and single-record modes
  Diagnostics — per-agent reliability report over the stage metadata
"""
