from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "MaterialFlow"
    debug: bool = False

    # LLM (provider priority, first available wins: google | anthropic)
    llm_provider_priority: list[str] = ["google", "anthropic"]
    google_ai_api_key: str = ""
    anthropic_api_key: str = ""
    llm_request_timeout_ms: int = 240_000

    # Model per criticality
    google_model_high: str = "gemini-2.5-pro"
    google_model_medium: str = "gemini-2.5-flash"
    google_model_low: str = "gemini-2.5-flash-lite"
    anthropic_model_high: str = "claude-sonnet-4@20250514"
    anthropic_model_medium: str = "claude-sonnet-4@20250514"
    anthropic_model_low: str = "claude-3-5-haiku@20241022"

    # Vertex AI (Anthropic Claude via Google Cloud)
    vertex_project_id: str = ""
    vertex_location: str = "europe-west1"
    vertex_credentials_path: str = ""

    # Extraction jobs
    extract_flush_batch_size: int = 10  # clamped to [1, 500]
    extraction_job_timeout_minutes: int = 30

    # PDF batches
    pdf_batch_size: int = 5
    pdf_batch_timeout_seconds: float = 240.0
    pdf_batch_max_output_tokens: int = 16_384
    pdf_batch_temperature: float = 0.2

    # Agent pipeline
    agent_default_timeout_ms: int = 120_000
    agent_single_timeout_seconds: float = 60.0

    # Supplier matching
    supplier_matching_chunk_size: int = 15
    supplier_matching_timeout_seconds: float = 180.0
    supplier_matching_max_output_tokens: int = 8_192

    # Rate limiting (in-memory expiring map)
    rate_limit_max_requests: int = 5
    rate_limit_window_seconds: float = 3600.0
    rate_limit_sweep_interval_seconds: float = 600.0

    @property
    def flush_batch_size(self) -> int:
        return max(1, min(500, self.extract_flush_batch_size))

    @property
    def job_timeout_seconds(self) -> float:
        return self.extraction_job_timeout_minutes * 60.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
