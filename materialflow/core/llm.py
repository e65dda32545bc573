"""MaterialFlow LLM service — provider fallback, model choice by criticality.

Providers are tried in ``settings.llm_provider_priority`` order until one
answers:
  - google (Gemini via google-genai)
  - anthropic (Claude via direct API or Vertex AI)

Both SDKs are synchronous; calls run in a worker thread so the event loop
stays free while a request is in flight. Callers that need a timeout wrap
the coroutine with ``race_with_timeout``.
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
import time
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog
from pydantic import BaseModel, ValidationError

from materialflow.core.config import settings
from materialflow.core.exceptions import ExternalCallError
from materialflow.modules.extraction.parsing import strip_code_fences

logger = structlog.get_logger()

Criticality = Literal["high", "medium", "low"]


@dataclass
class LLMOptions:
    temperature: float | None = None
    max_output_tokens: int | None = None
    timeout_ms: int | None = None


class ModelClient(Protocol):
    """What the pipeline needs from a language model."""

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        schema: type[BaseModel] | None = None,
        criticality: Criticality = "medium",
        max_output_tokens: int | None = None,
    ) -> str | BaseModel: ...

    async def generate_with_buffers(
        self,
        system_prompt: str,
        user_prompt: str,
        file_bytes: bytes,
        mime_type: str,
        *,
        criticality: Criticality = "medium",
        options: LLMOptions | None = None,
        correlation_id: str | None = None,
    ) -> str: ...


def _validate_typed(raw_text: str, schema: type[BaseModel]) -> str | BaseModel:
    """Typed model when the text validates, otherwise the raw text for the caller to repair."""
    try:
        return schema.model_validate_json(strip_code_fences(raw_text))
    except ValidationError as e:
        logger.warning(
            "Typed response validation failed, returning raw text",
            schema=schema.__name__,
            errors=e.error_count(),
            preview=raw_text[:200],
        )
        return raw_text


class LLMService:
    """Concrete ModelClient backed by the Gemini and Anthropic SDKs."""

    def __init__(self, providers: list[str] | None = None) -> None:
        self.providers = providers or list(settings.llm_provider_priority)

        # Lazy-initialized clients
        self._gemini_client: Any = None
        self._anthropic_client: Any = None
        self._is_vertex = False

    # ------------------------------------------------------------------
    # Model selection
    # ------------------------------------------------------------------

    @staticmethod
    def select_model(provider: str, criticality: Criticality) -> str:
        model = getattr(settings, f"{provider}_model_{criticality}", "")
        if not model:
            raise ExternalCallError(f"No model configured for {provider}/{criticality}")
        return model

    # ------------------------------------------------------------------
    # LLM client builders (lazy)
    # ------------------------------------------------------------------

    def _get_gemini_client(self) -> Any:
        """Get or create the Gemini client."""
        if self._gemini_client is None:
            from google import genai
            from google.genai import types as genai_types

            self._gemini_client = genai.Client(
                api_key=settings.google_ai_api_key,
                http_options=genai_types.HttpOptions(timeout=settings.llm_request_timeout_ms),
            )
        return self._gemini_client

    def _get_anthropic_client(self) -> Any:
        """Get or create the Anthropic client (direct or Vertex AI)."""
        if self._anthropic_client is None:
            import anthropic

            if settings.vertex_credentials_path:
                os.environ.setdefault(
                    "GOOGLE_APPLICATION_CREDENTIALS",
                    settings.vertex_credentials_path,
                )
                self._anthropic_client = anthropic.AnthropicVertex(
                    project_id=settings.vertex_project_id,
                    region=settings.vertex_location,
                )
                self._is_vertex = True
            else:
                self._anthropic_client = anthropic.Anthropic(
                    api_key=settings.anthropic_api_key,
                )
                self._is_vertex = False

        return self._anthropic_client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        schema: type[BaseModel] | None = None,
        criticality: Criticality = "medium",
        max_output_tokens: int | None = None,
    ) -> str | BaseModel:
        options = LLMOptions(max_output_tokens=max_output_tokens)
        raw_text = await self._with_fallback(
            system_prompt, user_prompt,
            criticality=criticality,
            options=options,
            response_schema=schema,
        )
        if schema is None:
            return raw_text
        return _validate_typed(raw_text, schema)

    async def generate_with_buffers(
        self,
        system_prompt: str,
        user_prompt: str,
        file_bytes: bytes,
        mime_type: str,
        *,
        criticality: Criticality = "medium",
        options: LLMOptions | None = None,
        correlation_id: str | None = None,
    ) -> str:
        return await self._with_fallback(
            system_prompt, user_prompt,
            criticality=criticality,
            options=options or LLMOptions(),
            attachment=(file_bytes, mime_type),
            correlation_id=correlation_id,
        )

    # ------------------------------------------------------------------
    # Provider fallback
    # ------------------------------------------------------------------

    async def _with_fallback(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        criticality: Criticality,
        options: LLMOptions,
        response_schema: type[BaseModel] | None = None,
        attachment: tuple[bytes, str] | None = None,
        correlation_id: str | None = None,
    ) -> str:
        errors: list[str] = []

        for provider in self.providers:
            try:
                model = self.select_model(provider, criticality)
                if provider == "google":
                    call = self._call_gemini
                elif provider == "anthropic":
                    call = self._call_anthropic
                else:
                    raise ValueError(f"Unsupported provider: {provider}")

                return await asyncio.to_thread(
                    call, model, system_prompt, user_prompt,
                    options=options,
                    response_schema=response_schema,
                    attachment=attachment,
                    correlation_id=correlation_id,
                )
            except Exception as e:
                logger.warning(
                    "LLM provider failed",
                    provider=provider,
                    criticality=criticality,
                    correlation_id=correlation_id,
                    error=str(e),
                )
                errors.append(f"{provider}: {e}")

        logger.error(
            "All LLM providers failed",
            criticality=criticality,
            correlation_id=correlation_id,
            attempts=errors,
        )
        raise ExternalCallError(
            f"All LLM providers failed for {criticality} criticality task. "
            f"Attempts: {'; '.join(errors)}"
        )

    def _call_gemini(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        *,
        options: LLMOptions,
        response_schema: type[BaseModel] | None = None,
        attachment: tuple[bytes, str] | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Call Gemini and return the raw response text."""
        from google.genai import types

        client = self._get_gemini_client()
        start = time.time()

        config_kwargs: dict[str, Any] = {}
        if system_prompt:
            config_kwargs["system_instruction"] = system_prompt
        if options.temperature is not None:
            config_kwargs["temperature"] = options.temperature
        if options.max_output_tokens:
            config_kwargs["max_output_tokens"] = options.max_output_tokens
        if options.timeout_ms:
            config_kwargs["http_options"] = types.HttpOptions(timeout=options.timeout_ms)
        if response_schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = response_schema

        contents: list[Any] = [user_prompt]
        if attachment is not None:
            data, mime_type = attachment
            contents.append(types.Part.from_bytes(data=data, mime_type=mime_type))

        response = client.models.generate_content(
            model=model,
            contents=contents,
            config=types.GenerateContentConfig(**config_kwargs),
        )

        duration_ms = int((time.time() - start) * 1000)
        usage = response.usage_metadata
        logger.info(
            "Gemini call",
            model=model,
            correlation_id=correlation_id,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
            duration_ms=duration_ms,
        )
        return response.text or ""

    def _call_anthropic(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        *,
        options: LLMOptions,
        response_schema: type[BaseModel] | None = None,
        attachment: tuple[bytes, str] | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """Call Anthropic (direct or Vertex) and return the raw response text."""
        client = self._get_anthropic_client()
        start = time.time()

        if response_schema is not None:
            system_prompt = (
                f"{system_prompt}\n\nRespond ONLY with JSON matching this schema:\n"
                f"{json.dumps(response_schema.model_json_schema())}"
            )

        # Prompt caching for direct API
        if not self._is_vertex:
            system_messages: Any = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        else:
            system_messages = system_prompt

        content: list[dict[str, Any]] = []
        if attachment is not None:
            data, mime_type = attachment
            content.append(
                {
                    "type": "document",
                    "source": {
                        "type": "base64",
                        "media_type": mime_type,
                        "data": base64.standard_b64encode(data).decode("ascii"),
                    },
                }
            )
        content.append({"type": "text", "text": user_prompt})

        request_kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_output_tokens or 8192,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            request_kwargs["system"] = system_messages
        if options.temperature is not None:
            request_kwargs["temperature"] = options.temperature
        if options.timeout_ms:
            request_kwargs["timeout"] = options.timeout_ms / 1000

        response = client.messages.create(**request_kwargs)

        duration_ms = int((time.time() - start) * 1000)
        usage = response.usage
        logger.info(
            "Anthropic call",
            model=model,
            correlation_id=correlation_id,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            cache_read=getattr(usage, "cache_read_input_tokens", 0) or 0,
            duration_ms=duration_ms,
        )
        return response.content[0].text
