import json
import logging
import os
import time
from typing import Any
from urllib.parse import urlparse

from llama_index.core.llms import LLM, ChatMessage, ImageBlock, TextBlock
from opentelemetry import metrics, trace
from opentelemetry.trace import StatusCode

from smart_todo.pii import scrub_pii, scrub_url


logger = logging.getLogger(__name__)

meter = metrics.get_meter("gen_ai.client")
tracer = trace.get_tracer("gen_ai.client")

token_usage = meter.create_histogram(
    name="gen_ai.client.token.usage",
    description="Number of tokens used",
    unit="{token}",
)

operation_duration = meter.create_histogram(
    name="gen_ai.client.operation.duration",
    description="GenAI operation duration",
    unit="s",
)

cost_counter = meter.create_counter(
    name="gen_ai.client.cost",
    description="Cost of GenAI operations",
    unit="usd",
)

error_counter = meter.create_counter(
    name="gen_ai.client.error.count",
    description="GenAI operation errors",
    unit="1",
)

PROVIDER_SEMCONV_NAMES: dict[str, str] = {
    "openai_like": "openai",
    "openai": "openai",
    "google": "gcp.gemini",
    "anthropic": "anthropic",
}

PROVIDER_SERVERS: dict[str, str] = {
    "openai": "api.openai.com",
    "google": "generativelanguage.googleapis.com",
    "anthropic": "api.anthropic.com",
}

# USD per million tokens
PRICING: dict[str, dict[str, float]] = {
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}

CONTENT_CAPTURE_LIMIT = 500


def _is_content_capture_enabled() -> bool:
    return (
        os.environ.get("OTEL_INSTRUMENTATION_GENAI_CAPTURE_MESSAGE_CONTENT", "").lower() == "true"
    )


def create_llm(
    provider: str = "openai_like",
    model: str = "qwen2.5-vl-72b-instruct",
    temperature: float = 0.1,
    max_tokens: int = 1000,
    api_key: str = "",
    timeout: float = 60.0,
    base_url: str = "",
) -> LLM:
    """Build the llama-index LLM for ``provider``.

    Client-side retries are switched off: a failed call is reported to the
    caller, who decides whether to resubmit.
    """
    if provider == "openai_like":
        from llama_index.llms.openai_like import OpenAILike

        return OpenAILike(
            model=model,
            api_base=base_url,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
            is_chat_model=True,
        )

    if provider == "openai":
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    if provider == "google":
        from llama_index.llms.google_genai import GoogleGenAI

        return GoogleGenAI(
            model=model, temperature=temperature, max_tokens=max_tokens, api_key=api_key
        )

    if provider == "anthropic":
        from llama_index.llms.anthropic import Anthropic

        return Anthropic(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    raise ValueError(
        f"Unknown LLM provider: {provider!r}. "
        "Choose from: openai_like, openai, google, anthropic"
    )


def _server_address(provider: str, base_url: str) -> str:
    if base_url:
        return urlparse(base_url).hostname or ""
    return PROVIDER_SERVERS.get(provider, "")


class LLMClient:
    """Chat-completion wrapper that emits GenAI spans and metrics."""

    def __init__(self, provider: str, model: str, llm: LLM, base_url: str = "") -> None:
        self.provider = PROVIDER_SEMCONV_NAMES.get(provider, provider)
        self.model = model
        self.llm = llm
        self.server_address = _server_address(provider, base_url)

    async def chat(self, messages: list[ChatMessage], endpoint: str = "") -> str:
        """Send ``messages`` and return the reply text ("" when the model sends none)."""
        with tracer.start_as_current_span(f"gen_ai.chat {self.model}") as span:
            self._set_request_attrs(span, messages, endpoint)
            start = time.perf_counter()

            try:
                chat_response = await self.llm.achat(messages)
            except Exception as e:
                span.record_exception(e)
                span.set_status(StatusCode.ERROR, str(e))
                span.set_attribute("error.type", type(e).__name__)
                error_counter.add(
                    1,
                    {
                        "gen_ai.request.model": self.model,
                        "gen_ai.provider.name": self.provider,
                        "error.type": type(e).__name__,
                    },
                )
                raise

            duration = time.perf_counter() - start
            content = chat_response.message.content or ""

            response_model = _set_response_attrs(chat_response, span, self.model)
            attrs = self._common_attrs(response_model)
            span.set_attribute("gen_ai.client.operation.duration", duration)
            operation_duration.record(duration, attrs)
            _record_token_metrics(chat_response, attrs, self.model, endpoint, span)

            if _is_content_capture_enabled():
                _record_span_event(span, messages, content)

            return content

    def _set_request_attrs(
        self, span: trace.Span, messages: list[ChatMessage], endpoint: str
    ) -> None:
        span.set_attribute("gen_ai.operation.name", "chat")
        span.set_attribute("gen_ai.request.model", self.model)
        span.set_attribute("gen_ai.provider.name", self.provider)
        if self.server_address:
            span.set_attribute("server.address", self.server_address)
            span.set_attribute("server.port", 443)
        span.set_attribute("gen_ai.output.type", "text")
        temperature = getattr(self.llm, "temperature", None)
        if temperature is not None:
            span.set_attribute("gen_ai.request.temperature", float(temperature))
        max_tokens = getattr(self.llm, "max_tokens", None)
        if max_tokens is not None:
            span.set_attribute("gen_ai.request.max_tokens", int(max_tokens))
        span.set_attribute(
            "request.has_image",
            any(isinstance(b, ImageBlock) for m in messages for b in m.blocks),
        )
        span.set_attribute("endpoint", endpoint)

    def _common_attrs(self, response_model: str) -> dict[str, str | int]:
        attrs: dict[str, str | int] = {
            "gen_ai.request.model": self.model,
            "gen_ai.provider.name": self.provider,
            "gen_ai.operation.name": "chat",
            "gen_ai.response.model": response_model,
        }
        if self.server_address:
            attrs["server.address"] = self.server_address
            attrs["server.port"] = 443
        return attrs


def _raw_get(raw: object, key: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(key)
    return getattr(raw, key, None)


def _extract_token_counts(chat_response: object) -> tuple[int | None, int | None]:
    additional = getattr(chat_response, "additional_kwargs", None) or {}
    usage = _raw_get(getattr(chat_response, "raw", None), "usage")
    input_tokens = (
        additional.get("prompt_tokens")
        or additional.get("input_tokens")
        or _raw_get(usage, "prompt_tokens")
        or _raw_get(usage, "input_tokens")
    )
    output_tokens = (
        additional.get("completion_tokens")
        or additional.get("output_tokens")
        or _raw_get(usage, "completion_tokens")
        or _raw_get(usage, "output_tokens")
    )
    return input_tokens, output_tokens


def _set_response_attrs(chat_response: object, span: trace.Span, model_name: str) -> str:
    additional = getattr(chat_response, "additional_kwargs", None) or {}
    raw = getattr(chat_response, "raw", None)
    response_model = additional.get("model") or _raw_get(raw, "model") or model_name
    span.set_attribute("gen_ai.response.model", response_model)
    response_id = additional.get("id") or _raw_get(raw, "id")
    if response_id:
        span.set_attribute("gen_ai.response.id", response_id)
    return response_model


def _record_token_metrics(
    chat_response: object,
    common_attrs: dict[str, str | int],
    model_name: str,
    endpoint: str,
    span: trace.Span,
) -> None:
    input_tokens, output_tokens = _extract_token_counts(chat_response)
    if input_tokens is None or output_tokens is None:
        logger.warning("Token usage unavailable; token and cost metrics skipped for this call")
        return

    span.set_attribute("gen_ai.usage.input_tokens", int(input_tokens))
    span.set_attribute("gen_ai.usage.output_tokens", int(output_tokens))
    token_usage.record(int(input_tokens), {**common_attrs, "gen_ai.token.type": "input"})
    token_usage.record(int(output_tokens), {**common_attrs, "gen_ai.token.type": "output"})
    cost = _calculate_cost(model_name, int(input_tokens), int(output_tokens))
    cost_counter.add(cost, {**common_attrs, "endpoint": endpoint})
    span.set_attribute("gen_ai.usage.cost_usd", cost)


def _message_parts(message: ChatMessage) -> list[dict[str, str]]:
    parts: list[dict[str, str]] = []
    for block in message.blocks:
        if isinstance(block, TextBlock):
            parts.append(
                {"type": "text", "content": scrub_pii(block.text)[:CONTENT_CAPTURE_LIMIT]}
            )
        elif isinstance(block, ImageBlock):
            parts.append({"type": "uri", "uri": scrub_url(str(block.url or ""))})
    return parts


def _record_span_event(
    span: trace.Span, messages: list[ChatMessage], assistant_content: str
) -> None:
    """Attach scrubbed, truncated prompt and reply to the span. Image bytes never leave."""
    attrs: dict[str, str] = {}
    system = [m for m in messages if m.role == "system"]
    if system:
        attrs["gen_ai.system_instructions"] = json.dumps(_message_parts(system[0]))
    attrs["gen_ai.input.messages"] = json.dumps(
        [{"role": "user", "parts": _message_parts(m)} for m in messages if m.role == "user"]
    )
    attrs["gen_ai.output.messages"] = json.dumps(
        [
            {
                "role": "assistant",
                "parts": [
                    {
                        "type": "text",
                        "content": scrub_pii(assistant_content)[:CONTENT_CAPTURE_LIMIT],
                    }
                ],
            }
        ]
    )
    span.add_event("gen_ai.client.inference.operation.details", attrs)


def _calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = PRICING.get(model, {"input": 0.0, "output": 0.0})
    return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000
