# core/llm_interface.py
"""
Handles all direct interactions with the analysis model over an
OpenAI-compatible chat completions API. Includes token counting helpers,
response cleaning, and the ``LLMService`` provider used by the progressive
feedback engine.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

# Standard library imports
import asyncio
import functools
import json
import re

# Type hints
from typing import TYPE_CHECKING, Any, Protocol

# Third-party imports
import httpx
import structlog
import tiktoken

# Local imports
from config import settings
from core.usage import TokenUsage
from models import GenerationDescriptor, ResponseShape
from processing.errors import ProviderError

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from processing.cancellation import CancellationToken

logger = structlog.get_logger(__name__)


class AnalysisProvider(Protocol):
    """Anything that turns a text payload into generated feedback text."""

    async def generate(
        self,
        payload: str,
        descriptor: GenerationDescriptor,
        cancel_token: "CancellationToken | None" = None,
    ) -> str: ...


# Token parameter handling
def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base or "api.anthropic.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


# --- Tokenizer Cache and Utility Functions (Module Level) ---
_tokenizer_cache: dict[str, tiktoken.Encoding] = {}


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """
    Gets a tiktoken encoder for the given model name, with caching.
    Tries model-specific encoding, then a default, then returns None.
    """
    if model_name in _tokenizer_cache:
        return _tokenizer_cache[model_name]

    try:
        try:
            encoder = tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                f"No direct tiktoken encoding for '{model_name}'. Using default '{settings.TIKTOKEN_DEFAULT_ENCODING}'."
            )
            encoder = tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)

        _tokenizer_cache[model_name] = encoder
        return encoder
    except Exception as e:
        logger.error(
            f"Could not load a tokenizer for '{model_name}': {e}. "
            "Token counting will fall back to character-based heuristic.",
            exc_info=True,
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """
    Counts the number of tokens in a string for a given model.
    Uses tiktoken with caching and fallbacks.
    """
    if not text:
        return 0

    encoder = _get_tokenizer(model_name)

    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    else:
        char_count = len(text)
        token_estimate = int(char_count / settings.FALLBACK_CHARS_PER_TOKEN)
        logger.warning(
            f"count_tokens: Failed to get tokenizer for '{model_name}'. "
            f"Falling back to character-based estimate: {char_count} chars -> ~{token_estimate} tokens."
        )
        return token_estimate


def truncate_text_by_tokens(
    text: str,
    model_name: str,
    max_tokens: int,
    truncation_marker: str = "\n... (truncated)",
) -> str:
    """
    Truncates text to a maximum number of tokens for a given model.
    Adds a truncation marker if truncation occurs.
    """
    if not text:
        return ""

    encoder = _get_tokenizer(model_name)

    if not encoder:
        max_chars = int(max_tokens * settings.FALLBACK_CHARS_PER_TOKEN)
        if len(text) > max_chars:
            effective_max_chars = max(max_chars - len(truncation_marker), 0)
            return text[:effective_max_chars] + truncation_marker
        return text

    tokens = encoder.encode(text, allowed_special="all")
    if len(tokens) <= max_tokens:
        return text

    marker_tokens_len = 0
    if truncation_marker:
        marker_tokens_len = len(
            encoder.encode(truncation_marker, allowed_special="all")
        )

    content_tokens_to_keep = max_tokens - marker_tokens_len
    effective_truncation_marker = truncation_marker

    if content_tokens_to_keep < 0:
        content_tokens_to_keep = max_tokens
        effective_truncation_marker = ""

    truncated_content_tokens = tokens[:content_tokens_to_keep]

    if not truncated_content_tokens and max_tokens > 0 and tokens:
        truncated_content_tokens = tokens[:1]
        effective_truncation_marker = ""

    return encoder.decode(truncated_content_tokens) + effective_truncation_marker


def _error_detail(response: httpx.Response) -> str:
    """Pull the most useful message out of an error response body."""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text[:500]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if body.get("message"):
            return str(body["message"])
    return response.text[:500]


class LLMService:
    """Analysis provider backed by an OpenAI-compatible endpoint."""

    def __init__(
        self,
        timeout: float = settings.HTTPX_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        # Use a single async client for all requests to reuse connections
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        # Add a semaphore to limit concurrent requests
        self._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_LLM_CALLS)
        self.request_count = 0
        self.usage = TokenUsage()
        logger.info(
            f"LLMService initialized with a concurrency limit of {settings.MAX_CONCURRENT_LLM_CALLS}."
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _log_llm_usage(self, model_name: str, usage_data: dict[str, int] | None) -> None:
        """Helper to log LLM token usage if available in the response."""
        if usage_data and isinstance(usage_data, dict):
            logger.info(
                f"LLM ('{model_name}') Usage - Prompt: {usage_data.get('prompt_tokens', 'N/A')} tk, "
                f"Comp: {usage_data.get('completion_tokens', 'N/A')} tk, Total: {usage_data.get('total_tokens', 'N/A')} tk"
            )
        else:
            logger.debug(
                f"LLM ('{model_name}') response missing 'usage' information or 'usage' was not a dictionary."
            )

    def _model_for(self, descriptor: GenerationDescriptor) -> str:
        if descriptor.response_shape is ResponseShape.JSON:
            return settings.SUMMARY_MODEL or settings.FEEDBACK_MODEL
        return settings.FEEDBACK_MODEL

    def _build_request(
        self, model_name: str, payload: str, descriptor: GenerationDescriptor
    ) -> dict[str, Any]:
        temperature = (
            descriptor.temperature
            if descriptor.temperature is not None
            else settings.TEMPERATURE_FEEDBACK
        )
        body: dict[str, Any] = {
            "model": model_name,
            "messages": [{"role": "user", "content": payload}],
            "temperature": temperature,
            "top_p": settings.LLM_TOP_P,
            _completion_token_param(settings.OPENAI_API_BASE): settings.MAX_GENERATION_TOKENS,
            "stream": False,
        }
        if descriptor.response_shape is ResponseShape.JSON:
            body["response_format"] = {"type": "json_object"}
        return body

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Translate HTTP failures into provider errors the engine can classify."""
        if response.is_success:
            return
        status = response.status_code
        detail = _error_detail(response)
        if status == 429:
            message = f"Rate limit exceeded (429): {detail}"
            retry_after = response.headers.get("retry-after")
            if retry_after and "try again in" not in detail.lower():
                try:
                    message += f" Please try again in {float(retry_after):.1f}s."
                except ValueError:
                    pass
            raise ProviderError(message, status_hint=status)
        if status == 413:
            raise ProviderError(f"Payload too large (413): {detail}", status_hint=status)
        raise ProviderError(f"Provider HTTP error {status}: {detail}", status_hint=status)

    async def _post_chat(self, body: dict[str, Any]) -> str:
        headers = {
            "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(
                f"{settings.OPENAI_API_BASE}/chat/completions",
                json=body,
                headers=headers,
            )
        except httpx.TimeoutException as e_timeout:
            raise ProviderError(f"Provider request timed out: {e_timeout}") from e_timeout
        except httpx.RequestError as e_req:
            raise ProviderError(f"Provider request failed: {e_req}") from e_req

        self._raise_for_status(response)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e_json:
            raise ProviderError(
                f"Malformed response from provider: {response.text[:200]}",
                status_hint=response.status_code,
            ) from e_json

        usage = data.get("usage") if isinstance(data, dict) else None
        self._log_llm_usage(body["model"], usage)
        self.usage.add(usage)

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ProviderError(
                f"Invalid response structure from provider - missing choices: {str(data)[:200]}",
                status_hint=response.status_code,
            )
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    async def generate(
        self,
        payload: str,
        descriptor: GenerationDescriptor,
        cancel_token: "CancellationToken | None" = None,
    ) -> str:
        """Run one completion. Raises :class:`ProviderError` on failure."""
        if not payload or not payload.strip():
            raise ProviderError("Malformed request: payload is blank")

        model_name = self._model_for(descriptor)
        body = self._build_request(model_name, payload, descriptor)
        logger.debug(
            "Calling provider.",
            model=model_name,
            mode=descriptor.mode.value,
            shape=descriptor.response_shape.value,
            perspectives=list(descriptor.perspectives),
            prompt_tokens_est=count_tokens(payload, model_name),
        )

        async with self._semaphore:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            self.request_count += 1
            call = self._post_chat(body)
            if cancel_token is None:
                raw_text = await call
            else:
                raw_text = await cancel_token.race(call)

        if descriptor.response_shape is ResponseShape.JSON:
            return raw_text.strip()
        return self.clean_model_response(raw_text)

    def clean_model_response(self, text: str) -> str:
        """Cleans common artifacts from LLM text responses, including content within <think> tags and normalizes newlines."""
        if not isinstance(text, str):
            logger.warning(
                f"clean_model_response received non-string input: {type(text)}. Returning empty string."
            )
            return ""

        cleaned_text = text
        for tag_name in ("think", "thought", "thinking", "reasoning", "reflection"):
            cleaned_text = re.sub(
                rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
                "",
                cleaned_text,
                flags=re.DOTALL | re.IGNORECASE,
            )
            cleaned_text = re.sub(
                rf"<\s*/?\s*{tag_name}\s*/?\s*>",
                "",
                cleaned_text,
                flags=re.IGNORECASE,
            )

        common_phrases_patterns = [
            r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your|my)\s+[\w\s]+?:\s*",
            r"^\s*Certainly! Here is the (text|feedback|analysis):\s*",
            r"^\s*(?:Output|Result|Response|Answer)\s*:\s*",
            r"\s*Let me know if you (need|have) any(thing else| other questions| further revisions| adjustments)\b.*?\.?[^\w\n]*$",
            r"\s*I hope this (meets your expectations|helps|is what you were looking for)\b.*?\.?[^\w\n]*$",
            r"\s*Feel free to ask for (adjustments|anything else)\b.*?\.?[^\w\n]*$",
        ]
        for pattern_str in common_phrases_patterns:
            cleaned_text = re.sub(
                pattern_str,
                "",
                cleaned_text,
                count=1,
                flags=re.IGNORECASE | re.MULTILINE,
            ).strip()

        final_text = re.sub(r"\n{3,}", "\n\n", cleaned_text.strip())
        return final_text


# Instantiate the service for other modules to import and use
llm_service = LLMService()
