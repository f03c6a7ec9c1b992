"""LLM wrapper using LiteLLM for the text-normalization service.

Supports any LiteLLM-compatible provider. Configure via environment variables:

Local OpenAI-compatible server (e.g., LM Studio):
    OPENAI_API_BASE=http://127.0.0.1:1234/v1
    MAPCOMPARE_MODEL=local-model

Hosted provider:
    ANTHROPIC_API_KEY=sk-ant-...
    MAPCOMPARE_MODEL=anthropic/<model-name>

Tuning:
    MAPCOMPARE_TIMEOUT=30        # seconds per request
    MAPCOMPARE_MAX_RETRIES=3     # immediate retries on timeout/connection failure
"""

import asyncio
import logging

import litellm
from litellm import acompletion
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mapcompare.errors import NormalizationUnavailable

logger = logging.getLogger(__name__)

# Reusable event loop to avoid LiteLLM async worker conflicts
_event_loop = None

RETRYABLE_ERRORS = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    TimeoutError,
    ConnectionError,
)

# Provider errors a retry will not fix
SERVICE_ERRORS = (
    litellm.APIError,
    litellm.InternalServerError,
    litellm.AuthenticationError,
    litellm.BadRequestError,
    litellm.NotFoundError,
    litellm.UnprocessableEntityError,
    litellm.APIResponseValidationError,
)


def run_async(coro):
    """Run an async coroutine, reusing the same event loop.

    This avoids LiteLLM's logging worker conflicts that occur when
    asyncio.run() is called multiple times (each creates a new loop).
    """
    global _event_loop
    if _event_loop is None or _event_loop.is_closed():
        _event_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_event_loop)
    return _event_loop.run_until_complete(coro)


class NormalizerConfig(BaseSettings):
    """Connection settings for the text-normalization service.

    Loaded from MAPCOMPARE_* environment variables; the endpoint comes from
    OPENAI_API_BASE. Keyword arguments override the environment.
    """

    model_config = SettingsConfigDict(env_prefix="MAPCOMPARE_", extra="ignore", populate_by_name=True)

    model: str = Field("local-model", description="Model name passed to LiteLLM")
    api_base: str | None = Field(
        None,
        validation_alias=AliasChoices("OPENAI_API_BASE"),
        description="OpenAI-compatible endpoint",
    )
    timeout: float = Field(30.0, gt=0, description="Per-request timeout in seconds")
    max_retries: int = Field(3, ge=0, description="Extra attempts after a timeout or connection failure")
    probe_timeout: float = Field(5.0, gt=0, description="Timeout of the availability probe")
    temperature: float = 0.3
    max_tokens: int = 1000

    def effective_model(self) -> str:
        # For custom OpenAI-compatible endpoints, prefix model with openai/
        # to ensure LiteLLM uses OpenAI format, not provider-specific format
        if self.api_base and not self.model.startswith("openai/"):
            return f"openai/{self.model}"
        return self.model


async def call_llm_async(
    config: NormalizerConfig,
    messages: list[dict],
    timeout: float | None = None,
    max_tokens: int | None = None,
) -> str:
    """Single chat completion against the configured endpoint.

    Args:
        config: Service settings
        messages: List of message dicts with 'role' and 'content'
        timeout: Per-request timeout override in seconds
        max_tokens: Response token limit override

    Returns:
        The LLM response content
    """
    kwargs = {
        "model": config.effective_model(),
        "messages": messages,
        "temperature": config.temperature,
        "max_tokens": max_tokens or config.max_tokens,
        "timeout": timeout or config.timeout,
    }
    if config.api_base:
        kwargs["api_base"] = config.api_base

    response = await acompletion(**kwargs)
    if not response.choices:
        raise NormalizationUnavailable(
            "No choices in normalization service response",
            reason="invalid_response",
        )
    return response.choices[0].message.content or ""


async def complete_with_retries(
    config: NormalizerConfig,
    system: str,
    prompt: str,
) -> str:
    """Call the service, retrying timeouts and connection failures immediately.

    Raises:
        NormalizationUnavailable: after ``config.max_retries`` extra attempts,
            or at once when the service rate-limits the caller or answers
            with an error a retry will not fix (reason ``service_error``).
    """
    messages = [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]
    attempts = 0
    while True:
        attempts += 1
        try:
            return await call_llm_async(config, messages)
        except litellm.RateLimitError as e:
            raise NormalizationUnavailable(
                "Rate limited by normalization service",
                reason="rate_limited",
                attempts=attempts,
            ) from e
        except RETRYABLE_ERRORS as e:
            if attempts > config.max_retries:
                raise NormalizationUnavailable(
                    f"Normalization service unavailable after {attempts} attempts: {e}",
                    reason="timeout" if isinstance(e, (TimeoutError, litellm.Timeout)) else "connection_failed",
                    attempts=attempts,
                    timeout=config.timeout,
                ) from e
            logger.warning(
                "Normalization call failed (attempt %d/%d): %s",
                attempts, config.max_retries + 1, e,
            )
        except SERVICE_ERRORS as e:
            raise NormalizationUnavailable(
                f"Normalization service error: {e}",
                reason="service_error",
                status=getattr(e, "status_code", None),
                attempts=attempts,
            ) from e


async def probe(config: NormalizerConfig) -> bool:
    """Fast health check: a one-token completion with a short timeout."""
    try:
        await call_llm_async(
            config,
            [{"role": "user", "content": "ping"}],
            timeout=config.probe_timeout,
            max_tokens=1,
        )
    except Exception as e:  # any failure means "not available"
        logger.debug("Normalization service probe failed: %s", e)
        return False
    return True
