"""Chat-completions text client over the OpenAI SDK."""

from __future__ import annotations

import logging
from dataclasses import replace

import httpx
import openai
from openai import OpenAI

from maintainer_brief.config import GenerationSettings
from maintainer_brief.pipeline.contracts import AccessDeniedError, TransientCollaboratorError
from maintainer_brief.resilience import RetryPolicy, is_transient_error

logger = logging.getLogger(__name__)


def is_transient_completion_error(error: BaseException) -> bool:
    """Network failures, timeouts, 429, and 5xx responses are worth another try."""

    if isinstance(error, openai.APIConnectionError):
        return True
    return isinstance(error, openai.APIStatusError) and is_transient_error(error)


class OpenAITextClient:
    """OpenAI-compatible ``chat.completions`` client with our own retry policy.

    The SDK's built-in retries are disabled so that backoff and the final
    classification of errors go through ``RetryPolicy`` like every other
    collaborator.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 120.0,
        temperature: float = 0.7,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.retry_policy = replace(
            retry_policy or RetryPolicy(max_attempts=3, base_delay=2.0),
            should_retry=is_transient_completion_error,
        )
        self._client = OpenAI(
            api_key=api_key,
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            max_retries=0,
            http_client=httpx.Client(transport=transport) if transport is not None else None,
        )

    @classmethod
    def from_settings(
        cls,
        settings: GenerationSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> OpenAITextClient:
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def complete(self, *, system: str, prompt: str, max_tokens: int) -> str:
        """Return the first choice's text, retrying 429, 5xx, and network errors."""

        try:
            response = self.retry_policy.call(
                lambda: self._client.chat.completions.create(
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=max_tokens,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                ),
                description="chat completion",
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as error:
            raise AccessDeniedError(f"Generation backend rejected credentials: {error}") from error
        except openai.APIError as error:
            if is_transient_completion_error(error):
                raise TransientCollaboratorError(f"Generation request failed: {error}") from error
            raise
        if not response.choices:
            logger.warning("Completion %s returned no choices", response.id)
            return ""
        return response.choices[0].message.content or ""
