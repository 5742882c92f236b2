"""
Inference Gateway — the pipeline's only path to the language model.

Wraps a LiteLLM completion in the shared retry/timeout composition. The
gateway does not judge response content: a successful but non-JSON answer
is returned as-is and handled downstream by extraction and repair.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import litellm

from sovereign_pipeline.config import PipelineSettings
from sovereign_pipeline.inference.retry import RetriesExhausted, retry_with_timeout

logger = logging.getLogger(__name__)

CompletionFn = Callable[..., Awaitable[Any]]


class InferenceFailure(Exception):
    """Raised when every inference attempt failed or timed out."""

    def __init__(self, message: str, model: str = "", cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.model = model
        self.cause = cause


class InferenceGateway:
    """
    Invoke the external inference service with bounded retries.

    Usage:
        gateway = InferenceGateway.from_settings(settings)
        text = await gateway.invoke(prompt, max_tokens=2400, temperature=0.1)
    """

    def __init__(
        self,
        model: str,
        attempts: int = 3,
        timeout_seconds: float = 18.0,
        backoff_seconds: float = 0.45,
        completion: CompletionFn | None = None,
    ) -> None:
        """
        Args:
            model: LiteLLM model identifier.
            attempts: Attempt budget per invocation.
            timeout_seconds: Per-attempt timeout.
            backoff_seconds: Linear backoff base between attempts.
            completion: Async completion callable; defaults to litellm.acompletion.
        """
        self.model = model
        self.attempts = attempts
        self.timeout_seconds = timeout_seconds
        self.backoff_seconds = backoff_seconds
        self.completion = completion or litellm.acompletion

    @classmethod
    def from_settings(
        cls, settings: PipelineSettings, completion: CompletionFn | None = None,
    ) -> InferenceGateway:
        return cls(
            model=settings.omega_model,
            attempts=settings.inference_attempts,
            timeout_seconds=settings.inference_timeout_seconds,
            backoff_seconds=settings.inference_backoff_seconds,
            completion=completion,
        )

    async def invoke(self, prompt: str, max_tokens: int, temperature: float) -> str:
        """
        Send one prompt and return the response text.

        Raises:
            InferenceFailure: When all attempts are exhausted.
        """

        async def _call() -> str:
            response = await self.completion(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
            return response.choices[0].message.content or ""

        try:
            text = await retry_with_timeout(
                _call,
                attempts=self.attempts,
                timeout=self.timeout_seconds,
                backoff=self.backoff_seconds,
            )
        except RetriesExhausted as e:
            logger.error("Inference failed: model=%s error=%s", self.model, e.last_error)
            raise InferenceFailure(str(e), model=self.model, cause=e.last_error) from e

        logger.debug("Inference succeeded: model=%s chars=%d", self.model, len(text))
        return text
