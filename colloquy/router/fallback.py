"""
Fallback Chain - Retry and Fallback Logic for model invocation

1. Retry the primary model on transient errors (exponential backoff + jitter)
2. Fall back to the next configured model once retries are exhausted
3. Surface non-retryable errors immediately
"""

import asyncio
import time
from typing import Dict, List, Optional

from colloquy.errors.exceptions import ModelInvocationError
from colloquy.models.invocation import ModelRequest, ModelResponse
from colloquy.observability.tracer import LangFuseTracer
from colloquy.router.invoker import ModelInvoker
from colloquy.utils.backoff import RetryPolicy
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)


class FallbackChain:
    """ModelInvoker wrapper adding timeouts, retries and fallback models"""

    def __init__(
        self,
        invoker: ModelInvoker,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_seconds: float = 30.0,
        fallback_models: Optional[List[str]] = None,
        fallback_map: Optional[Dict[str, List[str]]] = None,
        tracer: Optional[LangFuseTracer] = None,
    ):
        self.invoker = invoker
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.fallback_chain = list(fallback_models or [])
        self.fallback_map = dict(fallback_map or {})
        self.tracer = tracer

    def _get_fallback_models(self, primary_model: str) -> List[str]:
        """Provider-specific fallbacks, else the configured chain"""
        models = self.fallback_map.get(primary_model, self.fallback_chain)
        return [m for m in models if m != primary_model]

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        """
        Execute a model request with retry and fallback

        Raises:
            ModelInvocationError: Non-retryable failure, or every model exhausted
        """
        primary_model = request.model_id
        try:
            return await self._invoke_with_retry(request)
        except ModelInvocationError as primary_error:
            if not primary_error.retryable:
                raise
            last_error = primary_error

        for fallback_model in self._get_fallback_models(primary_model):
            logger.warning("Falling back from %s to %s", primary_model, fallback_model)
            if self.tracer:
                self.tracer.trace_fallback(from_model=primary_model, to_model=fallback_model)
            try:
                return await self._invoke_with_retry(request.model_copy(update={"model_id": fallback_model}))
            except ModelInvocationError as fallback_error:
                if not fallback_error.retryable:
                    raise
                last_error = fallback_error

        raise ModelInvocationError(
            f"All models failed. Primary: {primary_model}. Last error: {last_error}",
            retryable=True,
            model=primary_model,
        )

    async def _invoke_with_retry(self, request: ModelRequest) -> ModelResponse:
        max_attempts = max(1, self.retry_policy.max_attempts)
        attempt = 1
        while True:
            try:
                return await self._execute_request(request)
            except ModelInvocationError as e:
                if not e.retryable or attempt >= max_attempts:
                    raise
                delay = self.retry_policy.delay(attempt)
                logger.warning(
                    "Model %s attempt %d/%d failed (%s); retrying in %.2fs",
                    request.model_id,
                    attempt,
                    max_attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _execute_request(self, request: ModelRequest) -> ModelResponse:
        """Execute a single request with timeout"""
        start_time = time.time()
        try:
            response = await asyncio.wait_for(self.invoker.invoke(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise ModelInvocationError(
                f"Request timeout after {self.timeout_seconds}s",
                retryable=True,
                model=request.model_id,
            )
        logger.debug("Model %s answered in %.1fms", request.model_id, (time.time() - start_time) * 1000)
        return response
