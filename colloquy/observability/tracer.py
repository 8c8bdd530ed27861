"""
LangFuse Tracer - Observability for conversation turns

One span per turn, with child observations for model generations, tool
calls and guardrail interventions. Tracing is optional: without LangFuse
credentials every method is a no-op, and tracing failures are logged but
never interrupt a turn.
"""

import os
from typing import Optional, Dict, Any
from langfuse import Langfuse

from colloquy.utils.logger import get_logger

logger = get_logger(__name__)


class LangFuseTracer:
    """
    LangFuse tracer for observability

    Features:
    - Turn tracing
    - Model generation spans with usage
    - Tool call and guardrail events
    - Fallback events
    """

    def __init__(self):
        self.secret_key = os.getenv("LANGFUSE_SECRET_KEY")
        self.public_key = os.getenv("LANGFUSE_PUBLIC_KEY")
        self.host = os.getenv("LANGFUSE_HOST", "http://localhost:3000")
        self.client: Optional[Langfuse] = None
        self.enabled = bool(self.secret_key and self.public_key)

    async def initialize(self):
        """Initialize LangFuse client"""
        if not self.enabled:
            logger.info("LangFuse not configured. Observability disabled.")
            return

        try:
            self.client = Langfuse(
                secret_key=self.secret_key,
                public_key=self.public_key,
                host=self.host,
            )
        except Exception as e:
            logger.warning("LangFuse initialization failed: %s", e)
            self.enabled = False

    @property
    def active(self) -> bool:
        return self.enabled and self.client is not None

    def start_turn(self, conversation_id: str, user_text: str) -> Optional[Any]:
        """
        Start a span covering one turn

        Returns:
            Span object or None if LangFuse is disabled
        """
        if not self.active:
            return None

        try:
            return self.client.start_span(
                name="conversation_turn",
                input=user_text,
                metadata={"conversation_id": conversation_id},
            )
        except Exception as e:
            logger.warning("Failed to start trace: %s", e)
            return None

    def trace_generation(
        self,
        span: Optional[Any],
        model: str,
        messages: Any,
        output: Any = None,
        usage: Optional[Dict[str, int]] = None,
        latency_ms: float = 0.0,
    ):
        """Record a model generation under the turn span"""
        if span is None:
            return

        try:
            generation = span.start_generation(
                name="model_invocation",
                model=model,
                input=messages,
                metadata={"latency_ms": latency_ms},
            )
            generation.update(output=output, usage_details=usage or {})
            generation.end()
        except Exception as e:
            logger.warning("Failed to trace generation: %s", e)

    def trace_event(
        self,
        span: Optional[Any],
        name: str,
        metadata: Optional[Dict[str, Any]] = None,
        level: str = "DEFAULT",
    ):
        """Record a point-in-time event (tool call, guardrail, fallback)"""
        if span is None:
            return

        try:
            span.create_event(name=name, metadata=metadata or {}, level=level)
        except Exception as e:
            logger.warning("Failed to trace %s: %s", name, e)

    def trace_fallback(self, from_model: str, to_model: str):
        """Trace a fallback event"""
        if not self.active:
            return

        try:
            self.client.create_event(
                name="model_fallback",
                metadata={
                    "from_model": from_model,
                    "to_model": to_model,
                },
            )
        except Exception as e:
            logger.warning("Failed to trace fallback: %s", e)

    def end_turn(self, span: Optional[Any], outcome: str, output: Optional[str] = None):
        """Close the turn span and flush"""
        if span is None:
            return

        try:
            span.update(output=output, metadata={"outcome": outcome})
            span.end()
            self.client.flush()
        except Exception as e:
            logger.warning("Failed to end trace: %s", e)

    def shutdown(self):
        if self.active:
            try:
                self.client.flush()
            except Exception as e:
                logger.warning("LangFuse flush failed: %s", e)
