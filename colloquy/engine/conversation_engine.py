"""
Conversation Engine - Orchestrates multi-turn, tool-using conversations

Each conversation is driven by one logical actor: user messages are queued
FIFO and turns run strictly one at a time. A turn walks the state machine

    AWAITING_USER_INPUT -> GUARDRAIL_INPUT -> MODEL_INVOKING
        -> (TOOL_REQUESTED -> TOOL_EXECUTING -> MODEL_INVOKING)*
        -> GUARDRAIL_OUTPUT -> AWAITING_USER_INPUT

and TERMINATED is entered on cancel, close or the turn limit. Different
conversations share no mutable state and run fully in parallel.
"""

import asyncio
import time
import uuid
from collections import deque
from typing import Optional, Dict, Any, List, Awaitable, Callable, Deque, Sequence, Tuple
from pydantic import BaseModel, Field

from colloquy.config.settings import Settings
from colloquy.context.assembler import ContextAssembler
from colloquy.context.window import ContextWindowManager
from colloquy.errors.exceptions import (
    ContextOverflowError,
    ConversationNotFoundError,
    ConversationTerminatedError,
    GuardrailBlocked,
    ToolLoopLimitExceeded,
)
from colloquy.guardrails.pipeline import GuardrailEvaluator
from colloquy.memory.transcript_store import TranscriptStore
from colloquy.models.conversation import (
    Conversation,
    ConversationState,
    ConversationStatus,
    EngineState,
    Message,
    Role,
    ToolCall,
    ToolCallStatus,
    ToolError,
    ToolResult,
    ToolResultBlock,
)
from colloquy.models.guardrail import Direction, GuardrailAction
from colloquy.models.invocation import ModelRequest, ModelResponse, StopReason, ToolChoice
from colloquy.models.prompt_template import InferenceConfig, TemplateKind
from colloquy.models.retrieval import AssembledContext
from colloquy.models.turn import TurnOutcome, TurnResult
from colloquy.observability.tracer import LangFuseTracer
from colloquy.prompts.template_manager import TemplateManager
from colloquy.router.invoker import ModelInvoker
from colloquy.tools.dispatcher import ToolDispatcher
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

QueryEmbedder = Callable[[str], Awaitable[Sequence[float]]]

CONTEXT_PREAMBLE = (
    "Use the following retrieved passages when they are relevant. "
    "Cite passages by their [number]."
)


class EngineConfig(BaseModel):
    """Per-engine defaults; conversations may override the prompt settings"""
    model_id: str = "gpt-4o-mini"
    system_prompt: Optional[str] = None
    inference_config: InferenceConfig = Field(default_factory=InferenceConfig)
    tool_choice: ToolChoice = ToolChoice.AUTO
    max_tool_iterations: int = Field(5, ge=1)
    context_window_tokens: int = Field(8192, gt=0)
    min_retained_turns: int = Field(1, ge=1)
    retrieval_k: int = Field(5, ge=1)
    retrieval_token_budget: int = Field(1024, ge=0)
    retrieval_filters: Optional[Dict[str, Any]] = None
    max_turns: Optional[int] = Field(None, ge=1)
    blocked_input_message: str = "Sorry, I can't help with that request."
    blocked_output_message: str = "Sorry, I can't provide that response."
    tool_loop_fallback_message: str = (
        "Sorry, I wasn't able to finish that request. Please try rephrasing it."
    )
    context_overflow_message: str = (
        "Sorry, this conversation is too long for me to continue that request."
    )

    model_config = {"protected_namespaces": ()}

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "EngineConfig":
        values = {
            "model_id": settings.default_model,
            "max_tool_iterations": settings.max_tool_iterations,
            "context_window_tokens": settings.context_window_tokens,
            "min_retained_turns": settings.min_retained_turns,
            "retrieval_k": settings.retrieval_k,
            "retrieval_token_budget": settings.retrieval_token_budget,
        }
        values.update(overrides)
        return cls(**values)


class _Session:
    """Runtime state of one conversation actor"""

    def __init__(self, conversation: Conversation):
        self.conversation = conversation
        self.pending: Deque[Tuple[str, Optional[Sequence[float]], asyncio.Future]] = deque()
        self.worker: Optional[asyncio.Task] = None
        self.current_turn: Optional[asyncio.Task] = None


class ConversationEngine:
    """Composes guardrails, retrieval, tools and the model into turns"""

    def __init__(
        self,
        model_invoker: ModelInvoker,
        dispatcher: Optional[ToolDispatcher] = None,
        guardrails: Optional[GuardrailEvaluator] = None,
        assembler: Optional[ContextAssembler] = None,
        store: Optional[TranscriptStore] = None,
        config: Optional[EngineConfig] = None,
        embedder: Optional[QueryEmbedder] = None,
        template_manager: Optional[TemplateManager] = None,
        tracer: Optional[LangFuseTracer] = None,
    ):
        self.model_invoker = model_invoker
        self.dispatcher = dispatcher or ToolDispatcher()
        self.guardrails = guardrails
        self.assembler = assembler
        self.store = store or TranscriptStore()
        self.config = config or EngineConfig()
        self.embedder = embedder
        self.template_manager = template_manager
        self.tracer = tracer or LangFuseTracer()
        self.window = ContextWindowManager(
            self.config.context_window_tokens,
            self.config.min_retained_turns,
        )
        self.sessions: Dict[str, _Session] = {}

    # Public operations

    async def start_conversation(
        self,
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        template: Optional[str] = None,
        variant: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> ConversationState:
        """
        Create a conversation

        When ``template`` is given, the resolved variant supplies the
        conversation's system prompt, model and inference configuration.
        """
        conversation = Conversation(id=conversation_id or uuid.uuid4().hex, metadata=dict(metadata or {}))

        if template:
            if self.template_manager is None:
                raise ValueError("Engine has no template manager configured")
            resolved = await self.template_manager.resolve(template, variables or {}, variant_name=variant)
            if resolved.kind == TemplateKind.CHAT and resolved.system_prompt is not None:
                system_prompt = resolved.system_prompt
            else:
                system_prompt = resolved.text
            conversation.metadata.update({
                "template": resolved.template_name,
                "variant": resolved.variant_name,
                "model_id": resolved.model_id,
                "system_prompt": system_prompt,
                "inference_config": resolved.inference_config.model_dump(),
            })

        await self.store.create(conversation)
        self.sessions[conversation.id] = _Session(conversation)
        logger.info("Started conversation %s", conversation.id)
        return self._snapshot(self.sessions[conversation.id])

    async def post_user_message(
        self,
        conversation_id: str,
        text: str,
        query_vector: Optional[Sequence[float]] = None,
    ) -> TurnResult:
        """
        Queue a user message and wait for its turn to finish

        Raises:
            ConversationNotFoundError: Unknown conversation
            ConversationTerminatedError: Conversation terminated before the message ran
            ModelInvocationError: The model failed and retries were exhausted
        """
        session = await self._session(conversation_id)
        if session.conversation.status == ConversationStatus.TERMINATED:
            raise ConversationTerminatedError(conversation_id)

        future = asyncio.get_running_loop().create_future()
        session.pending.append((text, query_vector, future))
        if len(session.pending) > 1 or self._turn_in_flight(session):
            logger.info("Queued message for %s (%d waiting)", conversation_id, len(session.pending))

        if session.worker is None or session.worker.done():
            session.worker = asyncio.create_task(self._drain(session))
        return await future

    async def get_conversation_state(self, conversation_id: str) -> ConversationState:
        session = await self._session(conversation_id)
        return self._snapshot(session)

    async def cancel(self, conversation_id: str) -> ConversationState:
        """
        Abort the in-flight turn and terminate the conversation

        Outstanding tool calls are cancelled and recorded as ``cancelled``
        results; queued messages are rejected.
        """
        session = await self._session(conversation_id)
        conversation = session.conversation
        conversation.status = ConversationStatus.TERMINATED

        turn = session.current_turn
        if turn is not None and not turn.done():
            turn.cancel()
            await asyncio.wait([turn])
        if session.worker is not None and not session.worker.done():
            await asyncio.wait([session.worker])
        self._reject_pending(session)

        self._set_state(conversation, EngineState.TERMINATED)
        await self.store.save(conversation)
        logger.info("Cancelled conversation %s", conversation_id)
        return self._snapshot(session)

    async def close(self, conversation_id: str) -> ConversationState:
        """Let queued turns finish, then terminate the conversation"""
        session = await self._session(conversation_id)
        if session.worker is not None and not session.worker.done():
            await asyncio.wait([session.worker])

        conversation = session.conversation
        conversation.status = ConversationStatus.TERMINATED
        self._set_state(conversation, EngineState.TERMINATED)
        await self.store.save(conversation)
        logger.info("Closed conversation %s", conversation_id)
        return self._snapshot(session)

    # Actor loop

    async def _drain(self, session: _Session):
        """Run queued messages one turn at a time"""
        conversation = session.conversation
        while session.pending:
            text, query_vector, future = session.pending.popleft()
            if future.done():
                continue
            if conversation.status == ConversationStatus.TERMINATED:
                future.set_exception(ConversationTerminatedError(conversation.id))
                continue

            turn = asyncio.create_task(self._run_turn(session, text, query_vector))
            session.current_turn = turn
            await asyncio.wait([turn])
            session.current_turn = None

            if future.done():
                continue
            if turn.cancelled():
                future.set_result(TurnResult(conversation_id=conversation.id, outcome=TurnOutcome.CANCELLED))
            elif turn.exception() is not None:
                future.set_exception(turn.exception())
            else:
                future.set_result(turn.result())

    async def _run_turn(
        self,
        session: _Session,
        text: str,
        query_vector: Optional[Sequence[float]],
    ) -> TurnResult:
        conversation = session.conversation
        conversation.turn_count += 1
        span = self.tracer.start_turn(conversation.id, text)

        try:
            result = await self._turn(conversation, text, query_vector, span)
        except asyncio.CancelledError:
            conversation.status = ConversationStatus.TERMINATED
            self._set_state(conversation, EngineState.TERMINATED)
            await self.store.save(conversation)
            self.tracer.end_turn(span, TurnOutcome.CANCELLED.value)
            raise
        except Exception as e:
            logger.error("Turn failed for %s: %s", conversation.id, e)
            self._set_state(conversation, EngineState.AWAITING_USER_INPUT)
            await self.store.save(conversation)
            self.tracer.end_turn(span, "error", str(e))
            raise

        if self.config.max_turns and conversation.turn_count >= self.config.max_turns:
            conversation.status = ConversationStatus.TERMINATED
            self._set_state(conversation, EngineState.TERMINATED)
            logger.info("Conversation %s reached its turn limit", conversation.id)
        else:
            self._set_state(conversation, EngineState.AWAITING_USER_INPUT)
        await self.store.save(conversation)
        self.tracer.end_turn(span, result.outcome.value, result.text)
        return result

    # Turn steps

    async def _turn(
        self,
        conversation: Conversation,
        text: str,
        query_vector: Optional[Sequence[float]],
        span: Optional[Any],
    ) -> TurnResult:
        self._set_state(conversation, EngineState.GUARDRAIL_INPUT)
        user_text = text
        input_rules: List[str] = []

        if self.guardrails is not None:
            check = await self.guardrails.evaluate(text, Direction.INPUT)
            try:
                check.raise_for_block()
            except GuardrailBlocked as blocked:
                return await self._blocked_input(conversation, text, blocked, check.matched_rules, span)
            user_text = check.output_text
            input_rules = check.matched_rules

        user_metadata = {"guardrail": GuardrailAction.ANONYMIZE.value} if user_text != text else {}
        await self.store.append(conversation, Message.text(Role.USER, user_text, **user_metadata))

        self._set_state(conversation, EngineState.MODEL_INVOKING)
        context = await self._assemble_context(user_text, query_vector)
        citations = list(context.citations) if context else []
        system_prompt = self._system_prompt(conversation, context)

        iterations = 0
        while True:
            try:
                view = self.window.fit(system_prompt, self._context_view(conversation))
            except ContextOverflowError as e:
                return await self._degraded(
                    conversation,
                    TurnOutcome.CONTEXT_OVERFLOW,
                    e,
                    self.config.context_overflow_message,
                    iterations,
                    citations,
                )

            response = await self._invoke_model(conversation, system_prompt, view, span)
            calls = response.message.tool_calls

            if not calls:
                self._set_state(conversation, EngineState.GUARDRAIL_OUTPUT)
                return await self._finish(
                    conversation,
                    response,
                    user_text,
                    context,
                    iterations,
                    input_rules,
                )

            self._set_state(conversation, EngineState.TOOL_REQUESTED)
            await self.store.append(conversation, response.message)

            if iterations >= self.config.max_tool_iterations:
                error = ToolLoopLimitExceeded(iterations, self.config.max_tool_iterations)
                # Every call still gets its result before anything else happens
                await self.store.append(conversation, self._tool_message([
                    self._error_result(call, error) for call in calls
                ]))
                return await self._degraded(
                    conversation,
                    TurnOutcome.TOOL_LOOP_LIMIT,
                    error,
                    self.config.tool_loop_fallback_message,
                    iterations,
                    citations,
                )

            self._set_state(conversation, EngineState.TOOL_EXECUTING)
            await self._execute_tools(conversation, calls, span)
            iterations += 1
            self._set_state(conversation, EngineState.MODEL_INVOKING)

    async def _blocked_input(
        self,
        conversation: Conversation,
        text: str,
        blocked: GuardrailBlocked,
        rules: List[str],
        span: Optional[Any],
    ) -> TurnResult:
        await self.store.append(
            conversation,
            Message.text(Role.USER, text, excluded_from_context=True, guardrail=GuardrailAction.BLOCK.value),
        )
        reply = Message.text(
            Role.ASSISTANT,
            blocked.message or self.config.blocked_input_message,
            excluded_from_context=True,
            guardrail=GuardrailAction.BLOCK.value,
            matched_rules=rules,
        )
        await self.store.append(conversation, reply)
        self.tracer.trace_event(span, "guardrail_input_block", {"rules": rules}, level="WARNING")
        logger.info("Input blocked for %s by %s", conversation.id, blocked.rule)
        return TurnResult(
            conversation_id=conversation.id,
            outcome=TurnOutcome.BLOCKED_INPUT,
            message=reply,
            matched_rules=rules,
        )

    async def _assemble_context(
        self,
        user_text: str,
        query_vector: Optional[Sequence[float]],
    ) -> Optional[AssembledContext]:
        if self.assembler is None:
            return None
        if query_vector is None and self.embedder is not None:
            query_vector = await self.embedder(user_text)
        if query_vector is None:
            return None
        return await self.assembler.build(
            query_vector,
            self.config.retrieval_k,
            self.config.retrieval_token_budget,
            self.config.retrieval_filters,
        )

    def _system_prompt(self, conversation: Conversation, context: Optional[AssembledContext]) -> Optional[str]:
        base = conversation.metadata.get("system_prompt") or self.config.system_prompt
        if context is None or context.is_empty:
            return base
        block = f"{CONTEXT_PREAMBLE}\n\n{context.text}"
        return f"{base}\n\n{block}" if base else block

    def _context_view(self, conversation: Conversation) -> List[Message]:
        return [m for m in conversation.messages if not m.excluded_from_context]

    async def _invoke_model(
        self,
        conversation: Conversation,
        system_prompt: Optional[str],
        messages: List[Message],
        span: Optional[Any],
    ) -> ModelResponse:
        inference = conversation.metadata.get("inference_config")
        request = ModelRequest(
            model_id=conversation.metadata.get("model_id") or self.config.model_id,
            system_prompt=system_prompt,
            messages=messages,
            inference_config=(
                InferenceConfig.model_validate(inference) if inference else self.config.inference_config
            ),
            tool_specs=self.dispatcher.tool_specs(),
            tool_choice=self.config.tool_choice,
        )

        started = time.time()
        response = await self.model_invoker.invoke(request)
        latency_ms = (time.time() - started) * 1000
        logger.info(
            "Model %s answered %s for %s in %.1fms",
            request.model_id,
            response.stop_reason.value,
            conversation.id,
            latency_ms,
        )
        self.tracer.trace_generation(
            span,
            model=request.model_id,
            messages=[m.model_dump(mode="json") for m in messages],
            output=response.message.model_dump(mode="json"),
            usage=response.usage.model_dump() if response.usage else None,
            latency_ms=latency_ms,
        )
        return response

    async def _execute_tools(
        self,
        conversation: Conversation,
        calls: List[ToolCall],
        span: Optional[Any],
    ) -> List[ToolResult]:
        cancelled: List[ToolResult] = []
        try:
            results = await self.dispatcher.invoke_all(calls, on_cancel=cancelled.extend)
        except asyncio.CancelledError:
            if cancelled:
                await self.store.append(conversation, self._tool_message(cancelled))
            raise

        await self.store.append(conversation, self._tool_message(results))
        for result in results:
            self.tracer.trace_event(
                span,
                "tool_call",
                {"tool": result.tool_name, "status": result.status.value, "attempts": result.attempts},
                level="ERROR" if result.is_error else "DEFAULT",
            )
        return results

    async def _finish(
        self,
        conversation: Conversation,
        response: ModelResponse,
        user_text: str,
        context: Optional[AssembledContext],
        iterations: int,
        input_rules: List[str],
    ) -> TurnResult:
        text = response.message.text_content
        outcome = TurnOutcome.COMPLETED
        rules = list(input_rules)
        metadata: Dict[str, Any] = {"stop_reason": response.stop_reason.value}

        if response.stop_reason == StopReason.GUARDRAIL_INTERVENED:
            text = self.config.blocked_output_message
            outcome = TurnOutcome.BLOCKED_OUTPUT
            metadata["guardrail"] = GuardrailAction.BLOCK.value
        elif self.guardrails is not None:
            check = await self.guardrails.evaluate(
                text,
                Direction.OUTPUT,
                context=context.text if context else None,
                query=user_text,
            )
            rules.extend(check.matched_rules)
            try:
                check.raise_for_block()
            except GuardrailBlocked as blocked:
                text = blocked.message or self.config.blocked_output_message
                outcome = TurnOutcome.BLOCKED_OUTPUT
                logger.info("Output blocked for %s by %s", conversation.id, blocked.rule)
            else:
                text = check.output_text
            if check.action != GuardrailAction.PASS:
                metadata["guardrail"] = check.action.value

        citations = list(context.citations) if context and outcome == TurnOutcome.COMPLETED else []
        if citations:
            metadata["citations"] = citations

        reply = Message.text(Role.ASSISTANT, text, **metadata)
        await self.store.append(conversation, reply)
        return TurnResult(
            conversation_id=conversation.id,
            outcome=outcome,
            message=reply,
            citations=citations,
            tool_iterations=iterations,
            stop_reason=response.stop_reason,
            matched_rules=rules,
        )

    async def _degraded(
        self,
        conversation: Conversation,
        outcome: TurnOutcome,
        error: Exception,
        fallback_text: str,
        iterations: int,
        citations: List[str],
    ) -> TurnResult:
        logger.warning("Turn degraded for %s: %s", conversation.id, error)
        reply = Message.text(
            Role.ASSISTANT,
            fallback_text,
            degraded=True,
            error_type=type(error).__name__,
        )
        await self.store.append(conversation, reply)
        return TurnResult(
            conversation_id=conversation.id,
            outcome=outcome,
            message=reply,
            citations=citations,
            tool_iterations=iterations,
            error_type=type(error).__name__,
            error=str(error),
        )

    # Helpers

    async def _session(self, conversation_id: str) -> _Session:
        session = self.sessions.get(conversation_id)
        if session is not None:
            return session

        conversation = await self.store.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        session = _Session(conversation)
        self.sessions[conversation_id] = session
        return session

    def _turn_in_flight(self, session: _Session) -> bool:
        return session.current_turn is not None and not session.current_turn.done()

    def _reject_pending(self, session: _Session):
        while session.pending:
            _, _, future = session.pending.popleft()
            if not future.done():
                future.set_exception(ConversationTerminatedError(session.conversation.id))

    def _set_state(self, conversation: Conversation, state: EngineState):
        if conversation.state != state:
            logger.debug("%s: %s -> %s", conversation.id, conversation.state.value, state.value)
            conversation.state = state

    def _snapshot(self, session: _Session) -> ConversationState:
        conversation = session.conversation
        return ConversationState(
            id=conversation.id,
            state=conversation.state,
            status=conversation.status,
            messages=list(conversation.messages),
            token_estimate=conversation.token_estimate,
            turn_count=conversation.turn_count,
            queued_messages=len(session.pending),
        )

    def _tool_message(self, results: List[ToolResult]) -> Message:
        return Message(role=Role.TOOL, content=[ToolResultBlock(result=r) for r in results])

    def _error_result(self, call: ToolCall, error: Exception) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            status=ToolCallStatus.ERROR,
            error=ToolError(type=type(error).__name__, message=str(error)),
        )
