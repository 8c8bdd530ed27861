"""
Colloquy Gateway - Main FastAPI Application

HTTP surface over the template registry and the conversation engine.
"""

import json
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import litellm
from colloquy.config.settings import settings
from colloquy.engine.conversation_engine import ConversationEngine, EngineConfig
from colloquy.errors.exceptions import (
    ColloquyError,
    ConversationNotFoundError,
    ConversationTerminatedError,
    DuplicateNameError,
    InferenceConfigError,
    MissingVariableError,
    ModelInvocationError,
    TemplateNotFoundError,
    TemplateVariableMismatch,
    VariantNotFoundError,
)
from colloquy.gateway.models import (
    ConversationResponse,
    CreateTemplateRequest,
    PostMessageRequest,
    ResolveTemplateRequest,
    ResolveTemplateResponse,
    SetDefaultRequest,
    StartConversationRequest,
    TurnResponse,
)
from colloquy.guardrails.pipeline import GuardrailPipeline
from colloquy.memory.transcript_store import TranscriptStore
from colloquy.models.guardrail import GuardrailPolicy
from colloquy.models.prompt_template import PromptVariant
from colloquy.observability.tracer import LangFuseTracer
from colloquy.prompts.template_manager import TemplateManager
from colloquy.router.fallback import FallbackChain
from colloquy.router.invoker import LiteLLMInvoker
from colloquy.router.model_registry import ModelRegistry
from colloquy.tools.dispatcher import ToolDispatcher
from colloquy.utils.backoff import RetryPolicy
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

# Initialize LiteLLM
litellm.set_verbose = settings.log_level == "DEBUG"


def load_guardrail_policy(path: Optional[str]) -> Optional[GuardrailPolicy]:
    """Load a guardrail policy from a JSON file"""
    if not path:
        return None
    with open(path) as f:
        return GuardrailPolicy.model_validate(json.load(f))


# Initialize components
model_registry = ModelRegistry()
tracer = LangFuseTracer()
template_manager = TemplateManager(model_registry=model_registry)
transcript_store = TranscriptStore(ttl_seconds=settings.transcript_ttl_seconds)
tool_dispatcher = ToolDispatcher(
    timeout_seconds=settings.tool_timeout_seconds,
    retry_policy=RetryPolicy(
        max_attempts=settings.tool_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    ),
)
fallback = FallbackChain(
    LiteLLMInvoker(model_registry),
    retry_policy=RetryPolicy(
        max_attempts=settings.max_retries,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    ),
    timeout_seconds=settings.model_timeout_seconds,
    fallback_models=settings.fallback_models,
    tracer=tracer,
)
policy = load_guardrail_policy(settings.guardrail_policy_path)
engine = ConversationEngine(
    model_invoker=fallback,
    dispatcher=tool_dispatcher,
    guardrails=GuardrailPipeline(policy) if policy else None,
    store=transcript_store,
    config=EngineConfig.from_settings(settings),
    template_manager=template_manager,
    tracer=tracer,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    await tracer.initialize()
    await template_manager.connect(settings.redis_url, settings.redis_password)
    await transcript_store.connect(settings.redis_url, settings.redis_password)
    yield
    # Shutdown
    await template_manager.disconnect()
    await transcript_store.disconnect()
    tracer.shutdown()


app = FastAPI(
    title="Colloquy Gateway",
    description="Conversation orchestration with templates, retrieval, guardrails and tools",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping
ERROR_STATUS = [
    ((TemplateNotFoundError, VariantNotFoundError, ConversationNotFoundError), 404),
    ((DuplicateNameError, ConversationTerminatedError), 409),
    ((TemplateVariableMismatch, MissingVariableError, InferenceConfigError), 422),
]


def error_status(error: ColloquyError) -> int:
    if isinstance(error, ModelInvocationError):
        return 503 if error.retryable else 502
    for error_types, status in ERROR_STATUS:
        if isinstance(error, error_types):
            return status
    return 400


@app.exception_handler(ColloquyError)
async def colloquy_error_handler(request: Request, exc: ColloquyError):
    status = error_status(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "templates": "connected" if template_manager.redis_client else "in-memory",
        "transcripts": "connected" if transcript_store.redis_client else "in-memory",
        "tracing": tracer.active,
        "version": "0.1.0",
    }


# Template endpoints
@app.post("/v1/templates", status_code=201)
async def create_template(request: CreateTemplateRequest):
    """Create a prompt template"""
    template = await template_manager.create_template(
        name=request.name,
        variants=request.variants,
        default_variant=request.default_variant,
        description=request.description,
        tags=request.tags,
    )
    return template_manager.export(template)


@app.get("/v1/templates/{name}")
async def get_template(name: str):
    """Get a template"""
    template = await template_manager.get_template(name)
    return template_manager.export(template)


@app.post("/v1/templates/{name}/variants", status_code=201)
async def add_variant(name: str, variant: PromptVariant):
    """Append a variant"""
    template = await template_manager.add_variant(name, variant)
    return template_manager.export(template)


@app.put("/v1/templates/{name}/default")
async def set_default(name: str, request: SetDefaultRequest):
    """Move the default variant"""
    template = await template_manager.set_default(name, request.variant)
    return template_manager.export(template)


@app.post("/v1/templates/{name}/resolve", response_model=ResolveTemplateResponse)
async def resolve_template(name: str, request: ResolveTemplateRequest):
    """Resolve a template with variables"""
    resolved = await template_manager.resolve(name, request.variables, variant_name=request.variant)
    return resolved.model_dump()


# Conversation endpoints
@app.post("/v1/conversations", status_code=201, response_model=ConversationResponse)
async def start_conversation(request: StartConversationRequest):
    """Start a conversation"""
    state = await engine.start_conversation(
        conversation_id=request.conversation_id,
        metadata=request.metadata,
        template=request.template,
        variant=request.variant,
        variables=request.variables,
    )
    return state.model_dump()


@app.post("/v1/conversations/{conversation_id}/messages", response_model=TurnResponse)
async def post_message(conversation_id: str, request: PostMessageRequest):
    """Post a user message and wait for the turn to finish"""
    result = await engine.post_user_message(
        conversation_id,
        request.text,
        query_vector=request.query_vector,
    )
    return TurnResponse(
        conversation_id=result.conversation_id,
        outcome=result.outcome,
        text=result.text,
        message=result.message,
        citations=result.citations,
        tool_iterations=result.tool_iterations,
        matched_rules=result.matched_rules,
        error_type=result.error_type,
    )


@app.get("/v1/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(conversation_id: str):
    """Get conversation state"""
    state = await engine.get_conversation_state(conversation_id)
    return state.model_dump()


@app.post("/v1/conversations/{conversation_id}/cancel", response_model=ConversationResponse)
async def cancel_conversation(conversation_id: str):
    """Abort the in-flight turn and terminate"""
    state = await engine.cancel(conversation_id)
    return state.model_dump()


@app.delete("/v1/conversations/{conversation_id}", response_model=ConversationResponse)
async def close_conversation(conversation_id: str):
    """Close a conversation after queued turns finish"""
    state = await engine.close(conversation_id)
    return state.model_dump()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "colloquy.gateway.main:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
        reload=True,
    )
