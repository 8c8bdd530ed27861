"""
Model invocation capability backed by LiteLLM

Translates the engine's provider-neutral messages into OpenAI-style chat
payloads (the format LiteLLM normalizes every provider to) and maps the
response back.
"""

import asyncio
import json
from typing import Dict, Any, List, Optional, Protocol
import litellm
from litellm import completion

from colloquy.errors.exceptions import ModelInvocationError
from colloquy.models.conversation import (
    Message,
    Role,
    TextBlock,
    ToolCall,
    ToolUseBlock,
)
from colloquy.models.invocation import ModelRequest, ModelResponse, StopReason, ToolChoice, Usage
from colloquy.router.model_registry import ModelRegistry

FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.GUARDRAIL_INTERVENED,
}

RETRYABLE_EXCEPTIONS = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


class ModelInvoker(Protocol):
    """Model invocation capability consumed by the conversation engine"""

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        ...


def to_openai_messages(system_prompt: Optional[str], messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert history into OpenAI chat messages"""
    payload: List[Dict[str, Any]] = []
    if system_prompt:
        payload.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == Role.TOOL:
            # One OpenAI tool message per result, in block order
            for result in message.tool_results:
                body = result.output if result.error is None else {"error": result.error.model_dump()}
                payload.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": json.dumps(body, default=str),
                })
            continue

        entry: Dict[str, Any] = {"role": message.role.value, "content": message.text_content or None}
        if message.role == Role.ASSISTANT and message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.input)},
                }
                for call in message.tool_calls
            ]
        elif entry["content"] is None:
            entry["content"] = ""
        payload.append(entry)

    return payload


def from_openai_response(response: Any) -> ModelResponse:
    """Convert a LiteLLM ModelResponse (or equivalent dict) into ours"""
    data = response if isinstance(response, dict) else response.model_dump()
    choice = data["choices"][0]
    raw = choice.get("message") or {}

    blocks: List[Any] = []
    if raw.get("content"):
        blocks.append(TextBlock(text=raw["content"]))
    for tool_call in raw.get("tool_calls") or []:
        function = tool_call.get("function") or {}
        arguments = function.get("arguments") or "{}"
        try:
            parsed = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
        except json.JSONDecodeError:
            parsed = {"_raw_arguments": arguments}
        if not isinstance(parsed, dict):
            parsed = {"_raw_arguments": arguments}
        call = ToolCall(name=function.get("name", ""), input=parsed)
        if tool_call.get("id"):
            call.id = tool_call["id"]
        blocks.append(ToolUseBlock(call=call))

    stop_reason = FINISH_REASONS.get(choice.get("finish_reason") or "stop", StopReason.END_TURN)
    if any(isinstance(b, ToolUseBlock) for b in blocks):
        stop_reason = StopReason.TOOL_USE

    usage = data.get("usage") or {}
    return ModelResponse(
        message=Message(role=Role.ASSISTANT, content=blocks),
        stop_reason=stop_reason,
        model_id=data.get("model"),
        usage=Usage(
            prompt_tokens=usage.get("prompt_tokens", 0) or 0,
            completion_tokens=usage.get("completion_tokens", 0) or 0,
            total_tokens=usage.get("total_tokens", 0) or 0,
        ),
    )


class LiteLLMInvoker:
    """ModelInvoker that calls any LiteLLM-supported provider"""

    def __init__(self, model_registry: Optional[ModelRegistry] = None):
        self.model_registry = model_registry or ModelRegistry()

    def build_params(self, request: ModelRequest) -> Dict[str, Any]:
        """Prepare LiteLLM parameters"""
        params: Dict[str, Any] = {
            "model": request.model_id,
            "messages": to_openai_messages(request.system_prompt, request.messages),
        }
        params.update(self.model_registry.to_provider_params(request.model_id, request.inference_config))

        model = self.model_registry.get(request.model_id)
        if request.tool_specs and (model is None or model.supports_tools):
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": spec.name,
                        "description": spec.description,
                        "parameters": spec.input_schema.to_json_schema(),
                    },
                }
                for spec in request.tool_specs
            ]
            params["tool_choice"] = {
                ToolChoice.AUTO: "auto",
                ToolChoice.ANY: "required",
                ToolChoice.NONE: "none",
            }[request.tool_choice]
        return params

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        params = self.build_params(request)
        try:
            response = await self._call_litellm(params)
        except RETRYABLE_EXCEPTIONS as e:
            raise ModelInvocationError(f"LLM request failed: {e}", retryable=True, model=request.model_id)
        except Exception as e:
            raise ModelInvocationError(f"LLM request failed: {e}", retryable=False, model=request.model_id)
        return from_openai_response(response)

    async def _call_litellm(self, params: Dict[str, Any]) -> Any:
        """Call LiteLLM completion (wrapped for async)"""
        # LiteLLM completion is sync, so we run it in executor
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: completion(**params),
        )
