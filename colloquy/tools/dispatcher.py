"""Tool registration and dispatch"""

import asyncio
import functools
import inspect
import time
from typing import List, Dict, Any, Optional, Callable
from pydantic import BaseModel

from colloquy.errors.exceptions import (
    DuplicateNameError,
    SchemaValidationError,
    ToolNotFoundError,
    ToolTimeoutError,
    TransientToolError,
)
from colloquy.models.conversation import ToolCall, ToolCallStatus, ToolError, ToolResult
from colloquy.models.tool import ToolSpec
from colloquy.tools.schema import validate_input
from colloquy.utils.backoff import RetryPolicy
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

RETRYABLE_ERRORS = (ToolTimeoutError, TransientToolError, ConnectionError)


class RegisteredTool(BaseModel):
    """Tool spec bound to its handler"""
    spec: ToolSpec
    handler: Callable[..., Any]

    model_config = {"arbitrary_types_allowed": True}


class ToolDispatcher:
    """
    Validates and executes tool calls requested by the model

    ``invoke`` never raises for handler problems: failures, timeouts and bad
    input all come back as a ToolResult carrying a structured error, so the
    model always has something to react to.
    """

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.tools: Dict[str, RegisteredTool] = {}
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()

    def register(self, spec: ToolSpec, handler: Callable[..., Any]):
        """Register a tool"""
        if spec.name in self.tools:
            raise DuplicateNameError("Tool", spec.name)
        self.tools[spec.name] = RegisteredTool(spec=spec, handler=handler)
        logger.debug("Registered tool %s", spec.name)

    def tool_specs(self) -> List[ToolSpec]:
        return [tool.spec for tool in self.tools.values()]

    def get_tools_for_llm(self) -> List[Dict[str, Any]]:
        """Get tools formatted for LLM function calling"""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.spec.name,
                    "description": tool.spec.description,
                    "parameters": tool.spec.input_schema.to_json_schema(),
                }
            }
            for tool in self.tools.values()
        ]

    def get_tool_schema(self, tool_name: str) -> Optional[Dict[str, Any]]:
        """Get schema for a tool"""
        if tool_name not in self.tools:
            return None

        spec = self.tools[tool_name].spec
        return {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.input_schema.to_json_schema(),
        }

    def validate(self, call: ToolCall):
        """
        Raises:
            ToolNotFoundError: Unknown tool
            SchemaValidationError: Input does not match the schema
        """
        tool = self.tools.get(call.name)
        if tool is None:
            raise ToolNotFoundError(call.name)
        errors = validate_input(tool.spec.input_schema, call.input)
        if errors:
            raise SchemaValidationError(call.name, errors)

    async def invoke(self, call: ToolCall) -> ToolResult:
        """Execute one call; always returns a result"""
        try:
            self.validate(call)
        except (ToolNotFoundError, SchemaValidationError) as e:
            logger.warning("Rejected tool call %s: %s", call.id, e)
            return self._error_result(call, e, ToolCallStatus.ERROR, attempts=0)

        handler = self.tools[call.name].handler
        max_attempts = max(1, self.retry_policy.max_attempts)
        last_error: Exception = RuntimeError("no attempt made")

        for attempt in range(1, max_attempts + 1):
            started = time.time()
            try:
                output = await self._run_with_timeout(call, handler)
                logger.info(
                    "Tool %s (%s) done in %.1fms on attempt %d",
                    call.name,
                    call.id,
                    (time.time() - started) * 1000,
                    attempt,
                )
                return ToolResult(
                    call_id=call.id,
                    tool_name=call.name,
                    status=ToolCallStatus.DONE,
                    output=output,
                    attempts=attempt,
                )
            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt < max_attempts:
                    delay = self.retry_policy.delay(attempt)
                    logger.warning(
                        "Tool %s attempt %d/%d failed (%s); retrying in %.2fs",
                        call.name,
                        attempt,
                        max_attempts,
                        e,
                        delay,
                    )
                    await asyncio.sleep(delay)
            except Exception as e:
                logger.error("Tool %s (%s) failed: %s", call.name, call.id, e)
                return self._error_result(call, e, ToolCallStatus.ERROR, attempts=attempt)

        status = ToolCallStatus.TIMEOUT if isinstance(last_error, ToolTimeoutError) else ToolCallStatus.ERROR
        logger.error("Tool %s (%s) gave up after %d attempt(s): %s", call.name, call.id, max_attempts, last_error)
        return self._error_result(call, last_error, status, attempts=max_attempts)

    async def invoke_all(
        self,
        calls: List[ToolCall],
        on_cancel: Optional[Callable[[List[ToolResult]], None]] = None,
    ) -> List[ToolResult]:
        """
        Dispatch calls concurrently and join on all of them

        Results come back in request order regardless of completion order.
        If the caller is cancelled mid-flight, unfinished calls are cancelled
        and ``on_cancel`` receives a full result list in which they appear
        with status ``cancelled``.
        """
        tasks = [asyncio.create_task(self.invoke(call)) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            results = []
            for call, task in zip(calls, tasks):
                if task.cancelled() or task.exception() is not None:
                    results.append(self.cancelled_result(call))
                else:
                    results.append(task.result())
            if on_cancel:
                on_cancel(results)
            raise

    def cancelled_result(self, call: ToolCall) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            status=ToolCallStatus.CANCELLED,
            error=ToolError(type="Cancelled", message="Tool call cancelled before completion"),
        )

    async def _run_with_timeout(self, call: ToolCall, handler: Callable[..., Any]) -> Any:
        try:
            return await asyncio.wait_for(self._run(handler, call.input), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise ToolTimeoutError(call.name, self.timeout_seconds)

    async def _run(self, handler: Callable[..., Any], arguments: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(**arguments)
        # Sync handlers run in the default executor so they can time out
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(handler, **arguments))

    def _error_result(
        self,
        call: ToolCall,
        error: Exception,
        status: ToolCallStatus,
        attempts: int,
    ) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            status=status,
            error=ToolError(
                type=type(error).__name__,
                message=str(error),
                retryable=isinstance(error, RETRYABLE_ERRORS),
            ),
            attempts=attempts,
        )
