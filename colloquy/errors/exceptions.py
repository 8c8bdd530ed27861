"""Error taxonomy for the conversation orchestration core"""

from typing import Optional, List


class ColloquyError(Exception):
    """Base class for all colloquy errors"""


# Template registry

class DuplicateNameError(ColloquyError):
    """A template, variant or tool name is already taken"""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} '{name}' already exists")


class TemplateNotFoundError(ColloquyError, KeyError):
    """Template lookup failed"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Template '{name}' not found")

    def __str__(self) -> str:
        return self.args[0]


class VariantNotFoundError(ColloquyError, KeyError):
    """Variant lookup failed"""

    def __init__(self, template: str, variant: str):
        self.template = template
        self.variant = variant
        super().__init__(f"Variant '{variant}' not found in template '{template}'")

    def __str__(self) -> str:
        return self.args[0]


class TemplateVariableMismatch(ColloquyError):
    """Placeholders in the template text differ from the declared variables"""

    def __init__(self, variant: str, missing: List[str], undeclared: List[str]):
        self.variant = variant
        # declared but never referenced in the text
        self.missing = sorted(missing)
        # referenced in the text but not declared
        self.undeclared = sorted(undeclared)
        super().__init__(
            f"Variant '{variant}' placeholders do not match declared variables "
            f"(declared but unused: {self.missing}, used but undeclared: {self.undeclared})"
        )


class MissingVariableError(ColloquyError):
    """A declared variable was not supplied at resolve time"""

    def __init__(self, missing: List[str]):
        self.missing = sorted(missing)
        super().__init__(f"Missing variable(s): {', '.join(self.missing)}")


class InferenceConfigError(ColloquyError):
    """Inference configuration rejected by the model's capability schema"""

    def __init__(self, model_id: str, reason: str):
        self.model_id = model_id
        self.reason = reason
        super().__init__(f"Invalid inference config for {model_id}: {reason}")


# Tools

class SchemaValidationError(ColloquyError):
    """Tool input does not conform to the tool's input schema"""

    def __init__(self, tool_name: str, errors: List[str]):
        self.tool_name = tool_name
        self.errors = errors
        super().__init__(f"Invalid input for tool '{tool_name}': {'; '.join(errors)}")


class ToolNotFoundError(ColloquyError):
    """No handler registered under the requested tool name"""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool {tool_name} not found")


class ToolTimeoutError(ColloquyError):
    """A tool handler did not finish within its timeout"""

    def __init__(self, tool_name: str, timeout_seconds: float):
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Tool '{tool_name}' timed out after {timeout_seconds}s")


class TransientToolError(ColloquyError):
    """Raised by tool handlers to signal a failure worth retrying"""


class ToolLoopLimitExceeded(ColloquyError):
    """The model kept requesting tools past the configured iteration bound"""

    def __init__(self, iterations: int, limit: int):
        self.iterations = iterations
        self.limit = limit
        super().__init__(f"Tool loop limit exceeded after {iterations} iteration(s) (limit {limit})")


# Context window

class ContextOverflowError(ColloquyError):
    """History could not be pruned below the context window"""

    def __init__(self, estimated_tokens: int, limit: int, retained_messages: int):
        self.estimated_tokens = estimated_tokens
        self.limit = limit
        self.retained_messages = retained_messages
        super().__init__(
            f"Context overflow: {estimated_tokens} tokens exceed limit {limit} "
            f"with {retained_messages} message(s) at the retained-turns floor"
        )


# Guardrails

class GuardrailBlocked(ColloquyError):
    """A guardrail policy blocked the text"""

    def __init__(self, direction: str, rule: Optional[str], message: str = ""):
        self.direction = direction
        self.rule = rule
        self.message = message
        super().__init__(f"Guardrail blocked {direction} (rule: {rule})")


# Model invocation

class ModelInvocationError(ColloquyError):
    """The model-invocation capability failed"""

    def __init__(self, message: str, retryable: bool = False, model: Optional[str] = None):
        self.retryable = retryable
        self.model = model
        super().__init__(message)


# Conversations

class ConversationNotFoundError(ColloquyError, KeyError):
    """Conversation lookup failed"""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class ConversationTerminatedError(ColloquyError):
    """The conversation no longer accepts messages"""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' is terminated")


# Flows

class FlowValidationError(ColloquyError):
    """Flow graph definition is invalid"""


class FlowExecutionError(ColloquyError):
    """A node failed while the flow was running"""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Flow node '{node_id}' failed: {reason}")
