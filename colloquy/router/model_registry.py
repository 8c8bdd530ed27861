"""
Model Registry - Capability-keyed model configuration

Different providers accept different inference parameter shapes. Each
model is described by a ModelConfig that says which parameters it accepts
and in which ranges; inference configs are validated against it before a
template variant is stored or a request is sent.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from colloquy.errors.exceptions import InferenceConfigError
from colloquy.models.prompt_template import InferenceConfig


@dataclass
class ModelConfig:
    """Model configuration"""
    name: str
    provider: str
    context_window: int
    max_output_tokens: int
    temperature_range: Tuple[float, float] = (0.0, 1.0)
    supports_top_p: bool = True
    supports_tools: bool = True
    max_stop_sequences: int = 4
    requires_max_tokens: bool = False
    aliases: List[str] = field(default_factory=list)


class ModelRegistry:
    """Lookup and validation of per-model capabilities"""

    def __init__(self, models: Optional[List[ModelConfig]] = None):
        self.models: Dict[str, ModelConfig] = {}
        for config in models if models is not None else self._default_models():
            self.register(config)

    def _default_models(self) -> List[ModelConfig]:
        """Built-in model table"""
        return [
            # OpenAI
            ModelConfig(
                name="gpt-4o",
                provider="openai",
                context_window=128000,
                max_output_tokens=16384,
                temperature_range=(0.0, 2.0),
            ),
            ModelConfig(
                name="gpt-4o-mini",
                provider="openai",
                context_window=128000,
                max_output_tokens=16384,
                temperature_range=(0.0, 2.0),
            ),
            # Anthropic
            ModelConfig(
                name="claude-3-5-sonnet-20241022",
                provider="anthropic",
                context_window=200000,
                max_output_tokens=8192,
                requires_max_tokens=True,
                aliases=["claude-3-5-sonnet"],
            ),
            ModelConfig(
                name="claude-3-haiku-20240307",
                provider="anthropic",
                context_window=200000,
                max_output_tokens=4096,
                requires_max_tokens=True,
                aliases=["claude-3-haiku"],
            ),
            # Google
            ModelConfig(
                name="gemini-1.5-pro",
                provider="google",
                context_window=2097152,
                max_output_tokens=8192,
                temperature_range=(0.0, 2.0),
            ),
            # Meta Llama (via AWS Bedrock)
            ModelConfig(
                name="llama-3-70b",
                provider="bedrock",
                context_window=8192,
                max_output_tokens=2048,
                supports_tools=False,
                max_stop_sequences=0,
            ),
            # Cohere
            ModelConfig(
                name="command-r",
                provider="cohere",
                context_window=128000,
                max_output_tokens=4096,
                max_stop_sequences=5,
            ),
        ]

    def register(self, config: ModelConfig):
        self.models[config.name] = config
        for alias in config.aliases:
            self.models[alias] = config

    def get(self, model_id: str) -> Optional[ModelConfig]:
        return self.models.get(model_id)

    def validate(self, model_id: str, config: InferenceConfig):
        """
        Validate an inference config against the model's capabilities

        Unknown models are accepted as-is: the registry only constrains what
        it knows about.

        Raises:
            InferenceConfigError: On the first violated constraint
        """
        model = self.get(model_id)
        if model is None:
            return

        if config.max_tokens is not None and config.max_tokens > model.max_output_tokens:
            raise InferenceConfigError(
                model_id,
                f"max_tokens {config.max_tokens} exceeds model limit {model.max_output_tokens}",
            )

        low, high = model.temperature_range
        if config.temperature is not None and not low <= config.temperature <= high:
            raise InferenceConfigError(
                model_id,
                f"temperature {config.temperature} outside [{low}, {high}]",
            )

        if config.top_p is not None and not model.supports_top_p:
            raise InferenceConfigError(model_id, "top_p is not supported")

        if len(config.stop_sequences) > model.max_stop_sequences:
            raise InferenceConfigError(
                model_id,
                f"{len(config.stop_sequences)} stop sequences exceed limit {model.max_stop_sequences}",
            )

    def to_provider_params(self, model_id: str, config: InferenceConfig) -> Dict[str, Any]:
        """Shape an inference config into LiteLLM completion parameters"""
        self.validate(model_id, config)
        model = self.get(model_id)

        params: Dict[str, Any] = {}
        if config.max_tokens is not None:
            params["max_tokens"] = config.max_tokens
        elif model and model.requires_max_tokens:
            params["max_tokens"] = model.max_output_tokens
        if config.temperature is not None:
            params["temperature"] = config.temperature
        if config.top_p is not None:
            params["top_p"] = config.top_p
        if config.stop_sequences:
            params["stop"] = list(config.stop_sequences)
        return params

    def context_window(self, model_id: str, default: int) -> int:
        model = self.get(model_id)
        return model.context_window if model else default

    def get_available_models(self) -> List[Dict[str, Any]]:
        """Get list of available models"""
        seen = set()
        models = []
        for config in self.models.values():
            if config.name in seen:
                continue
            seen.add(config.name)
            models.append({
                "id": config.name,
                "object": "model",
                "owned_by": config.provider,
                "context_window": config.context_window,
                "max_output_tokens": config.max_output_tokens,
                "supports_tools": config.supports_tools,
            })
        return models
