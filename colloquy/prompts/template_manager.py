"""Prompt template registry with append-only variant versioning"""

import asyncio
import json
from datetime import datetime
from typing import Optional, Dict, Any, List
import redis.asyncio as redis

from colloquy.errors.exceptions import (
    DuplicateNameError,
    MissingVariableError,
    TemplateNotFoundError,
    TemplateVariableMismatch,
    VariantNotFoundError,
)
from colloquy.models.prompt_template import (
    PLACEHOLDER_PATTERN,
    PromptTemplate,
    PromptVariant,
    ResolvedPrompt,
)
from colloquy.router.model_registry import ModelRegistry
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "template:"


class TemplateManager:
    """
    Manage prompt templates with versioned variants

    Variants are never edited in place: a template evolves only by appending
    variants or moving its default pointer, so any earlier variant can be
    resolved again (rollback).
    """

    def __init__(self, model_registry: Optional[ModelRegistry] = None):
        self.redis_client: Optional[redis.Redis] = None
        self.templates_cache: Dict[str, PromptTemplate] = {}
        self.model_registry = model_registry
        self._lock = asyncio.Lock()

    async def connect(self, redis_url: str = "redis://localhost:6379/4", password: Optional[str] = None):
        """Connect to Redis"""
        try:
            self.redis_client = redis.from_url(redis_url, password=password, decode_responses=True)
            await self.redis_client.ping()
        except Exception as e:
            logger.warning("Redis connection failed: %s. Templates kept in memory only.", e)
            self.redis_client = None

    async def disconnect(self):
        """Disconnect"""
        if self.redis_client:
            await self.redis_client.aclose()

    async def create_template(
        self,
        name: str,
        variants: List[PromptVariant],
        default_variant: str,
        description: Optional[str] = None,
        **extra: Any,
    ) -> PromptTemplate:
        """
        Create a new template

        Raises:
            DuplicateNameError: Template name taken, or two variants share a name
            TemplateVariableMismatch: A variant's placeholders differ from its declared variables
            VariantNotFoundError: default_variant names none of the variants
        """
        seen = set()
        for variant in variants:
            if variant.name in seen:
                raise DuplicateNameError("Variant", variant.name)
            seen.add(variant.name)
            self._validate_variant(variant)

        if default_variant not in seen:
            raise VariantNotFoundError(name, default_variant)

        template = PromptTemplate(
            name=name,
            description=description,
            variants=list(variants),
            default_variant=default_variant,
            **extra,
        )

        async with self._lock:
            if await self._load(name) is not None:
                raise DuplicateNameError("Template", name)
            await self._store(template, only_if_new=True)

        logger.info("Created template %s with %d variant(s)", name, len(variants))
        return template

    async def add_variant(self, name: str, variant: PromptVariant) -> PromptTemplate:
        """Append a variant to an existing template"""
        self._validate_variant(variant)

        async with self._lock:
            template = await self.get_template(name)
            if template.get_variant(variant.name) is not None:
                raise DuplicateNameError("Variant", variant.name)

            updated = template.model_copy(update={
                "variants": [*template.variants, variant],
                "updated_at": datetime.now(),
            })
            await self._store(updated)

        logger.info("Added variant %s to template %s", variant.name, name)
        return updated

    async def set_default(self, name: str, variant_name: str) -> PromptTemplate:
        """Move the default variant pointer"""
        async with self._lock:
            template = await self.get_template(name)
            if template.get_variant(variant_name) is None:
                raise VariantNotFoundError(name, variant_name)

            updated = template.model_copy(update={
                "default_variant": variant_name,
                "updated_at": datetime.now(),
            })
            await self._store(updated)

        logger.info("Template %s default variant -> %s", name, variant_name)
        return updated

    async def get_template(self, name: str) -> PromptTemplate:
        """Get template by name"""
        template = await self._load(name)
        if template is None:
            raise TemplateNotFoundError(name)
        return template

    async def list_templates(self) -> List[PromptTemplate]:
        """List all known templates"""
        if self.redis_client:
            async for key in self.redis_client.scan_iter(match=f"{KEY_PREFIX}*"):
                await self._load(key[len(KEY_PREFIX):])
        return sorted(self.templates_cache.values(), key=lambda t: t.name)

    async def resolve(
        self,
        name: str,
        variables: Dict[str, Any],
        variant_name: Optional[str] = None,
    ) -> ResolvedPrompt:
        """
        Substitute variables into a variant

        Extra variables are ignored; every declared variable must be supplied.

        Raises:
            MissingVariableError: A declared variable is absent from ``variables``
        """
        template = await self.get_template(name)
        variant_name = variant_name or template.default_variant
        variant = template.get_variant(variant_name)
        if variant is None:
            raise VariantNotFoundError(name, variant_name)

        missing = [var for var in variant.input_variables if var not in variables]
        if missing:
            raise MissingVariableError(missing)

        return ResolvedPrompt(
            template_name=template.name,
            variant_name=variant.name,
            kind=variant.kind,
            model_id=variant.model_id,
            text=self._substitute(variant.template, variables),
            system_prompt=(
                self._substitute(variant.system_prompt, variables)
                if variant.system_prompt is not None
                else None
            ),
            inference_config=variant.inference_config,
        )

    async def get_default(self, name: str, variables: Dict[str, Any]) -> ResolvedPrompt:
        """Resolve using the current default variant"""
        return await self.resolve(name, variables)

    def _validate_variant(self, variant: PromptVariant):
        declared = set(variant.input_variables)
        used = variant.placeholders()
        malformed = variant.malformed_placeholders()
        if declared != used or malformed:
            raise TemplateVariableMismatch(
                variant.name,
                missing=list(declared - used),
                undeclared=list(used - declared) + list(malformed),
            )
        if self.model_registry:
            self.model_registry.validate(variant.model_id, variant.inference_config)

    def _substitute(self, text: str, variables: Dict[str, Any]) -> str:
        # Single pass, so substituted values are never re-scanned
        return PLACEHOLDER_PATTERN.sub(lambda m: str(variables[m.group(1)]), text)

    async def _load(self, name: str) -> Optional[PromptTemplate]:
        # Check cache
        if name in self.templates_cache:
            return self.templates_cache[name]

        # Check Redis
        if self.redis_client:
            data = await self.redis_client.get(f"{KEY_PREFIX}{name}")
            if data:
                template = PromptTemplate.model_validate_json(data)
                self.templates_cache[name] = template
                return template

        return None

    async def _store(self, template: PromptTemplate, only_if_new: bool = False):
        if self.redis_client:
            stored = await self.redis_client.set(
                f"{KEY_PREFIX}{template.name}",
                template.model_dump_json(),
                nx=only_if_new,
            )
            if only_if_new and not stored:
                raise DuplicateNameError("Template", template.name)

        self.templates_cache[template.name] = template

    def export(self, template: PromptTemplate) -> Dict[str, Any]:
        """JSON-friendly representation"""
        return json.loads(template.model_dump_json())
