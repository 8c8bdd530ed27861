"""Tool specification models"""

from typing import Optional, Dict, Any, List, Literal
from pydantic import BaseModel, Field, model_validator

PropertyType = Literal["string", "number", "integer", "boolean", "array", "object"]


class ToolProperty(BaseModel):
    """Single typed input property"""
    type: PropertyType
    description: Optional[str] = None
    enum: Optional[List[Any]] = None


class ToolInputSchema(BaseModel):
    """Typed properties plus required set"""
    properties: Dict[str, ToolProperty] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)
    additional_properties: bool = True

    @model_validator(mode="after")
    def _required_are_declared(self) -> "ToolInputSchema":
        unknown = [name for name in self.required if name not in self.properties]
        if unknown:
            raise ValueError(f"Required properties not declared: {unknown}")
        return self

    def to_json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                name: prop.model_dump(exclude_none=True)
                for name, prop in self.properties.items()
            },
            "required": list(self.required),
            "additionalProperties": self.additional_properties,
        }


class ToolSpec(BaseModel):
    """Tool definition advertised to the model"""
    name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    description: str
    input_schema: ToolInputSchema = Field(default_factory=ToolInputSchema)
