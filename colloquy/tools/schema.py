"""Tool input validation"""

from typing import Dict, Any, List

from colloquy.models.tool import ToolInputSchema

TYPE_MAPPING = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def validate_input(schema: ToolInputSchema, payload: Dict[str, Any]) -> List[str]:
    """
    Validate a payload against a tool input schema

    Returns:
        List of error messages, empty when the payload is valid
    """
    if not isinstance(payload, dict):
        return [f"Input must be an object, got {type(payload).__name__}"]

    errors = []

    # Check required fields
    for field in schema.required:
        if field not in payload:
            errors.append(f"Missing required parameter: {field}")

    # Check parameter types
    for field, value in payload.items():
        prop = schema.properties.get(field)
        if prop is None:
            if not schema.additional_properties:
                errors.append(f"Unexpected parameter: {field}")
            continue

        expected = TYPE_MAPPING[prop.type]
        # bool is an int subclass; only "boolean" accepts it
        if isinstance(value, bool) and prop.type != "boolean":
            errors.append(f"Parameter '{field}' must be {prop.type}, got bool")
        elif not isinstance(value, expected):
            errors.append(f"Parameter '{field}' must be {prop.type}, got {type(value).__name__}")
        elif prop.enum is not None and value not in prop.enum:
            errors.append(f"Parameter '{field}' must be one of {prop.enum}")

    return errors
