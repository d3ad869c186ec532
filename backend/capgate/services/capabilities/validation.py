"""
Parameter Validator

Structural check of invocation arguments against a capability's declared
parameter schema: required names, declared types, defaults. Unknown extra
arguments are passed through untouched. Nested objects and array items are
only checked when ``recursive=True``.
"""

import copy
import logging
from typing import Any, Dict, Mapping, Optional

from capgate.services.capabilities.errors import ValidationError

logger = logging.getLogger(__name__)

TYPE_MAP = {
    "string": str,
    "number": (int, float),
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def check_type(value: Any, expected: str) -> bool:
    """Check if value matches expected JSON Schema type"""
    expected_types = TYPE_MAP.get(expected)
    if expected_types is None:
        return True
    # bool is an int subclass; it is never a number here
    if isinstance(value, bool) and expected in ("number", "integer"):
        return False
    return isinstance(value, expected_types)


class ParameterValidator:
    """Validates and normalizes capability arguments."""

    def __init__(self, recursive: bool = False):
        self.recursive = recursive

    def validate(
        self,
        arguments: Mapping[str, Any],
        schema: Mapping[str, Any],
        recursive: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Return normalized arguments or raise ``ValidationError``.

        Args:
            arguments: Arguments as supplied by the caller
            schema: The capability's parameter schema
            recursive: Override the instance default for nested validation

        Returns:
            A new dict: the caller's arguments plus filled-in defaults
        """
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise ValidationError(f"Arguments must be an object, got {type(arguments).__name__}")

        deep = self.recursive if recursive is None else recursive
        return self._validate_object(dict(arguments), schema or {}, deep, path="")

    def _validate_object(
        self,
        arguments: Dict[str, Any],
        schema: Mapping[str, Any],
        deep: bool,
        path: str,
    ) -> Dict[str, Any]:
        properties = schema.get("properties") or {}
        required = schema.get("required") or []

        for name in required:
            if name not in arguments:
                raise ValidationError(f"Missing required parameter: {path}{name}")

        normalized = dict(arguments)

        extras = [name for name in normalized if name not in properties]
        if extras:
            logger.debug(f"Passing through undeclared parameters: {', '.join(map(str, extras))}")

        for name, spec in properties.items():
            if name not in normalized:
                if "default" in spec:
                    normalized[name] = copy.deepcopy(spec["default"])
                continue

            value = normalized[name]
            expected = spec.get("type")
            if expected and not check_type(value, expected):
                raise ValidationError(
                    f"Parameter {path}{name} should be {expected}, got {type(value).__name__}"
                )

            enum_values = spec.get("enum")
            if enum_values and value not in enum_values:
                raise ValidationError(
                    f"Parameter {path}{name} must be one of: {', '.join(str(v) for v in enum_values)}"
                )

            if deep:
                normalized[name] = self._validate_nested(value, spec, f"{path}{name}")

        return normalized

    def _validate_nested(self, value: Any, spec: Mapping[str, Any], path: str) -> Any:
        if isinstance(value, dict) and spec.get("properties"):
            return self._validate_object(value, spec, True, path=f"{path}.")

        items = spec.get("items")
        if isinstance(value, list) and isinstance(items, Mapping):
            checked = []
            for index, item in enumerate(value):
                item_path = f"{path}[{index}]"
                expected = items.get("type")
                if expected and not check_type(item, expected):
                    raise ValidationError(
                        f"Parameter {item_path} should be {expected}, got {type(item).__name__}"
                    )
                checked.append(self._validate_nested(item, items, item_path))
            return checked

        return value

    @staticmethod
    def check_schema(schema: Any) -> None:
        """
        Registration-time structural check of a parameter schema.

        Raises ``ValidationError`` naming the first problem found.
        """
        if not isinstance(schema, Mapping):
            raise ValidationError("Parameter schema must be an object")
        if schema.get("type", "object") != "object":
            raise ValidationError("Parameter schema type must be 'object'")

        properties = schema.get("properties", {})
        if not isinstance(properties, Mapping):
            raise ValidationError("Parameter schema 'properties' must be an object")

        for name, spec in properties.items():
            if not isinstance(spec, Mapping):
                raise ValidationError(f"Property '{name}' must be an object")
            declared = spec.get("type")
            if declared is not None and declared not in TYPE_MAP:
                raise ValidationError(f"Property '{name}' has unknown type '{declared}'")
            if "default" in spec and declared and not check_type(spec["default"], declared):
                raise ValidationError(f"Default for property '{name}' is not a {declared}")

        required = schema.get("required", [])
        if not isinstance(required, list):
            raise ValidationError("Parameter schema 'required' must be a list")
        for name in required:
            if name not in properties:
                raise ValidationError(f"Required parameter '{name}' is not declared in properties")
