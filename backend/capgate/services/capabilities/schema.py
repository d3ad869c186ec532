"""
Capability Definition Schema - records exchanged with the agent loop

Pydantic models for capability specs, caller identities, invocation requests
and results. Wire names are camelCase (``parameterSchema``, ``errorKind``);
Python attributes are snake_case.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


class AccessLevel(str, Enum):
    """Privilege tier attached to a capability."""
    PUBLIC = "public"
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"
    RESTRICTED = "restricted"


class Role(str, Enum):
    """Caller privilege classification."""
    PUBLIC = "public"
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """Case-insensitive lookup; anything unrecognised yields ``None``."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class TableOperation(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


def empty_parameter_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class CapabilitySpec(BaseModel):
    """
    A registered unit of behavior the agent may invoke.

    ``implementation`` is the key of a statically defined handler in the
    implementation catalog; it is never source code.
    """
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=False,
    )

    name: str = Field(..., description="Unique capability identifier")
    description: str = Field(..., description="What the capability does and when to use it")
    module: str = Field(default="general", description="Grouping tag")
    parameter_schema: Dict[str, Any] = Field(
        default_factory=empty_parameter_schema,
        description="JSON-Schema-like structure: type, properties, required",
    )
    return_type_hint: str = "object"
    implementation: str = Field(..., description="Key of the handler in the implementation catalog")
    access_level: AccessLevel = AccessLevel.RESTRICTED
    tags: FrozenSet[str] = Field(default_factory=frozenset)

    # Generated by the registry
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("access_level", mode="before")
    @classmethod
    def _normalize_access_level(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_serializer("tags")
    def _serialize_tags(self, tags: FrozenSet[str]) -> List[str]:
        return sorted(tags)

    def to_openai_format(self) -> Dict[str, Any]:
        """Convert to OpenAI tools API format"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema,
            }
        }

    def to_prompt_format(self) -> str:
        """Convert to human-readable format for prompt injection"""
        params_desc = []
        properties = self.parameter_schema.get("properties", {})
        required = self.parameter_schema.get("required", [])

        for param_name, param_spec in properties.items():
            param_type = param_spec.get("type", "string")
            param_desc = param_spec.get("description", "")
            is_required = param_name in required
            enum_values = param_spec.get("enum", [])

            param_str = f"  - {param_name} ({param_type}"
            if is_required:
                param_str += ", required"
            param_str += f"): {param_desc}"
            if enum_values:
                param_str += f" [options: {', '.join(str(v) for v in enum_values)}]"
            params_desc.append(param_str)

        params_section = "\n".join(params_desc) if params_desc else "  (no parameters)"

        return f"""Tool: {self.name}
Description: {self.description}
Parameters:
{params_section}
"""


class CapabilityListing(BaseModel):
    """Entry of the tool menu shown to the agent"""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    name: str
    description: str
    parameter_schema: Dict[str, Any]

    @classmethod
    def from_spec(cls, spec: CapabilitySpec) -> "CapabilityListing":
        return cls(
            name=spec.name,
            description=spec.description,
            parameter_schema=spec.parameter_schema,
        )


class CallerIdentity(BaseModel):
    """Who is calling. Supplied per call, never persisted by the core."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    caller_id: int
    role: str
    conversation_id: Optional[int] = None


class InvocationRequest(BaseModel):
    """A single capability call from the agent loop"""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    capability_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    caller_id: int
    caller_role: str
    conversation_id: Optional[int] = None

    def caller(self) -> CallerIdentity:
        return CallerIdentity(
            caller_id=self.caller_id,
            role=self.caller_role,
            conversation_id=self.conversation_id,
        )


class InvocationResult(BaseModel):
    """Result of a capability invocation"""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    ok: bool
    value: Optional[Any] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    capability: Optional[str] = None
    execution_time_ms: int = 0

    @classmethod
    def success(cls, capability: str, value: Any, execution_time_ms: int = 0) -> "InvocationResult":
        return cls(ok=True, value=value, capability=capability, execution_time_ms=execution_time_ms)

    @classmethod
    def failure(
        cls,
        capability: str,
        error_kind: str,
        message: str,
        execution_time_ms: int = 0,
    ) -> "InvocationResult":
        return cls(
            ok=False,
            error_kind=error_kind,
            message=message,
            capability=capability,
            execution_time_ms=execution_time_ms,
        )

    def to_response(self) -> Dict[str, Any]:
        """The wire shape: ``{ok, value}`` or ``{ok, errorKind, message}``"""
        if self.ok:
            return {"ok": True, "value": self.value}
        return {"ok": False, "errorKind": self.error_kind, "message": self.message}

    def to_message_content(self) -> str:
        """Convert to string for LLM message"""
        if self.ok:
            if isinstance(self.value, (dict, list)):
                return json.dumps(self.value, indent=2, default=str)
            return str(self.value)
        return f"{self.error_kind}: {self.message}"
