"""
Capability Registry - central store of capability specs

Specs are registered through the administrative path and read on every
invocation. Registration is an upsert keyed by name: the last writer wins,
``created_at`` survives and ``updated_at`` moves.

Usage:
    registry = CapabilityRegistry(catalog=builtin_catalog)
    registry.register(spec)

    # Tool menu for a caller
    tools = registry.get_openai_tools_spec(role="user")
"""

import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from capgate.services.capabilities.access_control import AccessControlEvaluator
from capgate.services.capabilities.catalog import ImplementationCatalog, builtin_catalog
from capgate.services.capabilities.errors import NotFoundError, ValidationError
from capgate.services.capabilities.schema import CapabilitySpec
from capgate.services.capabilities.validation import ParameterValidator

logger = logging.getLogger(__name__)

CAPABILITY_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")


class CapabilityRegistry:
    """
    Holds capability specs by name.

    The registry only stores specs whose ``implementation`` key exists in
    its catalog and whose parameter schema passes the structural check.
    """

    def __init__(
        self,
        catalog: Optional[ImplementationCatalog] = None,
        evaluator: Optional[AccessControlEvaluator] = None,
    ):
        self.catalog = catalog if catalog is not None else builtin_catalog
        self.evaluator = evaluator or AccessControlEvaluator()
        self._specs: Dict[str, CapabilitySpec] = {}

    def register(self, spec: Union[CapabilitySpec, Dict[str, Any]]) -> CapabilitySpec:
        """
        Insert or replace a capability spec.

        Args:
            spec: A ``CapabilitySpec`` or its camelCase/snake_case mapping

        Returns:
            The stored spec, with generated fields filled in

        Raises:
            ValidationError: bad name, bad parameter schema, or an
                implementation key the catalog does not know
        """
        if not isinstance(spec, CapabilitySpec):
            try:
                spec = CapabilitySpec.model_validate(spec)
            except ValueError as exc:
                raise ValidationError(f"Invalid capability spec: {exc}") from exc

        if not CAPABILITY_NAME_PATTERN.match(spec.name):
            raise ValidationError(f"Invalid capability name: {spec.name!r}")

        ParameterValidator.check_schema(spec.parameter_schema)

        if spec.implementation not in self.catalog:
            raise ValidationError(
                f"Capability '{spec.name}' references unknown implementation '{spec.implementation}'"
            )

        now = datetime.now(timezone.utc)
        existing = self._specs.get(spec.name)

        stored = spec.model_copy(update={
            "parameter_schema": copy.deepcopy(spec.parameter_schema),
            "created_at": existing.created_at if existing else (spec.created_at or now),
            "updated_at": now,
        })
        self._specs[spec.name] = stored

        action = "Updated" if existing else "Registered"
        logger.info(f"{action} capability: {spec.name} ({spec.access_level.value})")
        return stored

    def get(self, name: str) -> Optional[CapabilitySpec]:
        """Get a registered capability by name"""
        return self._specs.get(name)

    def require(self, name: str) -> CapabilitySpec:
        """Get an enabled capability or raise ``NotFoundError``"""
        spec = self._specs.get(name)
        if spec is None or not spec.enabled:
            raise NotFoundError(f"Capability '{name}' not found or not enabled", capability=name)
        return spec

    def unregister(self, name: str) -> bool:
        removed = self._specs.pop(name, None)
        if removed is not None:
            logger.info(f"Unregistered capability: {name}")
        return removed is not None

    def disable(self, name: str) -> CapabilitySpec:
        return self._set_enabled(name, False)

    def enable(self, name: str) -> CapabilitySpec:
        return self._set_enabled(name, True)

    def _set_enabled(self, name: str, enabled: bool) -> CapabilitySpec:
        spec = self._specs.get(name)
        if spec is None:
            raise NotFoundError(f"Capability '{name}' not found", capability=name)
        updated = spec.model_copy(update={"enabled": enabled, "updated_at": datetime.now(timezone.utc)})
        self._specs[name] = updated
        logger.info(f"Capability {name} {'enabled' if enabled else 'disabled'}")
        return updated

    def list_all(self, include_disabled: bool = False) -> List[CapabilitySpec]:
        specs = sorted(self._specs.values(), key=lambda s: s.name)
        if include_disabled:
            return specs
        return [spec for spec in specs if spec.enabled]

    def list_by_module(self, module: str) -> List[CapabilitySpec]:
        return [spec for spec in self.list_all() if spec.module == module]

    def list_by_tag(self, tag: str) -> List[CapabilitySpec]:
        return [spec for spec in self.list_all() if tag in spec.tags]

    def list_accessible_to(self, role: Any) -> List[CapabilitySpec]:
        return [
            spec for spec in self.list_all()
            if self.evaluator.can_execute(spec.access_level, role)
        ]

    def search(self, query: str, role: Any = None) -> List[CapabilitySpec]:
        """Case-insensitive substring match on name and description"""
        needle = (query or "").strip().lower()
        candidates = self.list_all() if role is None else self.list_accessible_to(role)
        if not needle:
            return candidates
        return [
            spec for spec in candidates
            if needle in spec.name.lower() or needle in spec.description.lower()
        ]

    def get_openai_tools_spec(self, role: Any) -> List[Dict[str, Any]]:
        """
        Get the caller's tools in OpenAI function calling format.

        Returns a list suitable for passing to the OpenAI API's `tools` parameter.
        """
        return [spec.to_openai_format() for spec in self.list_accessible_to(role)]

    def get_tools_prompt(self, role: Any) -> str:
        """
        Generate a tools description prompt for LLMs without native tool support.
        """
        tools_desc = [spec.to_prompt_format() for spec in self.list_accessible_to(role)]
        if not tools_desc:
            return "No tools are available for this conversation."

        return """You have access to the following tools:

{}

To use a tool, respond with a JSON object in this EXACT format:
{{"tool_calls": [{{"name": "tool_name", "arguments": {{"arg1": "value1"}}}}]}}

IMPORTANT:
- Only output the JSON when you need to call a tool
- After receiving tool results, analyze them and provide a clear answer
- If a tool returns a PermissionError or ValidationError, do not repeat the same call
""".format("\n".join(tools_desc))

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs
