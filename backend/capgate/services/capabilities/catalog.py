"""
Implementation Catalog - closed dispatch table of capability handlers

A capability spec never carries code. Its ``implementation`` field is a key
into this catalog, which maps keys to async functions defined in this
package. Handlers are registered at import time and looked up on every
invocation; nothing is compiled or evaluated at runtime.

Usage:
    from capgate.services.capabilities.catalog import builtin_catalog

    @builtin_catalog.register("equipment.list", spec=EQUIPMENT_LIST_SPEC)
    async def list_equipment(facade, args, context):
        ...
"""

import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from capgate.services.capabilities.errors import ExecutionError
from capgate.services.capabilities.schema import CapabilitySpec

if TYPE_CHECKING:
    from capgate.services.capabilities.sandbox import DataAccessFacade, ExecutionContext

logger = logging.getLogger(__name__)

Handler = Callable[["DataAccessFacade", Dict[str, Any], "ExecutionContext"], Awaitable[Any]]


@dataclass(frozen=True)
class CatalogEntry:
    """A handler and the spec it ships with, if any"""
    key: str
    handler: Handler
    default_spec: Optional[CapabilitySpec] = None


class ImplementationCatalog:
    """Maps implementation keys to statically defined async handlers."""

    def __init__(self):
        self._entries: Dict[str, CatalogEntry] = {}

    def register(
        self,
        key: str,
        spec: Optional[CapabilitySpec] = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of ``register_handler``"""
        def decorator(func: Handler) -> Handler:
            self.register_handler(key, func, spec)
            return func
        return decorator

    def register_handler(
        self,
        key: str,
        handler: Handler,
        spec: Optional[CapabilitySpec] = None,
    ) -> None:
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Handler for '{key}' must be an async function")
        if spec is not None and spec.implementation != key:
            raise ValueError(
                f"Default spec '{spec.name}' points at '{spec.implementation}', not '{key}'"
            )
        self._entries[key] = CatalogEntry(key=key, handler=handler, default_spec=spec)
        logger.debug(f"Registered implementation: {key}")

    def get(self, key: str) -> Optional[CatalogEntry]:
        return self._entries.get(key)

    def resolve(self, key: str) -> Handler:
        entry = self._entries.get(key)
        if entry is None:
            raise ExecutionError(f"No implementation registered under '{key}'")
        return entry.handler

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def default_specs(self) -> List[CapabilitySpec]:
        return [entry.default_spec for entry in self._entries.values() if entry.default_spec is not None]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# Catalog the built-in handlers register into
builtin_catalog = ImplementationCatalog()
