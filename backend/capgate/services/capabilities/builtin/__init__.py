"""
Built-in capabilities

Importing this package registers every built-in handler, with its default
spec, on ``builtin_catalog``:
- database.py: schema discovery and generic analytic reads
- power.py: power analysis and environmental correlation
- equipment.py: equipment inventory and maintenance scheduling
- admin.py: system diagnostics
"""

from capgate.services.capabilities.builtin import admin, database, equipment, power  # noqa: F401
from capgate.services.capabilities.catalog import builtin_catalog
from capgate.services.capabilities.registry import CapabilityRegistry


def register_builtin_capabilities(registry: CapabilityRegistry) -> int:
    """Register the default spec of every built-in handler; returns how many"""
    specs = builtin_catalog.default_specs()
    for spec in specs:
        registry.register(spec)
    return len(specs)


__all__ = ["register_builtin_capabilities"]
