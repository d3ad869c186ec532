# Services Package
# Re-exports of the capability gateway entry points

from capgate.services.capabilities import (
    CapabilityService,
    InvocationRequest,
    InvocationResult,
    build_capability_service,
)

__all__ = [
    "CapabilityService",
    "InvocationRequest",
    "InvocationResult",
    "build_capability_service",
]
