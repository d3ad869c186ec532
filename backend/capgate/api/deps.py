import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from capgate.services.capabilities.schema import CallerIdentity, Role
from capgate.services.capabilities.service import CapabilityService

logger = logging.getLogger("capgate.deps")


def get_capability_service(request: Request) -> CapabilityService:
    """The process-wide service built at startup (see ``capgate.main``)."""
    service = getattr(request.app.state, "capability_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Capability service is not initialized",
        )
    return service


async def get_caller(
    x_caller_id: int = Header(..., alias="X-Caller-Id"),
    x_caller_role: str = Header(..., alias="X-Caller-Role"),
    x_conversation_id: Optional[int] = Header(None, alias="X-Conversation-Id"),
) -> CallerIdentity:
    """
    Caller identity as forwarded by the agent loop.

    Authentication happens upstream; this layer trusts the headers and only
    checks that they are well formed.
    """
    if Role.parse(x_caller_role) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown caller role: {x_caller_role}",
        )
    return CallerIdentity(
        caller_id=x_caller_id,
        role=x_caller_role.strip().lower(),
        conversation_id=x_conversation_id,
    )


async def require_admin(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    """Registry administration is restricted to the admin role."""
    if Role.parse(caller.role) != Role.ADMIN:
        logger.warning(f"Caller {caller.caller_id} with role {caller.role} denied registry administration")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return caller
