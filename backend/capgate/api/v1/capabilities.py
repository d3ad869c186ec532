from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from capgate.api.deps import get_caller, get_capability_service, require_admin
from capgate.core.logging_config import get_logger
from capgate.services.capabilities.errors import CapabilityError
from capgate.services.capabilities.schema import CallerIdentity, InvocationRequest
from capgate.services.capabilities.service import CapabilityService

router = APIRouter()
logger = get_logger("capgate.api.capabilities")

# HTTP status for each error kind on the administrative endpoints.
# /execute always answers 200 with the structured result instead.
ERROR_STATUS = {
    "ValidationError": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "PermissionError": status.HTTP_403_FORBIDDEN,
    "NotFoundError": status.HTTP_404_NOT_FOUND,
    "QueryError": status.HTTP_400_BAD_REQUEST,
    "ExecutionError": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _http_error(exc: CapabilityError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=exc.to_dict(),
    )


# Pydantic models
class ExecuteRequest(BaseModel):
    """Body of POST /execute; the caller comes from the headers"""
    capabilityName: str = Field(..., description="Registered capability name")
    arguments: Dict[str, Any] = Field(default_factory=dict)


class CapabilityMenuEntry(BaseModel):
    name: str
    description: str
    parameterSchema: Dict[str, Any]


class ToolsResponse(BaseModel):
    tools: List[Dict[str, Any]]
    prompt: str


class RegisterResponse(BaseModel):
    name: str
    implementation: str
    accessLevel: str
    enabled: bool


# ============================================================================
# Agent loop endpoints
# ============================================================================

@router.get("", response_model=List[CapabilityMenuEntry])
async def list_capabilities(
    caller: CallerIdentity = Depends(get_caller),
    service: CapabilityService = Depends(get_capability_service),
):
    """Capabilities the caller's role may execute, sorted by name."""
    return service.list_capabilities(caller.role)


@router.get("/tools", response_model=ToolsResponse)
async def get_tools(
    caller: CallerIdentity = Depends(get_caller),
    service: CapabilityService = Depends(get_capability_service),
):
    """The caller's menu in OpenAI function-calling format, plus a prompt rendering."""
    return ToolsResponse(
        tools=service.get_openai_tools(caller.role),
        prompt=service.get_tools_prompt(caller.role),
    )


@router.post("/execute")
async def execute_capability(
    body: ExecuteRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: CapabilityService = Depends(get_capability_service),
) -> Dict[str, Any]:
    """
    Execute one capability.

    Failures are part of the result (``ok: false`` with ``errorKind`` and
    ``message``), so the agent loop can feed them back to the model.
    """
    result = await service.execute(
        InvocationRequest(
            capability_name=body.capabilityName,
            arguments=body.arguments,
            caller_id=caller.caller_id,
            caller_role=caller.role,
            conversation_id=caller.conversation_id,
        )
    )
    return jsonable_encoder(result.to_response())


@router.get("/tables")
async def list_tables(
    caller: CallerIdentity = Depends(get_caller),
    service: CapabilityService = Depends(get_capability_service),
) -> List[Dict[str, Any]]:
    return service.list_tables(caller.role)


@router.get("/tables/{table_name}")
async def describe_table(
    table_name: str,
    caller: CallerIdentity = Depends(get_caller),
    service: CapabilityService = Depends(get_capability_service),
) -> Dict[str, Any]:
    try:
        return service.describe_table(caller.role, table_name)
    except CapabilityError as exc:
        raise _http_error(exc)


# ============================================================================
# Registry administration (admin role)
# ============================================================================

def _registered(spec) -> RegisterResponse:
    return RegisterResponse(
        name=spec.name,
        implementation=spec.implementation,
        accessLevel=spec.access_level.value,
        enabled=spec.enabled,
    )


@router.post("", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register_capability(
    spec: Dict[str, Any],
    caller: CallerIdentity = Depends(require_admin),
    service: CapabilityService = Depends(get_capability_service),
):
    """Register or replace a capability bound to an existing implementation key."""
    try:
        registered = service.register(spec)
    except CapabilityError as exc:
        raise _http_error(exc)
    logger.info(f"Capability {registered.name} registered by caller {caller.caller_id}")
    return _registered(registered)


@router.post("/{name}/disable", response_model=RegisterResponse)
async def disable_capability(
    name: str,
    caller: CallerIdentity = Depends(require_admin),
    service: CapabilityService = Depends(get_capability_service),
):
    try:
        spec = service.disable(name)
    except CapabilityError as exc:
        raise _http_error(exc)
    logger.info(f"Capability {name} disabled by caller {caller.caller_id}")
    return _registered(spec)


@router.post("/{name}/enable", response_model=RegisterResponse)
async def enable_capability(
    name: str,
    caller: CallerIdentity = Depends(require_admin),
    service: CapabilityService = Depends(get_capability_service),
):
    try:
        spec = service.enable(name)
    except CapabilityError as exc:
        raise _http_error(exc)
    logger.info(f"Capability {name} enabled by caller {caller.caller_id}")
    return _registered(spec)


@router.post("/tables/refresh")
async def refresh_tables(
    caller: CallerIdentity = Depends(require_admin),
    service: CapabilityService = Depends(get_capability_service),
) -> Dict[str, Optional[Any]]:
    """Re-read the table allow-list from the live database."""
    allow_list = await service.refresh_allow_list()
    return {"tables": allow_list.table_names(), "count": len(allow_list)}
