"""
Capability Service - the single entry point of the agent loop

``CapabilityService.execute`` runs one invocation end to end:

1. Resolve the capability by name (disabled capabilities count as unknown)
2. Authorize the caller role against the capability's access level
3. Validate and normalize the arguments
4. Run the handler in the sandbox
5. Log, audit and return a structured result

Failures at any step come back as ``InvocationResult(ok=False, ...)``; the
agent loop never sees a raw exception.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capgate.core.audit import AuditLogger
from capgate.core.config import Settings, settings as default_settings
from capgate.core.logging_config import get_logger
from capgate.services.capabilities.access_control import (
    DEFAULT_ROLE_ACCESS_MAP,
    AccessControlEvaluator,
    RoleAccessMap,
)
from capgate.services.capabilities.analytics import AnalyticQueryEngine
from capgate.services.capabilities.catalog import ImplementationCatalog, builtin_catalog
from capgate.services.capabilities.errors import (
    CapabilityError,
    ExecutionError,
    PermissionDeniedError,
)
from capgate.services.capabilities.identifiers import IdentifierValidator, TableAllowList
from capgate.services.capabilities.registry import CapabilityRegistry
from capgate.services.capabilities.sandbox import ExecutionSandbox, RetryPolicy
from capgate.services.capabilities.schema import (
    CapabilityListing,
    CapabilitySpec,
    InvocationRequest,
    InvocationResult,
)
from capgate.services.capabilities.validation import ParameterValidator

logger = logging.getLogger(__name__)

# Never exposed to capabilities, whatever the role map says
EXCLUDED_TABLES = ("users", "capability_audit_logs")


class CapabilityService:
    """
    Holds the registry, the evaluator, the validator, the sandbox and the
    analytic engine of one process. Construct it once at startup and pass it
    to whatever transport serves the agent loop.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        evaluator: AccessControlEvaluator,
        validator: ParameterValidator,
        sandbox: ExecutionSandbox,
        engine: AnalyticQueryEngine,
        session_factory: Optional[async_sessionmaker] = None,
        audit_invocations: bool = False,
    ):
        self.registry = registry
        self.evaluator = evaluator
        self.validator = validator
        self.sandbox = sandbox
        self.engine = engine
        self.session_factory = session_factory
        self.audit_invocations = audit_invocations

    async def execute(self, request: InvocationRequest) -> InvocationResult:
        """
        Execute a named capability for a caller.

        Args:
            request: Capability name, arguments and caller identity

        Returns:
            InvocationResult: ``ok`` with a value, or ``errorKind`` and message
        """
        start_time = time.time()
        name = request.capability_name
        caller = request.caller()
        invocation_log = get_logger(__name__).bind(
            capability=name,
            caller_id=caller.caller_id,
            role=caller.role,
            conversation_id=caller.conversation_id,
        )

        try:
            spec = self.registry.require(name)

            if not self.evaluator.can_execute(spec.access_level, caller.role):
                raise PermissionDeniedError(
                    f"Access denied: capability '{name}' requires '{spec.access_level.value}' access level"
                )

            arguments = self.validator.validate(request.arguments, spec.parameter_schema)
            value = await self.sandbox.execute(spec, arguments, caller)

            result = InvocationResult.success(name, value, self._elapsed_ms(start_time))
            invocation_log.info(
                f"Capability {name} succeeded for caller {caller.caller_id} "
                f"(role={caller.role}) in {result.execution_time_ms}ms",
                extra={"ok": True, "duration_ms": result.execution_time_ms},
            )

        except CapabilityError as exc:
            exc.with_context(capability=name, caller_id=caller.caller_id, role=caller.role)
            result = InvocationResult.failure(name, exc.kind, exc.message, self._elapsed_ms(start_time))
            invocation_log.warning(
                f"Capability {name} failed for caller {caller.caller_id} "
                f"(role={caller.role}): {exc.kind}: {exc.message}",
                extra={"ok": False, "error_kind": exc.kind, "duration_ms": result.execution_time_ms},
            )

        except Exception as exc:
            invocation_log.exception(f"Unexpected error executing capability {name}: {exc}")
            result = InvocationResult.failure(
                name,
                ExecutionError.kind,
                f"Capability '{name}' failed: {exc}",
                self._elapsed_ms(start_time),
            )

        await self._audit(request, result)
        return result

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)

    async def _audit(self, request: InvocationRequest, result: InvocationResult) -> None:
        if not self.audit_invocations or self.session_factory is None:
            return
        try:
            async with self.session_factory() as db:
                await AuditLogger.log_invocation(
                    db,
                    capability=request.capability_name,
                    ok=result.ok,
                    caller_id=request.caller_id,
                    role=request.caller_role,
                    conversation_id=request.conversation_id,
                    error_kind=result.error_kind,
                    error_message=result.message,
                    duration_ms=result.execution_time_ms,
                    metadata={"arguments": sorted(request.arguments)},
                )
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(f"Audit session unavailable for {request.capability_name}: {exc}")

    # ------------------------------------------------------------------
    # Listing and administration
    # ------------------------------------------------------------------

    def list_capabilities(self, role: Any) -> List[Dict[str, Any]]:
        """The caller's tool menu: ``[{name, description, parameterSchema}]``"""
        return [
            CapabilityListing.from_spec(spec).model_dump(by_alias=True)
            for spec in self.registry.list_accessible_to(role)
        ]

    def get_openai_tools(self, role: Any) -> List[Dict[str, Any]]:
        return self.registry.get_openai_tools_spec(role)

    def get_tools_prompt(self, role: Any) -> str:
        return self.registry.get_tools_prompt(role)

    def register(self, spec: Union[CapabilitySpec, Dict[str, Any]]) -> CapabilitySpec:
        return self.registry.register(spec)

    def disable(self, name: str) -> CapabilitySpec:
        return self.registry.disable(name)

    def enable(self, name: str) -> CapabilitySpec:
        return self.registry.enable(name)

    def list_tables(self, role: Any) -> List[Dict[str, Any]]:
        return self.engine.list_tables(role)

    def describe_table(self, role: Any, table_name: str) -> Dict[str, Any]:
        schema = self.engine.table_schema(role, table_name)
        schema["relationships"] = self.engine.table_relationships(role, table_name)
        return schema

    async def refresh_allow_list(self) -> TableAllowList:
        """
        Rebuild the table allow-list from the live database schema.

        This is the only way the allow-list changes after startup.
        """
        if self.session_factory is None:
            raise RuntimeError("No session factory configured; cannot reflect the database")

        session: AsyncSession
        async with self.session_factory() as session:
            connection = await session.connection()
            allow_list = await TableAllowList.reflect(connection, exclude=EXCLUDED_TABLES)

        self.engine.identifiers = IdentifierValidator(allow_list)
        logger.info(f"Table allow-list refreshed: {len(allow_list)} tables")
        return allow_list


def build_capability_service(
    app_settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
    catalog: Optional[ImplementationCatalog] = None,
    allow_list: Optional[TableAllowList] = None,
    access_map: Optional[RoleAccessMap] = None,
    register_builtins: bool = True,
) -> CapabilityService:
    """
    Wire a ``CapabilityService`` from settings.

    Defaults: the allow-list comes from the declarative models, the role map
    from ``ROLE_PERMISSIONS_FILE`` when set, and the built-in capabilities
    are registered.
    """
    app_settings = app_settings or default_settings

    if session_factory is None:
        from capgate.db.session import get_session_factory
        session_factory = get_session_factory()

    if allow_list is None:
        from capgate.db.base import Base
        allow_list = TableAllowList.from_metadata(Base.metadata, exclude=EXCLUDED_TABLES)

    if access_map is None:
        if app_settings.ROLE_PERMISSIONS_FILE:
            access_map = RoleAccessMap.from_file(app_settings.ROLE_PERMISSIONS_FILE)
        else:
            access_map = DEFAULT_ROLE_ACCESS_MAP

    if catalog is None:
        # importing the package registers the built-in handlers
        from capgate.services.capabilities import builtin  # noqa: F401
        catalog = builtin_catalog

    evaluator = AccessControlEvaluator(access_map)
    engine = AnalyticQueryEngine(
        IdentifierValidator(allow_list),
        evaluator,
        default_limit=app_settings.QUERY_DEFAULT_LIMIT,
        max_limit=app_settings.QUERY_MAX_LIMIT,
        anomaly_threshold=app_settings.ANOMALY_DEFAULT_THRESHOLD,
    )
    sandbox = ExecutionSandbox(
        catalog,
        engine,
        session_factory,
        timeout_ms=app_settings.CAPABILITY_TIMEOUT_MS,
        retry_policy=RetryPolicy(
            max_attempts=app_settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=app_settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=app_settings.RETRY_MAX_DELAY_MS,
        ),
    )
    registry = CapabilityRegistry(catalog=catalog, evaluator=evaluator)

    service = CapabilityService(
        registry=registry,
        evaluator=evaluator,
        validator=ParameterValidator(),
        sandbox=sandbox,
        engine=engine,
        session_factory=session_factory,
        audit_invocations=app_settings.AUDIT_INVOCATIONS,
    )

    if register_builtins:
        for spec in catalog.default_specs():
            registry.register(spec)
        logger.info(f"Registered {len(registry)} default capabilities")

    return service
