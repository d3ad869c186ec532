"""
Capability Gateway

Lets an AI agent invoke named capabilities against the application database
without ever sending SQL or code. Every invocation is authorized by role,
validated against the capability's parameter schema and run against a
restricted data facade.

Main components:
- schema.py: enums and Pydantic models (specs, requests, results)
- errors.py: the error taxonomy returned to callers
- identifiers.py: table/column allow-list and identifier validation
- access_control.py: role -> access level and table permission evaluation
- validation.py: argument validation against JSON-schema-like specs
- catalog.py: closed mapping of implementation keys to handlers
- registry.py: capability specs by name, filtered by role
- query_builder.py / analytics.py: parameterized analytic queries
- sandbox.py: data facade, retries, timeouts and transactions
- service.py: the end-to-end ``execute`` entry point
"""

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
    IdentifierError,
    NotFoundError,
    PermissionDeniedError,
    QueryError,
    ValidationError,
)
from capgate.services.capabilities.identifiers import IdentifierValidator, TableAllowList
from capgate.services.capabilities.registry import CapabilityRegistry
from capgate.services.capabilities.sandbox import (
    DataAccessFacade,
    ExecutionContext,
    ExecutionSandbox,
    RetryPolicy,
)
from capgate.services.capabilities.schema import (
    AccessLevel,
    CallerIdentity,
    CapabilitySpec,
    InvocationRequest,
    InvocationResult,
    Role,
    TableOperation,
)
from capgate.services.capabilities.service import CapabilityService, build_capability_service
from capgate.services.capabilities.validation import ParameterValidator

__all__ = [
    "AccessControlEvaluator",
    "AccessLevel",
    "AnalyticQueryEngine",
    "CallerIdentity",
    "CapabilityError",
    "CapabilityRegistry",
    "CapabilityService",
    "CapabilitySpec",
    "DEFAULT_ROLE_ACCESS_MAP",
    "DataAccessFacade",
    "ExecutionContext",
    "ExecutionError",
    "ExecutionSandbox",
    "IdentifierError",
    "IdentifierValidator",
    "ImplementationCatalog",
    "InvocationRequest",
    "InvocationResult",
    "NotFoundError",
    "ParameterValidator",
    "PermissionDeniedError",
    "QueryError",
    "RetryPolicy",
    "Role",
    "RoleAccessMap",
    "TableAllowList",
    "TableOperation",
    "ValidationError",
    "build_capability_service",
    "builtin_catalog",
]
