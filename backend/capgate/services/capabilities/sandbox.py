"""
Execution Sandbox - runs capability handlers behind a restricted data facade

A handler receives three things: its validated arguments, a read-only
``ExecutionContext`` and a ``DataAccessFacade`` bound to the caller role and
to the invocation's session. Handlers are given no other route to data. The facade
exposes a fixed set of operations, each validating identifiers and table
permissions before building SQL. Names outside that set raise on ordinary
attribute access, but Python offers no real isolation: introspection can
still reach the session. Containment rests on handlers coming only from the
closed ``ImplementationCatalog``, which is reviewed code, never agent input.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import and_, delete, insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capgate.services.capabilities import query_builder as qb
from capgate.services.capabilities.analytics import AnalyticQueryEngine
from capgate.services.capabilities.catalog import ImplementationCatalog
from capgate.services.capabilities.errors import (
    CapabilityError,
    ExecutionError,
    PermissionDeniedError,
    QueryError,
)
from capgate.services.capabilities.identifiers import ColumnInfo
from capgate.services.capabilities.schema import CallerIdentity, CapabilitySpec, Role, TableOperation

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient data-access failures"""
    max_attempts: int = 3
    base_delay_ms: int = 300
    max_delay_ms: int = 5000

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (zero-based) failed attempt"""
        return min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms) / 1000


@dataclass(frozen=True)
class ExecutionContext:
    """What a handler may know about its invocation"""
    capability: str
    caller_id: int
    role: str
    conversation_id: Optional[int] = None
    timeout_ms: int = 30000
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _FacadeState:
    session: AsyncSession
    role: str
    engine: AnalyticQueryEngine
    retry_policy: RetryPolicy


def _state(facade: "DataAccessFacade") -> _FacadeState:
    return object.__getattribute__(facade, "_DataAccessFacade__state")


def _resolve_values(state: _FacadeState, table, values: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(values, Mapping) or not values:
        raise QueryError("Values must be a non-empty object of column/value pairs")
    identifiers = state.engine.identifiers
    return {identifiers.validate_column(table, name).name: value for name, value in values.items()}


def _conditions(state: _FacadeState, table, filters: Optional[Mapping[str, Any]], action: str) -> list:
    conditions = qb.build_filter_conditions(state.engine.identifiers, table, filters)
    if not conditions:
        raise QueryError(f"Refusing to {action} '{table.name}' without filters")
    return conditions


async def _execute(state: _FacadeState, stmt, params: Optional[List[Dict[str, Any]]] = None):
    try:
        if params is None:
            return await state.session.execute(stmt)
        return await state.session.execute(stmt, params)
    except SQLAlchemyError as exc:
        logger.warning(f"Facade statement failed: {exc}")
        raise qb.query_error_from(exc) from exc


class DataAccessFacade:
    """
    The data-access surface a capability handler is permitted to use.

    Reads: ``select``, ``count``, ``aggregate`` and the analytic operations.
    Writes: ``insert``, ``bulk_insert``, ``update``, ``delete``. Plus
    ``transaction()`` and ``with_retry()``. Ordinary access to anything
    else raises ``PermissionDeniedError``; this guards against handler
    mistakes, not against code that goes around it with introspection.
    """

    __slots__ = ("__state",)

    PUBLIC_ATTRIBUTES = frozenset({
        "role",
        "select",
        "insert",
        "bulk_insert",
        "update",
        "delete",
        "count",
        "aggregate",
        "time_series",
        "correlations",
        "detect_anomalies",
        "describe",
        "table_schema",
        "table_relationships",
        "table_metadata",
        "list_tables",
        "row_limit",
        "transaction",
        "with_retry",
        "PUBLIC_ATTRIBUTES",
        "__class__",
        "__repr__",
        "__doc__",
    })

    def __init__(
        self,
        session: AsyncSession,
        role: str,
        engine: AnalyticQueryEngine,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        object.__setattr__(
            self,
            "_DataAccessFacade__state",
            _FacadeState(session=session, role=role, engine=engine, retry_policy=retry_policy or RetryPolicy()),
        )

    def __getattribute__(self, name: str) -> Any:
        if name not in DataAccessFacade.PUBLIC_ATTRIBUTES:
            raise PermissionDeniedError(f"'{name}' is not available to capability implementations")
        return object.__getattribute__(self, name)

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionDeniedError("The data access facade cannot be modified")

    def __delattr__(self, name: str) -> None:
        raise PermissionDeniedError("The data access facade cannot be modified")

    def __repr__(self) -> str:
        return f"<DataAccessFacade role={_state(self).role}>"

    @property
    def role(self) -> str:
        return _state(self).role

    @property
    def row_limit(self) -> int:
        """Most rows any one query returns"""
        return _state(self).engine.max_limit

    # Reads ------------------------------------------------------------

    async def select(
        self,
        table_name: str,
        fields: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        state = _state(self)
        return await state.engine.select(state.session, state.role, table_name, fields, filters, options)

    async def count(self, table_name: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        state = _state(self)
        return await state.engine.count(state.session, state.role, table_name, filters)

    async def aggregate(
        self,
        table_name: str,
        metrics: Sequence[Mapping[str, Any]],
        group_by: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        state = _state(self)
        return await state.engine.aggregate(
            state.session, state.role, table_name, metrics, group_by, filters, options
        )

    async def time_series(self, table_name: str, time_field: str, metrics, interval: str = "day",
                          filters=None, options=None) -> List[Dict[str, Any]]:
        state = _state(self)
        return await state.engine.time_series(
            state.session, state.role, table_name, time_field, metrics, interval, filters, options
        )

    async def correlations(self, table_name: str, fields: Sequence[str], filters=None) -> List[Dict[str, Any]]:
        state = _state(self)
        return await state.engine.correlations(state.session, state.role, table_name, fields, filters)

    async def detect_anomalies(self, table_name: str, field: str, threshold: Optional[float] = None,
                               filters=None, date_field=None, start_date=None, end_date=None,
                               limit=None) -> Dict[str, Any]:
        state = _state(self)
        return await state.engine.detect_anomalies(
            state.session, state.role, table_name, field, threshold, filters,
            date_field, start_date, end_date, limit,
        )

    async def describe(self, table_name: str, fields=None, filters=None) -> Dict[str, Dict[str, Any]]:
        state = _state(self)
        return await state.engine.describe(state.session, state.role, table_name, fields, filters)

    def table_schema(self, table_name: str) -> Dict[str, Any]:
        state = _state(self)
        return state.engine.table_schema(state.role, table_name)

    def table_relationships(self, table_name: str) -> Dict[str, Any]:
        state = _state(self)
        return state.engine.table_relationships(state.role, table_name)

    def table_metadata(self, table_name: str) -> Dict[str, ColumnInfo]:
        """Column name -> ``ColumnInfo`` for a readable table"""
        state = _state(self)
        table = state.engine.resolve_table(table_name, state.role)
        return state.engine.identifiers.allow_list.columns(table.name)

    def list_tables(self) -> List[Dict[str, Any]]:
        state = _state(self)
        return state.engine.list_tables(state.role)

    # Writes -----------------------------------------------------------

    async def insert(self, table_name: str, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it as stored"""
        state = _state(self)
        table = state.engine.resolve_table(table_name, state.role, TableOperation.WRITE)
        stmt = insert(table).values(_resolve_values(state, table, values)).returning(*table.columns)
        result = await _execute(state, stmt)
        row = result.mappings().first()
        return qb.normalize_row(row) if row is not None else {}

    async def bulk_insert(self, table_name: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert many rows in one executemany round trip; returns the row count"""
        state = _state(self)
        table = state.engine.resolve_table(table_name, state.role, TableOperation.WRITE)
        if not rows:
            return 0
        params = [_resolve_values(state, table, row) for row in rows]
        await _execute(state, insert(table), params)
        return len(params)

    async def update(self, table_name: str, values: Mapping[str, Any], filters: Mapping[str, Any]) -> int:
        state = _state(self)
        table = state.engine.resolve_table(table_name, state.role, TableOperation.WRITE)
        resolved = _resolve_values(state, table, values)
        stmt = update(table).where(and_(*_conditions(state, table, filters, "update"))).values(resolved)
        result = await _execute(state, stmt)
        return result.rowcount

    async def delete(self, table_name: str, filters: Mapping[str, Any]) -> int:
        state = _state(self)
        table = state.engine.resolve_table(table_name, state.role, TableOperation.DELETE)
        stmt = delete(table).where(and_(*_conditions(state, table, filters, "delete from")))
        result = await _execute(state, stmt)
        return result.rowcount

    # Control ----------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["DataAccessFacade"]:
        """
        Atomic block: everything inside commits together or not at all.

        Nested inside an already open transaction this becomes a savepoint.
        """
        session = _state(self).session
        if session.in_transaction():
            async with session.begin_nested():
                yield self
        else:
            async with session.begin():
                yield self

    async def with_retry(self, operation: Callable[[], Awaitable[T]], max_attempts: Optional[int] = None) -> T:
        """
        Run ``operation`` and retry it on transient data-access failures.

        Permission, validation and other non-transient errors propagate on
        the first attempt.
        """
        state = _state(self)
        policy = state.retry_policy
        attempts = max_attempts or policy.max_attempts
        last_exception: Optional[BaseException] = None

        for attempt in range(attempts):
            try:
                return await operation()
            except CapabilityError as exc:
                if not exc.retryable:
                    raise
                last_exception = exc
            except (SQLAlchemyError, ConnectionError, asyncio.TimeoutError) as exc:
                if not qb.is_transient(exc):
                    raise
                last_exception = exc

            if state.session.in_transaction():
                await state.session.rollback()

            if attempt < attempts - 1:
                wait_time = policy.delay_for(attempt)
                logger.warning(
                    f"Transient data access failure (attempt {attempt + 1}/{attempts}): "
                    f"{last_exception}. Retrying in {wait_time:.2f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Data access failed after {attempts} attempts: {last_exception}")

        raise QueryError(f"Data access failed after {attempts} attempts: {last_exception}")


class ExecutionSandbox:
    """Resolves a spec's handler from the catalog and runs it on a fresh session."""

    def __init__(
        self,
        catalog: ImplementationCatalog,
        engine: AnalyticQueryEngine,
        session_factory: async_sessionmaker,
        timeout_ms: int = 30000,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.catalog = catalog
        self.engine = engine
        self.session_factory = session_factory
        self.timeout_ms = timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()

    async def execute(
        self,
        spec: CapabilitySpec,
        arguments: Dict[str, Any],
        caller: CallerIdentity,
    ) -> Any:
        """
        Run the capability and return its value.

        Raises:
            CapabilityError: taxonomy errors raised by the handler keep their
                kind and gain capability/caller context; anything else is
                wrapped in ``ExecutionError``
        """
        role = Role.parse(caller.role)
        role_name = role.value if role else caller.role
        handler = self.catalog.resolve(spec.implementation)
        context = ExecutionContext(
            capability=spec.name,
            caller_id=caller.caller_id,
            role=role_name,
            conversation_id=caller.conversation_id,
            timeout_ms=self.timeout_ms,
        )
        start_time = time.time()

        async with self.session_factory() as session:
            facade = DataAccessFacade(session, role_name, self.engine, self.retry_policy)
            try:
                result = await asyncio.wait_for(
                    handler(facade, dict(arguments), context),
                    timeout=self.timeout_ms / 1000,
                )
                if session.in_transaction():
                    await session.commit()
                return result

            except asyncio.TimeoutError as exc:
                await session.rollback()
                elapsed_ms = int((time.time() - start_time) * 1000)
                logger.error(f"Capability {spec.name} timed out after {elapsed_ms}ms")
                raise ExecutionError(
                    f"Capability '{spec.name}' timed out after {self.timeout_ms}ms",
                    capability=spec.name,
                    caller_id=caller.caller_id,
                    role=role_name,
                ) from exc

            except CapabilityError as exc:
                await session.rollback()
                raise exc.with_context(capability=spec.name, caller_id=caller.caller_id, role=role_name)

            except Exception as exc:
                await session.rollback()
                logger.exception(f"Capability {spec.name} failed for caller {caller.caller_id}: {exc}")
                raise ExecutionError(
                    f"Capability '{spec.name}' failed: {exc}",
                    capability=spec.name,
                    caller_id=caller.caller_id,
                    role=role_name,
                ) from exc
