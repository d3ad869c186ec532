"""
Tests for capgate/services/capabilities/sandbox.py - data facade and sandbox.
"""
import asyncio
import dataclasses
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from capgate.services.capabilities.catalog import ImplementationCatalog
from capgate.services.capabilities.errors import (
    ExecutionError,
    NotFoundError,
    PermissionDeniedError,
    QueryError,
)
from capgate.services.capabilities.sandbox import (
    DataAccessFacade,
    ExecutionContext,
    ExecutionSandbox,
    RetryPolicy,
)
from capgate.services.capabilities.schema import AccessLevel, CallerIdentity, CapabilitySpec
from conftest import executed_sql, make_result

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=1)


@pytest.fixture
def facade(mock_db_session, query_engine):
    return DataAccessFacade(mock_db_session, "user", query_engine, FAST_RETRY)


def retryable_error() -> QueryError:
    error = QueryError("Query failed: connection reset")
    error.retryable = True
    return error


class TestRetryPolicy:
    """Test backoff delays."""

    def test_exponential_and_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay_ms=300, max_delay_ms=1000)

        assert policy.delay_for(0) == 0.3
        assert policy.delay_for(1) == 0.6
        assert policy.delay_for(4) == 1.0


class TestFacadeBoundary:
    """Only the documented operations are reachable."""

    @pytest.mark.parametrize("name", [
        "_DataAccessFacade__state",
        "session",
        "engine",
        "__dict__",
        "__init__",
        "__getattribute__",
    ])
    def test_private_attributes_denied(self, facade, name):
        with pytest.raises(PermissionDeniedError):
            getattr(facade, name)

    def test_cannot_set_or_delete(self, facade):
        with pytest.raises(PermissionDeniedError):
            facade.role = "admin"
        with pytest.raises(PermissionDeniedError):
            del facade.select

    def test_public_surface(self, facade):
        assert facade.role == "user"
        assert callable(facade.select)
        assert isinstance(facade, DataAccessFacade)
        assert "role=user" in repr(facade)
        assert facade.row_limit == 1000

    def test_guard_covers_ordinary_access_only(self, facade, mock_db_session):
        """object.__getattribute__ still reaches the state; handlers are trusted catalog code."""
        state = object.__getattribute__(facade, "_DataAccessFacade__state")

        assert state.session is mock_db_session


class TestFacadeReads:
    """Reads delegate to the engine with the bound role."""

    @pytest.mark.asyncio
    async def test_select_uses_bound_role(self, mock_db_session, query_engine):
        public = DataAccessFacade(mock_db_session, "public", query_engine)

        with pytest.raises(PermissionDeniedError):
            await public.select("maintenance_log")
        mock_db_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_count(self, facade, mock_db_session):
        mock_db_session.execute.return_value = make_result([{"count": 3}])

        assert await facade.count("equipment", {"status": "operational"}) == 3

    def test_table_metadata(self, facade):
        columns = facade.table_metadata("power_data")

        assert columns["solar_output"].numeric is True

    def test_list_tables(self, facade):
        names = [t["name"] for t in facade.list_tables()]

        assert "langchain_agent_tasks" in names
        assert "users" not in names


class TestFacadeWrites:
    """Writes check write/delete permission and require filters."""

    @pytest.mark.asyncio
    async def test_insert_returns_row(self, facade, mock_db_session):
        mock_db_session.execute.return_value = make_result([{"id": 9, "task": "Check freezer"}])

        row = await facade.insert("langchain_agent_tasks", {"userId": 1, "task": "Check freezer"})

        assert row == {"id": 9, "task": "Check freezer"}
        sql = executed_sql(mock_db_session)[0]
        assert sql.startswith("INSERT INTO langchain_agent_tasks (user_id, task")
        assert "RETURNING" in sql

    @pytest.mark.asyncio
    async def test_insert_without_write_permission(self, facade, mock_db_session):
        with pytest.raises(PermissionDeniedError):
            await facade.insert("equipment", {"name": "Pump"})

        mock_db_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_insert_unknown_column(self, facade, mock_db_session):
        with pytest.raises(QueryError):
            await facade.insert("langchain_agent_tasks", {"task; DROP TABLE users": "x"})

        mock_db_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_bulk_insert(self, facade, mock_db_session):
        count = await facade.bulk_insert(
            "langchain_agent_messages",
            [{"conversation_id": 1, "role": "user", "content": "hi"},
             {"conversation_id": 1, "role": "assistant", "content": "hello"}],
        )

        assert count == 2
        params = mock_db_session.execute.call_args.args[1]
        assert [p["content"] for p in params] == ["hi", "hello"]

    @pytest.mark.asyncio
    async def test_bulk_insert_empty(self, facade, mock_db_session):
        assert await facade.bulk_insert("langchain_agent_messages", []) == 0
        mock_db_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_update(self, facade, mock_db_session):
        mock_db_session.execute.return_value = make_result(rowcount=1)

        updated = await facade.update("langchain_agent_tasks", {"status": "completed"}, {"id": 4})

        assert updated == 1
        sql = executed_sql(mock_db_session)[0]
        assert sql.startswith("UPDATE langchain_agent_tasks SET status=")
        assert "WHERE langchain_agent_tasks.id = " in sql

    @pytest.mark.asyncio
    async def test_update_without_filters_refused(self, facade, mock_db_session):
        with pytest.raises(QueryError):
            await facade.update("langchain_agent_tasks", {"status": "completed"}, {})

        mock_db_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_needs_delete_permission(self, facade, mock_db_session):
        with pytest.raises(PermissionDeniedError):
            await facade.delete("langchain_agent_tasks", {"id": 1})

        mock_db_session.execute.return_value = make_result(rowcount=2)
        assert await facade.delete("langchain_agent_messages", {"conversation_id": 1}) == 2

    @pytest.mark.asyncio
    async def test_write_failure_becomes_query_error(self, facade, mock_db_session):
        mock_db_session.execute.side_effect = IntegrityError("INSERT", {}, Exception("null value in column"))

        with pytest.raises(QueryError) as exc_info:
            await facade.insert("langchain_agent_tasks", {"task": "x"})

        assert exc_info.value.retryable is False


class TestTransactionAndRetry:
    """Test transaction() and with_retry()."""

    @pytest.mark.asyncio
    async def test_transaction_uses_savepoint_when_open(self, facade, mock_db_session):
        async with facade.transaction() as tx:
            assert tx is facade

        mock_db_session.begin_nested.assert_called_once()
        mock_db_session.begin.assert_not_called()

    @pytest.mark.asyncio
    async def test_transaction_begins_when_idle(self, facade, mock_db_session):
        mock_db_session.in_transaction.return_value = False

        async with facade.transaction():
            pass

        mock_db_session.begin.assert_called_once()

    @pytest.mark.asyncio
    async def test_retry_recovers_from_transient_failure(self, facade, mock_db_session):
        operation = AsyncMock(side_effect=[retryable_error(), "done"])

        assert await facade.with_retry(operation) == "done"
        assert operation.await_count == 2
        mock_db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_on_operational_error(self, facade):
        operation = AsyncMock(side_effect=[OperationalError("SELECT", {}, Exception("gone")), 5])

        assert await facade.with_retry(operation) == 5

    @pytest.mark.asyncio
    async def test_permission_error_never_retried(self, facade):
        operation = AsyncMock(side_effect=PermissionDeniedError("no"))

        with pytest.raises(PermissionDeniedError):
            await facade.with_retry(operation)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_integrity_error_never_retried(self, facade):
        operation = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate")))

        with pytest.raises(IntegrityError):
            await facade.with_retry(operation)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_gives_up(self, facade):
        operation = AsyncMock(side_effect=retryable_error())

        with pytest.raises(QueryError) as exc_info:
            await facade.with_retry(operation, max_attempts=2)

        assert operation.await_count == 2
        assert exc_info.value.message.startswith("Data access failed after 2 attempts")


@pytest.fixture
def sandbox_catalog():
    catalog = ImplementationCatalog()

    @catalog.register("test.context")
    async def context_handler(facade, args, context):
        args["mutated"] = True
        return {"role": facade.role, "caller": context.caller_id, "capability": context.capability}

    @catalog.register("test.boom")
    async def boom(facade, args, context):
        raise ValueError("boom")

    @catalog.register("test.missing_row")
    async def missing_row(facade, args, context):
        raise NotFoundError("Equipment with ID 7 not found")

    @catalog.register("test.slow")
    async def slow(facade, args, context):
        await asyncio.sleep(1)

    @catalog.register("test.sneaky")
    async def sneaky(facade, args, context):
        return facade.session

    return catalog


def spec_for(key: str) -> CapabilitySpec:
    return CapabilitySpec(
        name=key.split(".")[1],
        description="test",
        implementation=key,
        access_level=AccessLevel.PUBLIC,
    )


class TestExecutionSandbox:
    """Test ExecutionSandbox.execute()."""

    @pytest.fixture
    def sandbox(self, sandbox_catalog, query_engine, session_factory):
        return ExecutionSandbox(sandbox_catalog, query_engine, session_factory, timeout_ms=50,
                                retry_policy=FAST_RETRY)

    @pytest.fixture
    def caller(self):
        return CallerIdentity(caller_id=11, role="Manager", conversation_id=3)

    @pytest.mark.asyncio
    async def test_success_commits(self, sandbox, caller, mock_db_session):
        arguments = {"x": 1}

        result = await sandbox.execute(spec_for("test.context"), arguments, caller)

        assert result == {"role": "manager", "caller": 11, "capability": "context"}
        assert arguments == {"x": 1}
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, sandbox, caller, mock_db_session):
        with pytest.raises(ExecutionError) as exc_info:
            await sandbox.execute(spec_for("test.boom"), {}, caller)

        assert exc_info.value.message == "Capability 'boom' failed: boom"
        assert exc_info.value.capability == "boom"
        assert exc_info.value.caller_id == 11
        mock_db_session.rollback.assert_awaited_once()
        mock_db_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_taxonomy_error_keeps_kind(self, sandbox, caller):
        with pytest.raises(NotFoundError) as exc_info:
            await sandbox.execute(spec_for("test.missing_row"), {}, caller)

        assert exc_info.value.capability == "missing_row"
        assert exc_info.value.role == "manager"

    @pytest.mark.asyncio
    async def test_timeout(self, sandbox, caller, mock_db_session):
        with pytest.raises(ExecutionError) as exc_info:
            await sandbox.execute(spec_for("test.slow"), {}, caller)

        assert exc_info.value.message == "Capability 'slow' timed out after 50ms"
        mock_db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_facade_escape_denied(self, sandbox, caller):
        with pytest.raises(PermissionDeniedError):
            await sandbox.execute(spec_for("test.sneaky"), {}, caller)

    @pytest.mark.asyncio
    async def test_unknown_implementation(self, sandbox, caller):
        with pytest.raises(ExecutionError):
            await sandbox.execute(spec_for("test.gone"), {}, caller)


class TestExecutionContext:
    """The context handed to handlers is read-only."""

    def test_frozen(self):
        context = ExecutionContext(capability="x", caller_id=1, role="user")

        with pytest.raises(dataclasses.FrozenInstanceError):
            context.role = "admin"
