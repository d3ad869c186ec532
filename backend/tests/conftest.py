"""
Shared test fixtures and configuration for capgate backend tests.
"""
import os
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DEBUG"] = "true"


def make_result(rows: Optional[List[Dict[str, Any]]] = None, rowcount: int = 0) -> MagicMock:
    """A stand-in for a SQLAlchemy ``Result`` returning ``rows`` as mappings."""
    rows = rows or []
    result = MagicMock()
    result.mappings.return_value.all.return_value = rows
    result.mappings.return_value.first.return_value = rows[0] if rows else None
    result.rowcount = rowcount
    return result


def compile_sql(stmt) -> str:
    """Render a statement with the PostgreSQL dialect, parameters left bound."""
    return str(stmt.compile(dialect=postgresql.dialect()))


def executed_sql(session) -> List[str]:
    """SQL text of every statement passed to ``session.execute``."""
    return [compile_sql(call.args[0]) for call in session.execute.call_args_list]


def _async_context(value=None) -> MagicMock:
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=value)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


@pytest.fixture
def mock_db_session():
    """Create a mock async database session."""
    session = AsyncMock(spec=AsyncSession)
    session.execute = AsyncMock(return_value=make_result())
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.add = MagicMock()
    session.close = AsyncMock()
    session.in_transaction = MagicMock(return_value=True)
    session.begin = MagicMock(return_value=_async_context())
    session.begin_nested = MagicMock(return_value=_async_context())
    return session


@pytest.fixture
def session_factory(mock_db_session):
    """``async with session_factory() as session`` yields the mock session."""
    factory = MagicMock()
    factory.return_value = _async_context(mock_db_session)
    return factory


@pytest.fixture
def allow_list():
    """Allow-list built from the declarative models, as at startup."""
    from capgate.db.base import Base
    from capgate.services.capabilities.identifiers import TableAllowList
    from capgate.services.capabilities.service import EXCLUDED_TABLES

    return TableAllowList.from_metadata(Base.metadata, exclude=EXCLUDED_TABLES)


@pytest.fixture
def identifier_validator(allow_list):
    from capgate.services.capabilities.identifiers import IdentifierValidator

    return IdentifierValidator(allow_list)


@pytest.fixture
def evaluator():
    from capgate.services.capabilities.access_control import AccessControlEvaluator

    return AccessControlEvaluator()


@pytest.fixture
def query_engine(identifier_validator, evaluator):
    from capgate.services.capabilities.analytics import AnalyticQueryEngine

    return AnalyticQueryEngine(identifier_validator, evaluator, default_limit=100, max_limit=1000)


@pytest.fixture
def test_settings():
    """Settings with auditing off and fast retries."""
    from capgate.core.config import Settings

    return Settings(
        AUDIT_INVOCATIONS=False,
        CAPABILITY_TIMEOUT_MS=2000,
        RETRY_BASE_DELAY_MS=1,
        RETRY_MAX_DELAY_MS=2,
    )


@pytest.fixture
def capability_service(test_settings, session_factory, allow_list):
    """Fully wired service with the built-in capabilities and a mock database."""
    from capgate.services.capabilities.service import build_capability_service

    return build_capability_service(
        app_settings=test_settings,
        session_factory=session_factory,
        allow_list=allow_list,
    )


@pytest.fixture
def caller_headers():
    def _headers(role: str = "user", caller_id: int = 42, conversation_id: Optional[int] = 7):
        headers = {"X-Caller-Id": str(caller_id), "X-Caller-Role": role}
        if conversation_id is not None:
            headers["X-Conversation-Id"] = str(conversation_id)
        return headers
    return _headers
