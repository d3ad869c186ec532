"""
Error taxonomy for capability invocation.

Every failure the agent loop can observe is one of these kinds. The service
turns them into ``{"ok": false, "errorKind": ..., "message": ...}`` results.
"""

from typing import Any, Dict, Optional


class CapabilityError(Exception):
    """Base class for all capability invocation failures."""

    kind: str = "CapabilityError"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        capability: Optional[str] = None,
        caller_id: Optional[int] = None,
        role: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.capability = capability
        self.caller_id = caller_id
        self.role = role

    def with_context(
        self,
        capability: Optional[str] = None,
        caller_id: Optional[int] = None,
        role: Optional[str] = None,
    ) -> "CapabilityError":
        """Attach invocation context without overwriting what is already known."""
        self.capability = self.capability or capability
        self.caller_id = self.caller_id if self.caller_id is not None else caller_id
        self.role = self.role or role
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "errorKind": self.kind, "message": self.message}

    def __str__(self) -> str:
        return self.message


class ValidationError(CapabilityError):
    """Arguments are missing or have the wrong type. Fix the input; never retried."""

    kind = "ValidationError"


class PermissionDeniedError(CapabilityError):
    """Caller role may not run the capability or touch the table."""

    kind = "PermissionError"


class NotFoundError(CapabilityError):
    """Unknown capability name or unknown table."""

    kind = "NotFoundError"


class QueryError(CapabilityError):
    """Malformed or failed SQL operation, including identifier rejection."""

    kind = "QueryError"


class IdentifierError(QueryError):
    """A table or column name is unsafe or absent from the allow-list."""


class ExecutionError(CapabilityError):
    """The capability implementation failed inside its own logic."""

    kind = "ExecutionError"
