"""
Audit Logging for capability invocations

One row per invocation: who called what, with which outcome.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Index
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from capgate.db.base_class import Base

logger = logging.getLogger(__name__)


class CapabilityAuditLog(Base):
    """Audit log model for tracking capability invocations"""
    __tablename__ = "capability_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    caller_id = Column(Integer, index=True)
    role = Column(String, index=True)
    conversation_id = Column(Integer, index=True)
    capability = Column(String, nullable=False, index=True)
    ok = Column(Boolean, nullable=False)
    error_kind = Column(String)
    error_message = Column(Text)
    duration_ms = Column(Integer)
    log_metadata = Column("metadata", Text)  # JSON metadata (argument names, etc.)

    __table_args__ = (
        Index('idx_capability_audit_caller', 'caller_id', 'capability'),
        Index('idx_capability_audit_conversation', 'conversation_id', 'timestamp'),
    )

    def __repr__(self):
        return f"<CapabilityAuditLog {self.id}: {self.caller_id} - {self.capability}>"


class AuditLogger:
    """Service for creating audit log entries"""

    @staticmethod
    async def log_invocation(
        db: AsyncSession,
        capability: str,
        ok: bool,
        caller_id: Optional[int] = None,
        role: Optional[str] = None,
        conversation_id: Optional[int] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CapabilityAuditLog:
        """
        Create an audit log entry for one capability invocation.

        A failed write is rolled back and logged; it never fails the invocation
        that is being audited.

        Args:
            db: Database session
            capability: Capability name as requested by the caller
            ok: Whether the invocation succeeded
            caller_id: Caller identifier
            role: Caller role as supplied
            conversation_id: Conversation the call belongs to, if any
            error_kind: Error taxonomy kind on failure
            error_message: Error message on failure
            duration_ms: Invocation duration in milliseconds
            metadata: Additional metadata as dictionary

        Returns:
            Created CapabilityAuditLog instance
        """
        log_entry = CapabilityAuditLog(
            timestamp=datetime.now(timezone.utc),
            caller_id=caller_id,
            role=role,
            conversation_id=conversation_id,
            capability=capability,
            ok=ok,
            error_kind=error_kind,
            error_message=error_message,
            duration_ms=duration_ms,
            log_metadata=json.dumps(metadata, default=str) if metadata else None,
        )

        try:
            db.add(log_entry)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.warning(f"Audit log write skipped due to DB error: {exc}")

        return log_entry
