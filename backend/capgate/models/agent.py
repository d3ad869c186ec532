from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from capgate.db.base_class import Base


class AgentConversation(Base):
    __tablename__ = "langchain_agent_conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    context = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="active")  # active, archived, deleted

    messages = relationship("AgentMessage", back_populates="conversation", cascade="all, delete-orphan")


class AgentMessage(Base):
    __tablename__ = "langchain_agent_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("langchain_agent_conversations.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String, nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    tokens = Column(Integer, nullable=True)
    function_call = Column(JSON, nullable=True)
    function_response = Column(JSON, nullable=True)

    conversation = relationship("AgentConversation", back_populates="messages")


class AgentTask(Base):
    __tablename__ = "langchain_agent_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, scheduled, in-progress, completed, failed
    data = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
