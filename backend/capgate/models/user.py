from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from capgate.db.base_class import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False, default="user")  # public, user, manager, admin
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
