"""
SQLAlchemy ORM models for database tables.

Column names and constraints mirror line_crm.schema_registry.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from line_crm.storage import Base, utcnow


class User(Base):
    """
    A LINE contact known to the CRM.

    Table: users
    Natural key: line_user_id (unique, used for idempotent creation)
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    line_user_id = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(Text, nullable=True)
    picture_url = Column(Text, nullable=True)
    status_message = Column(Text, nullable=True)
    language = Column(String, nullable=True)
    group_display_name = Column(Text, nullable=True)
    erp_bi_code = Column(String, nullable=True)
    erp_bi_name = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    first_message_at = Column(DateTime(timezone=True), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True, index=True)
    message_count = Column(Integer, nullable=False, default=0)
    # TEXT[] on Postgres; JSON keeps the ordered list portable across engines
    tags = Column(JSON, nullable=True, default=lambda: [])
    notes = Column(Text, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "Message",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """
    One inbound LINE message event.

    Table: messages
    Unique: line_message_id (ensures idempotency)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    line_message_id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    message_type = Column(String, nullable=False, index=True)
    text_content = Column(Text, nullable=True)
    file_id = Column(String, nullable=True)
    file_name = Column(Text, nullable=True)
    file_path = Column(Text, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    file_type = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    processed = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="messages")


class MessageLimit(Base):
    __tablename__ = "message_limits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    limit_type = Column(String, nullable=False, unique=True, index=True)
    limit_value = Column(Integer, nullable=False)
    current_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SystemStat(Base):
    __tablename__ = "system_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stat_name = Column(String, nullable=False, unique=True, index=True)
    stat_value = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# Registry table name -> ORM class, used by the persistence adapter
TABLE_MODELS = {
    "users": User,
    "messages": Message,
    "message_limits": MessageLimit,
    "system_stats": SystemStat,
}
