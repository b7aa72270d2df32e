import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import case, create_engine, event, inspect, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from line_crm.config import settings
from line_crm.ports import UniqueViolationError
from line_crm.schema_registry import (
    DATABASE_SCHEMA,
    MESSAGE_LIMITS,
    MESSAGES,
    USERS,
    get_table,
    primary_key_of,
    unknown_columns,
)
from line_crm.schemas import MessageRecord, UserRecord

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the configured database.

    SQLite needs check_same_thread=False because adapter calls run on worker
    threads, and foreign keys must be switched on per connection for the
    messages -> users cascade.
    """
    is_sqlite = database_url.startswith("sqlite")
    db_engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=False,
    )

    if is_sqlite:
        @event.listens_for(db_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


engine = create_db_engine(settings.DATABASE_URL)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables and seeding message_limits.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url!r}")
    try:
        # Import models to register them with Base.metadata
        from line_crm.models import MessageLimit

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)

        with SessionLocal() as db:
            for row in DATABASE_SCHEMA[MESSAGE_LIMITS].initial_data:
                exists = db.query(MessageLimit).filter(
                    MessageLimit.limit_type == row["limit_type"]
                ).first()
                if exists is None:
                    db.add(MessageLimit(**row))
            db.commit()

        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the CRM tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            inspector = inspect(conn)
            for table in (USERS, MESSAGES):
                if not inspector.has_table(table):
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Persistence Adapter
# =============================================================================

class SqlAlchemyPersistence:
    """
    PersistencePort implementation over a SQLAlchemy session factory.

    Each call opens its own short session and runs on a worker thread so the
    event loop is never blocked. Counter updates are single UPDATE statements
    (x = x + 1), which keeps concurrent events for one user from losing
    increments without any read-modify-write in Python. record_message stores
    a message and applies that update in one transaction.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or SessionLocal

    # -- users ---------------------------------------------------------------

    async def find_user_by_external_id(self, line_user_id: str) -> Optional[UserRecord]:
        return await asyncio.to_thread(self._find_user_by_external_id, line_user_id)

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        return await asyncio.to_thread(self._get_user, user_id)

    async def create_user(self, fields: dict[str, Any]) -> UserRecord:
        return await asyncio.to_thread(self._create_user, fields)

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> Optional[UserRecord]:
        return await asyncio.to_thread(self._update_user, user_id, fields)

    async def increment_message_counters(
        self, user_id: int, last_message_at: datetime
    ) -> Optional[UserRecord]:
        return await asyncio.to_thread(self._increment_message_counters, user_id, last_message_at)

    # -- messages ------------------------------------------------------------

    async def insert_message(self, fields: dict[str, Any]) -> MessageRecord:
        return await asyncio.to_thread(self._insert_message, fields)

    async def record_message(self, fields: dict[str, Any]) -> MessageRecord:
        return await asyncio.to_thread(self._record_message, fields)

    # -- generic reads -------------------------------------------------------

    async def select_all(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        batch_size: int = 1000,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._select_all, table, filters or {}, batch_size)

    # -- sync implementations ------------------------------------------------

    @staticmethod
    def _check_columns(table: str, fields: dict[str, Any]) -> None:
        bad = unknown_columns(table, fields)
        if bad:
            raise ValueError(f"Unknown columns for {table}: {', '.join(bad)}")

    def _find_user_by_external_id(self, line_user_id: str) -> Optional[UserRecord]:
        from line_crm.models import User

        with self._session_factory() as db:
            user = db.query(User).filter(User.line_user_id == line_user_id).first()
            logger.debug(f"User lookup {line_user_id}: {'found' if user else 'not found'}")
            return UserRecord.model_validate(user) if user else None

    def _get_user(self, user_id: int) -> Optional[UserRecord]:
        from line_crm.models import User

        with self._session_factory() as db:
            user = db.get(User, user_id)
            return UserRecord.model_validate(user) if user else None

    def _create_user(self, fields: dict[str, Any]) -> UserRecord:
        from line_crm.models import User

        self._check_columns(USERS, fields)
        line_user_id = fields.get("line_user_id")
        logger.info(f"Creating user: line_user_id={line_user_id}")

        with self._session_factory() as db:
            user = User(**fields)
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                exists = db.query(User.id).filter(User.line_user_id == line_user_id).first()
                if exists is None:
                    raise
                logger.info(f"User already exists: {line_user_id}")
                raise UniqueViolationError(USERS, line_user_id) from None
            db.refresh(user)
            return UserRecord.model_validate(user)

    def _update_user(self, user_id: int, fields: dict[str, Any]) -> Optional[UserRecord]:
        from line_crm.models import User

        self._check_columns(USERS, fields)
        with self._session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                logger.warning(f"Update skipped, user {user_id} not found")
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            db.commit()
            db.refresh(user)
            logger.debug(f"Updated user {user_id}: {sorted(fields)}")
            return UserRecord.model_validate(user)

    @staticmethod
    def _counter_update(user_id: int, message_at: datetime):
        """Single UPDATE bumping both counters and widening the first/last window."""
        from line_crm.models import User

        return (
            update(User)
            .where(User.id == user_id)
            .values(
                message_count=User.message_count + 1,
                unread_count=User.unread_count + 1,
                # out-of-order deliveries must not narrow the first/last window
                first_message_at=case(
                    (User.first_message_at.is_(None), message_at),
                    (User.first_message_at > message_at, message_at),
                    else_=User.first_message_at,
                ),
                last_message_at=case(
                    (User.last_message_at.is_(None), message_at),
                    (User.last_message_at < message_at, message_at),
                    else_=User.last_message_at,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    def _increment_message_counters(
        self, user_id: int, last_message_at: datetime
    ) -> Optional[UserRecord]:
        from line_crm.models import User

        with self._session_factory() as db:
            result = db.execute(self._counter_update(user_id, last_message_at))
            db.commit()
            if result.rowcount == 0:
                logger.warning(f"Counter update skipped, user {user_id} not found")
                return None
            user = db.get(User, user_id)
            return UserRecord.model_validate(user)

    @staticmethod
    def _message_values(fields: dict[str, Any]) -> dict[str, Any]:
        values = dict(fields)
        if "metadata" in values:
            values["message_metadata"] = values.pop("metadata")
        return values

    @staticmethod
    def _raise_if_duplicate(db: Session, line_message_id: Optional[str]) -> None:
        from line_crm.models import Message

        exists = db.query(Message.id).filter(Message.line_message_id == line_message_id).first()
        if exists is not None:
            logger.info(f"Duplicate message detected: {line_message_id}")
            raise UniqueViolationError(MESSAGES, line_message_id) from None

    def _insert_message(self, fields: dict[str, Any]) -> MessageRecord:
        from line_crm.models import Message

        self._check_columns(MESSAGES, fields)
        line_message_id = fields.get("line_message_id")
        logger.info(f"Creating message: id={line_message_id}, user_id={fields.get('user_id')}")

        with self._session_factory() as db:
            message = Message(**self._message_values(fields))
            db.add(message)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                self._raise_if_duplicate(db, line_message_id)
                raise
            db.refresh(message)
            logger.info(f"Message created successfully: {line_message_id}")
            return MessageRecord.model_validate(message)

    def _record_message(self, fields: dict[str, Any]) -> MessageRecord:
        from line_crm.models import Message

        self._check_columns(MESSAGES, fields)
        line_message_id = fields.get("line_message_id")
        user_id = fields.get("user_id")
        logger.info(f"Recording message: id={line_message_id}, user_id={user_id}")

        with self._session_factory() as db:
            message = Message(**self._message_values(fields))
            db.add(message)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                self._raise_if_duplicate(db, line_message_id)
                raise
            # leaving the session without commit rolls the insert back
            result = db.execute(self._counter_update(user_id, fields["timestamp"]))
            if result.rowcount == 0:
                raise LookupError(f"user {user_id} not found")
            db.commit()
            db.refresh(message)
            logger.info(f"Message recorded: {line_message_id}")
            return MessageRecord.model_validate(message)

    def _select_all(
        self, table: str, filters: dict[str, Any], batch_size: int
    ) -> list[dict[str, Any]]:
        from line_crm.models import TABLE_MODELS

        get_table(table)
        self._check_columns(table, filters)
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        sa_table = TABLE_MODELS[table].__table__
        query = select(sa_table).order_by(sa_table.c[primary_key_of(table)])
        for column, value in filters.items():
            query = query.where(sa_table.c[column] == value)

        rows: list[dict[str, Any]] = []
        offset = 0
        with self._session_factory() as db:
            while True:
                page = db.execute(query.offset(offset).limit(batch_size)).mappings().all()
                rows.extend(dict(row) for row in page)
                logger.debug(f"Read {len(rows)} rows from {table}")
                if len(page) < batch_size:
                    break
                offset += batch_size

        logger.info(f"Selected {len(rows)} rows from {table}")
        return rows
