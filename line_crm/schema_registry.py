"""
Static description of the CRM database layout.

Single source of truth for table names, columns, indexes, relations and the
object-storage bucket used for message attachments. The persistence adapter
checks field and table names against it before touching the database.

Lookup contract:
- columns_of(table): ordered column names
- primary_key_of(table): primary key column
- has_column(table, column): False for unknown names, never raises
- column_definition(table, column): full ColumnDefinition
"""

from dataclasses import dataclass, field
from typing import Any, Optional


class SchemaLookupError(LookupError):
    """Base class for registry lookups with an unknown name."""


class TableNotFoundError(SchemaLookupError):
    def __init__(self, table: str):
        super().__init__(f"table '{table}' is not defined in the schema registry")
        self.table = table


class ColumnNotFoundError(SchemaLookupError):
    def __init__(self, table: str, column: str):
        super().__init__(f"column '{column}' does not exist in table '{table}'")
        self.table = table
        self.column = column


@dataclass(frozen=True)
class ForeignKey:
    table: str
    column: str
    on_delete: Optional[str] = None


@dataclass(frozen=True)
class ColumnDefinition:
    """Definition of a single column."""

    type: str
    nullable: bool
    description: str
    default: Any = None
    primary_key: bool = False
    unique: bool = False
    foreign_key: Optional[ForeignKey] = None
    choices: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    columns: tuple[str, ...]
    order: Optional[str] = None
    using: Optional[str] = None


@dataclass(frozen=True)
class Relation:
    kind: str  # hasMany | belongsTo
    foreign_table: str
    foreign_key: str
    on_delete: Optional[str] = None


@dataclass(frozen=True)
class TableDefinition:
    name: str
    description: str
    columns: dict[str, ColumnDefinition]
    indexes: tuple[IndexDefinition, ...] = ()
    relations: dict[str, Relation] = field(default_factory=dict)
    initial_data: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class StorageBucket:
    name: str
    description: str
    public: bool
    file_size_limit: int
    folders: dict[str, str]
    allowed_mime_types: Optional[tuple[str, ...]] = None


# =============================================================================
# Constants
# =============================================================================

USERS = "users"
MESSAGES = "messages"
MESSAGE_LIMITS = "message_limits"
SYSTEM_STATS = "system_stats"

MESSAGE_TYPES = ("text", "image", "file", "audio", "video", "sticker", "location")
LIMIT_TYPES = ("max_messages", "max_users")

TIMESTAMPTZ = "TIMESTAMP WITH TIME ZONE"


# =============================================================================
# Table Definitions
# =============================================================================

DATABASE_SCHEMA: dict[str, TableDefinition] = {
    USERS: TableDefinition(
        name=USERS,
        description="LINE contacts with their CRM fields",
        columns={
            "id": ColumnDefinition("INTEGER", False, "Internal user id", primary_key=True),
            "line_user_id": ColumnDefinition("TEXT", False, "LINE platform user id", unique=True),
            "display_name": ColumnDefinition("TEXT", True, "Display name from the LINE profile API"),
            "picture_url": ColumnDefinition("TEXT", True, "Avatar URL"),
            "status_message": ColumnDefinition("TEXT", True, "LINE status message"),
            "language": ColumnDefinition("TEXT", True, "Language reported by LINE"),
            "group_display_name": ColumnDefinition("TEXT", True, "Group chat name"),
            "erp_bi_code": ColumnDefinition("TEXT", True, "Customer code in the ERP system"),
            "erp_bi_name": ColumnDefinition("TEXT", True, "Customer name in the ERP system"),
            "is_active": ColumnDefinition("BOOLEAN", False, "Whether the contact still follows the channel", default=True),
            "first_message_at": ColumnDefinition(TIMESTAMPTZ, True, "Time of the first message"),
            "last_message_at": ColumnDefinition(TIMESTAMPTZ, True, "Time of the latest message"),
            "message_count": ColumnDefinition("INTEGER", False, "Total messages received", default=0),
            "tags": ColumnDefinition("TEXT[]", True, "Customer tags"),
            "notes": ColumnDefinition("TEXT", True, "Free-form customer notes"),
            "unread_count": ColumnDefinition("INTEGER", False, "Messages not yet marked read", default=0),
            "created_at": ColumnDefinition(TIMESTAMPTZ, False, "Creation time", default="NOW()"),
            "updated_at": ColumnDefinition(TIMESTAMPTZ, False, "Last update time", default="NOW()"),
        },
        indexes=(
            IndexDefinition("idx_users_line_user_id", ("line_user_id",)),
            IndexDefinition("idx_users_is_active", ("is_active",)),
            IndexDefinition("idx_users_last_message_at", ("last_message_at",), order="DESC NULLS LAST"),
            IndexDefinition("idx_users_created_at", ("created_at",), order="DESC"),
        ),
        relations={
            "messages": Relation("hasMany", MESSAGES, "user_id", on_delete="CASCADE"),
        },
    ),
    MESSAGES: TableDefinition(
        name=MESSAGES,
        description="Inbound LINE messages",
        columns={
            "id": ColumnDefinition("INTEGER", False, "Internal message id", primary_key=True),
            "line_message_id": ColumnDefinition("TEXT", False, "LINE platform message id", unique=True),
            "user_id": ColumnDefinition(
                "INTEGER", False, "Owning user",
                foreign_key=ForeignKey(USERS, "id", on_delete="CASCADE"),
            ),
            "message_type": ColumnDefinition("TEXT", False, "Message kind", choices=MESSAGE_TYPES),
            "text_content": ColumnDefinition("TEXT", True, "Text payload"),
            "file_id": ColumnDefinition("TEXT", True, "Stored file id"),
            "file_name": ColumnDefinition("TEXT", True, "Original file name"),
            "file_path": ColumnDefinition("TEXT", True, "Path inside the storage bucket"),
            "file_size": ColumnDefinition("BIGINT", True, "File size in bytes"),
            "file_type": ColumnDefinition("TEXT", True, "MIME type"),
            "timestamp": ColumnDefinition(TIMESTAMPTZ, False, "Platform event time"),
            "processed": ColumnDefinition("BOOLEAN", False, "Downstream processing done", default=False),
            "metadata": ColumnDefinition("JSONB", True, "Extra structured data"),
            "created_at": ColumnDefinition(TIMESTAMPTZ, False, "Creation time", default="NOW()"),
        },
        indexes=(
            IndexDefinition("idx_messages_line_message_id", ("line_message_id",)),
            IndexDefinition("idx_messages_user_id", ("user_id",)),
            IndexDefinition("idx_messages_message_type", ("message_type",)),
            IndexDefinition("idx_messages_timestamp", ("timestamp",), order="DESC"),
            IndexDefinition(
                "idx_messages_text_content_gin", ("text_content",),
                using="GIN (to_tsvector('simple', text_content))",
            ),
        ),
        relations={
            "user": Relation("belongsTo", USERS, "user_id"),
        },
    ),
    MESSAGE_LIMITS: TableDefinition(
        name=MESSAGE_LIMITS,
        description="Message and user quotas",
        columns={
            "id": ColumnDefinition("SERIAL", False, "Limit id", primary_key=True),
            "limit_type": ColumnDefinition("TEXT", False, "Limit kind", unique=True, choices=LIMIT_TYPES),
            "limit_value": ColumnDefinition("INTEGER", False, "Limit value"),
            "current_count": ColumnDefinition("INTEGER", False, "Current usage", default=0),
            "is_active": ColumnDefinition("BOOLEAN", False, "Whether the limit applies", default=True),
            "created_at": ColumnDefinition(TIMESTAMPTZ, False, "Creation time", default="NOW()"),
            "updated_at": ColumnDefinition(TIMESTAMPTZ, False, "Last update time", default="NOW()"),
        },
        indexes=(IndexDefinition("idx_message_limits_limit_type", ("limit_type",)),),
        initial_data=(
            {"limit_type": "max_messages", "limit_value": 1000},
            {"limit_type": "max_users", "limit_value": 100},
        ),
    ),
    SYSTEM_STATS: TableDefinition(
        name=SYSTEM_STATS,
        description="Named system statistics",
        columns={
            "id": ColumnDefinition("SERIAL", False, "Stat id", primary_key=True),
            "stat_name": ColumnDefinition("TEXT", False, "Stat name", unique=True),
            "stat_value": ColumnDefinition("INTEGER", False, "Stat value"),
            "updated_at": ColumnDefinition(TIMESTAMPTZ, False, "Last update time", default="NOW()"),
        },
        indexes=(IndexDefinition("idx_system_stats_stat_name", ("stat_name",)),),
    ),
}


STORAGE_BUCKETS: dict[str, StorageBucket] = {
    "line-message-files": StorageBucket(
        name="line-message-files",
        description="Attachments of LINE messages",
        public=False,
        file_size_limit=50 * 1024 * 1024,
        folders={
            "image": "images/",
            "audio": "audio/",
            "video": "video/",
            "pdf": "documents/pdf/",
            "word": "documents/word/",
            "excel": "documents/excel/",
            "file": "files/",
        },
    ),
}


# =============================================================================
# Lookup Functions
# =============================================================================

def get_table(table: str) -> TableDefinition:
    try:
        return DATABASE_SCHEMA[table]
    except KeyError:
        raise TableNotFoundError(table) from None


def columns_of(table: str) -> list[str]:
    """Return the column names of a table in declaration order."""
    return list(get_table(table).columns)


def primary_key_of(table: str) -> str:
    """Return the primary key column of a table."""
    definition = get_table(table)
    for name, column in definition.columns.items():
        if column.primary_key:
            return name
    raise SchemaLookupError(f"table '{table}' has no primary key")


def has_column(table: str, column: str) -> bool:
    definition = DATABASE_SCHEMA.get(table)
    if definition is None:
        return False
    return column in definition.columns


def column_definition(table: str, column: str) -> ColumnDefinition:
    """Return the full definition of a column."""
    definition = get_table(table)
    try:
        return definition.columns[column]
    except KeyError:
        raise ColumnNotFoundError(table, column) from None


def unknown_columns(table: str, columns) -> list[str]:
    """Return the names in `columns` that the table does not define."""
    known = get_table(table).columns
    return [name for name in columns if name not in known]


def bucket_folder(message_type: str, bucket: str = "line-message-files") -> str:
    """Return the storage folder an attachment of this message type belongs in."""
    folders = STORAGE_BUCKETS[bucket].folders
    return folders.get(message_type, folders["file"])
