import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

from pydantic import TypeAdapter
from sqlalchemy import and_, create_engine, func, inspect, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.config import settings
from chatrelay.domain import (
    Contact,
    Content,
    Direction,
    Message,
    MessageKind,
    MessageStatus,
    Presence,
)
from chatrelay.errors import DuplicateMessageError, StorageError
from chatrelay.models import Base, ContactRow, MessageRow

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite: store calls run in worker threads
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

_content_adapter = TypeAdapter(Content)

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "init_db",
    "check_db_health",
    "MessageStore",
    "SqlMessageStore",
]


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        inspector = inspect(engine)
        for table in ("messages", "contacts"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Persistence Interface
# =============================================================================

class MessageStore(Protocol):
    """
    Durable keyed storage of messages and contacts consumed by the chat core.

    Implementations raise StorageError (never driver exceptions) and
    DuplicateMessageError when put_message hits an existing id.
    """

    def put_message(self, msg: Message) -> Message:
        ...

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        ...

    def get_message_by_correlation_id(self, correlation_id: str) -> Optional[Message]:
        ...

    def list_messages(
        self,
        contact_id: str,
        limit: int,
        before_timestamp: Optional[datetime] = None,
        before_seq: Optional[int] = None,
    ) -> list[Message]:
        ...

    def update_message_status(self, message_id: str, status: MessageStatus) -> Optional[Message]:
        ...

    def mark_inbound_read(self, contact_id: str) -> list[str]:
        ...

    def delete_message(self, message_id: str) -> Optional[Message]:
        ...

    def upsert_contact(self, contact: Contact) -> Contact:
        ...

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    def count_unread(self, contact_id: str) -> int:
        ...

    def count_messages(self, contact_id: str) -> int:
        ...

    def list_contact_ids(self) -> list[str]:
        ...

    def summarize_contact(self, contact_id: str) -> tuple[Optional[Message], int, int]:
        ...


# =============================================================================
# Row Mapping Helpers
# =============================================================================

def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Store naive UTC; SQLite drops offsets."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _message_from_row(row: MessageRow) -> Message:
    return Message(
        id=row.message_id,
        contact_id=row.contact_id,
        direction=Direction(row.direction),
        kind=MessageKind(row.kind),
        content=_content_adapter.validate_python(row.content),
        body=row.body,
        timestamp=_from_db_time(row.ts),
        status=MessageStatus(row.status),
        correlation_id=row.correlation_id,
        seq=row.seq,
    )


def _contact_from_row(row: ContactRow) -> Contact:
    return Contact(
        contact_id=row.contact_id,
        display_name=row.display_name,
        avatar_ref=row.avatar_ref,
        last_seen=_from_db_time(row.last_seen),
        presence=Presence(row.presence),
    )


def _unread_filter(contact_id: str):
    return (
        MessageRow.contact_id == contact_id,
        MessageRow.direction == Direction.INBOUND.value,
        MessageRow.status != MessageStatus.READ.value,
    )


# =============================================================================
# SQLAlchemy Adapter
# =============================================================================

class SqlMessageStore:
    """
    MessageStore backed by SQLAlchemy.

    Every call opens its own short-lived session so the store can be used
    from worker threads concurrently.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except DuplicateMessageError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store operation {operation} failed: {e}")
            raise StorageError(
                f"Store operation {operation} failed",
                details={"operation": operation, "error": str(e)},
            ) from e
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def put_message(self, msg: Message) -> Message:
        """
        Insert a message. Returns the stored message with ``seq`` assigned.

        Raises:
            DuplicateMessageError: a message with this id already exists
        """
        logger.debug(f"Inserting message: id={msg.id}, contact={msg.contact_id}")
        with self._session("put_message") as db:
            row = MessageRow(
                message_id=msg.id,
                contact_id=msg.contact_id,
                direction=msg.direction.value,
                kind=msg.kind.value,
                content=msg.content.model_dump(mode="json"),
                body=msg.body,
                ts=_to_db_time(msg.timestamp),
                status=msg.status.value,
                correlation_id=msg.correlation_id,
                created_at=_now_iso(),
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.info(f"Duplicate message detected: {msg.id}")
                raise DuplicateMessageError(
                    f"Message {msg.id} already exists",
                    details={"message_id": msg.id},
                ) from e
            db.refresh(row)
            return _message_from_row(row)

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        with self._session("get_message_by_id") as db:
            row = db.query(MessageRow).filter(MessageRow.message_id == message_id).first()
            return _message_from_row(row) if row else None

    def get_message_by_correlation_id(self, correlation_id: str) -> Optional[Message]:
        with self._session("get_message_by_correlation_id") as db:
            row = (
                db.query(MessageRow)
                .filter(MessageRow.correlation_id == correlation_id)
                .order_by(MessageRow.seq.desc())
                .first()
            )
            return _message_from_row(row) if row else None

    def list_messages(
        self,
        contact_id: str,
        limit: int,
        before_timestamp: Optional[datetime] = None,
        before_seq: Optional[int] = None,
    ) -> list[Message]:
        """
        Return the newest ``limit`` messages of a thread older than the cursor,
        in log order (oldest first).

        The cursor is ``(before_timestamp, before_seq)``. Without ``before_seq``
        every message at ``before_timestamp`` is excluded.
        """
        with self._session("list_messages") as db:
            query = db.query(MessageRow).filter(MessageRow.contact_id == contact_id)
            if before_timestamp is not None:
                cutoff = _to_db_time(before_timestamp)
                if before_seq is None:
                    query = query.filter(MessageRow.ts < cutoff)
                else:
                    query = query.filter(or_(
                        MessageRow.ts < cutoff,
                        and_(MessageRow.ts == cutoff, MessageRow.seq < before_seq),
                    ))
            rows = (
                query.order_by(MessageRow.ts.desc(), MessageRow.seq.desc())
                .limit(limit)
                .all()
            )
            return [_message_from_row(row) for row in reversed(rows)]

    def update_message_status(self, message_id: str, status: MessageStatus) -> Optional[Message]:
        with self._session("update_message_status") as db:
            row = db.query(MessageRow).filter(MessageRow.message_id == message_id).first()
            if row is None:
                return None
            row.status = status.value
            db.commit()
            db.refresh(row)
            return _message_from_row(row)

    def mark_inbound_read(self, contact_id: str) -> list[str]:
        """Set every unread inbound message of a thread to read in one transaction."""
        with self._session("mark_inbound_read") as db:
            rows = (
                db.query(MessageRow)
                .filter(*_unread_filter(contact_id))
                .order_by(MessageRow.ts.asc(), MessageRow.seq.asc())
                .all()
            )
            for row in rows:
                row.status = MessageStatus.READ.value
            db.commit()
            return [row.message_id for row in rows]

    def delete_message(self, message_id: str) -> Optional[Message]:
        with self._session("delete_message") as db:
            row = db.query(MessageRow).filter(MessageRow.message_id == message_id).first()
            if row is None:
                return None
            removed = _message_from_row(row)
            db.delete(row)
            db.commit()
            return removed

    def count_unread(self, contact_id: str) -> int:
        with self._session("count_unread") as db:
            return (
                db.query(func.count(MessageRow.seq))
                .filter(*_unread_filter(contact_id))
                .scalar()
                or 0
            )

    def count_messages(self, contact_id: str) -> int:
        with self._session("count_messages") as db:
            return (
                db.query(func.count(MessageRow.seq))
                .filter(MessageRow.contact_id == contact_id)
                .scalar()
                or 0
            )

    def list_contact_ids(self) -> list[str]:
        """Contacts that have at least one message."""
        with self._session("list_contact_ids") as db:
            rows = db.query(MessageRow.contact_id).distinct().all()
            return [row.contact_id for row in rows]

    def summarize_contact(self, contact_id: str) -> tuple[Optional[Message], int, int]:
        """
        One scan of a thread for the conversation list.

        Returns:
            Tuple of (latest message or None, unread inbound count, total count)
        """
        with self._session("summarize_contact") as db:
            latest = (
                db.query(MessageRow)
                .filter(MessageRow.contact_id == contact_id)
                .order_by(MessageRow.ts.desc(), MessageRow.seq.desc())
                .first()
            )
            if latest is None:
                return None, 0, 0
            unread = (
                db.query(func.count(MessageRow.seq))
                .filter(*_unread_filter(contact_id))
                .scalar()
                or 0
            )
            total = (
                db.query(func.count(MessageRow.seq))
                .filter(MessageRow.contact_id == contact_id)
                .scalar()
                or 0
            )
            return _message_from_row(latest), unread, total

    def search_messages(
        self, q: str, contact_id: Optional[str] = None, limit: int = 100
    ) -> list[Message]:
        """Case-insensitive substring search over bodies, newest first."""
        logger.debug(f"Searching messages: q={q}, contact={contact_id}")
        with self._session("search_messages") as db:
            query = db.query(MessageRow).filter(MessageRow.body.ilike(f"%{q}%"))
            if contact_id:
                query = query.filter(MessageRow.contact_id == contact_id)
            rows = (
                query.order_by(MessageRow.ts.desc(), MessageRow.seq.desc())
                .limit(limit)
                .all()
            )
            return [_message_from_row(row) for row in rows]

    def get_stats(self) -> dict:
        """
        Message-level analytics.

        Computes:
        - total_messages: count of all messages
        - total_conversations: number of distinct contact threads
        - today_messages: messages with a timestamp since UTC midnight
        - messages_by_kind / messages_by_status: counts, descending
        """
        logger.info("Computing message statistics")
        with self._session("get_stats") as db:
            total_messages = db.query(func.count(MessageRow.seq)).scalar() or 0
            total_conversations = (
                db.query(func.count(func.distinct(MessageRow.contact_id))).scalar() or 0
            )
            midnight = datetime.now(timezone.utc).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            today_messages = (
                db.query(func.count(MessageRow.seq))
                .filter(MessageRow.ts >= _to_db_time(midnight))
                .scalar()
                or 0
            )

            def grouped(column) -> list[dict]:
                rows = (
                    db.query(column, func.count(MessageRow.seq))
                    .group_by(column)
                    .order_by(func.count(MessageRow.seq).desc())
                    .all()
                )
                return [{"key": row[0], "count": row[1]} for row in rows]

            return {
                "total_messages": total_messages,
                "total_conversations": total_conversations,
                "today_messages": today_messages,
                "messages_by_kind": grouped(MessageRow.kind),
                "messages_by_status": grouped(MessageRow.status),
            }

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def upsert_contact(self, contact: Contact) -> Contact:
        with self._session("upsert_contact") as db:
            row = db.get(ContactRow, contact.contact_id)
            if row is None:
                row = ContactRow(contact_id=contact.contact_id, created_at=_now_iso())
                db.add(row)
            row.display_name = contact.display_name
            row.avatar_ref = contact.avatar_ref
            row.last_seen = _to_db_time(contact.last_seen)
            row.presence = contact.presence.value
            db.commit()
            db.refresh(row)
            return _contact_from_row(row)

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self._session("get_contact") as db:
            row = db.get(ContactRow, contact_id)
            return _contact_from_row(row) if row else None

    def get_contacts(self, contact_ids: list[str]) -> dict[str, Contact]:
        if not contact_ids:
            return {}
        with self._session("get_contacts") as db:
            rows = db.query(ContactRow).filter(ContactRow.contact_id.in_(contact_ids)).all()
            return {row.contact_id: _contact_from_row(row) for row in rows}

    def set_presence(
        self, contact_id: str, presence: Presence, seen_at: Optional[datetime] = None
    ) -> Optional[Contact]:
        """Going online refreshes last_seen, as does an explicit ``seen_at``."""
        with self._session("set_presence") as db:
            row = db.get(ContactRow, contact_id)
            if row is None:
                return None
            row.presence = presence.value
            if presence == Presence.ONLINE or seen_at is not None:
                row.last_seen = _to_db_time(seen_at or datetime.now(timezone.utc))
            db.commit()
            db.refresh(row)
            return _contact_from_row(row)

    def list_contacts(
        self,
        search: Optional[str] = None,
        online_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Contact], int]:
        """
        Contacts ordered by last_seen (most recent first).

        Returns:
            Tuple of (contacts page, total count matching filters)
        """
        with self._session("list_contacts") as db:
            query = db.query(ContactRow)
            if search:
                pattern = f"%{search}%"
                query = query.filter(
                    ContactRow.display_name.ilike(pattern) | ContactRow.contact_id.ilike(pattern)
                )
            if online_only:
                query = query.filter(ContactRow.presence == Presence.ONLINE.value)
            total = query.count()
            rows = (
                query.order_by(ContactRow.last_seen.desc(), ContactRow.contact_id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_contact_from_row(row) for row in rows], total
