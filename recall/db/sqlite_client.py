"""
SQLite client for the recall store.

This module holds the three entity kinds the assistant needs:
- sessions: one conversation each, with caller-assigned ids
- messages: immutable turns, ordered by id within their session
- memories: append-only facts; replacing a fact points the old row's
  `superseded_by` at the new row instead of editing or deleting it

Message content and memory facts are mirrored into FTS5 external-content
tables by triggers, so every write is searchable as soon as it commits.
When the SQLite build lacks FTS5, search degrades to LIKE matching.
"""

import json
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    and_,
    delete,
    event,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .errors import DuplicateKey, ForeignKeyViolation, InvalidArgument, NotFound
from .migration_runner import apply_pending_migrations, sqlite_file_from_url

logger = structlog.get_logger(__name__)

Base = declarative_base()

VALID_ROLES = ("user", "assistant", "system")
DEFAULT_CATEGORY = "general"

# Bump when the FTS table layout changes; a mismatch triggers a rebuild.
FTS_SCHEMA_VERSION = "1"


def _utc_iso_now() -> str:
    """Current UTC time as ISO-8601 with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


# =============================================================================
# ORM Models
# =============================================================================


class ChatSession(Base):
    """A conversation. Ids are caller-assigned and date-ordered by convention."""

    __tablename__ = "sessions"

    id = Column(String(128), primary_key=True)
    title = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    tags = Column(Text, nullable=False, default="[]")  # JSON array
    created_at = Column(String(64), nullable=False)
    updated_at = Column(String(64), nullable=False)


class Message(Base):
    """One turn of a session. Never updated after insert."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        String(128), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(String(64), nullable=False)
    token_count = Column(Integer, nullable=True)


class Memory(Base):
    """A durable fact.

    Supersession chain: replacing a fact sets the old row's `superseded_by`
    to the new row's id, so history reads as a singly-linked list:
        Memory(id=1, superseded_by=4) -> Memory(id=4, superseded_by=NULL)
    Only rows with `superseded_by IS NULL` are active.
    """

    __tablename__ = "memories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fact = Column(Text, nullable=False)
    category = Column(String(64), nullable=False, default=DEFAULT_CATEGORY)
    source_session = Column(
        String(128), ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True
    )
    created_at = Column(String(64), nullable=False)
    superseded_by = Column(Integer, ForeignKey("memories.id"), nullable=True)


class IndexMeta(Base):
    """Key/value bookkeeping for the search index."""

    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(String(64), nullable=False)


class SchemaMigration(Base):
    """Applied schema migration records (written by the migration runner)."""

    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(Text, nullable=False)
    checksum = Column(String(128), nullable=False)


_FTS_DDL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts "
    "USING fts5(content, content='messages', content_rowid='id')",
    "CREATE TRIGGER IF NOT EXISTS messages_fts_insert AFTER INSERT ON messages BEGIN "
    "INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content); END",
    "CREATE TRIGGER IF NOT EXISTS messages_fts_delete AFTER DELETE ON messages BEGIN "
    "INSERT INTO messages_fts(messages_fts, rowid, content) "
    "VALUES ('delete', old.id, old.content); END",
    "CREATE TRIGGER IF NOT EXISTS messages_fts_update AFTER UPDATE OF content ON messages BEGIN "
    "INSERT INTO messages_fts(messages_fts, rowid, content) "
    "VALUES ('delete', old.id, old.content); "
    "INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content); END",
    "CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts "
    "USING fts5(fact, content='memories', content_rowid='id')",
    "CREATE TRIGGER IF NOT EXISTS memories_fts_insert AFTER INSERT ON memories BEGIN "
    "INSERT INTO memories_fts(rowid, fact) VALUES (new.id, new.fact); END",
    "CREATE TRIGGER IF NOT EXISTS memories_fts_delete AFTER DELETE ON memories BEGIN "
    "INSERT INTO memories_fts(memories_fts, rowid, fact) "
    "VALUES ('delete', old.id, old.fact); END",
    "CREATE TRIGGER IF NOT EXISTS memories_fts_update AFTER UPDATE OF fact ON memories BEGIN "
    "INSERT INTO memories_fts(memories_fts, rowid, fact) "
    "VALUES ('delete', old.id, old.fact); "
    "INSERT INTO memories_fts(rowid, fact) VALUES (new.id, new.fact); END",
)


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for sessions, messages and memories.

    Integrity problems raise immediately: DuplicateKey, ForeignKeyViolation,
    InvalidArgument, NotFound. Search never raises for "no match"; it
    returns an empty list.
    """

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                          "sqlite+aiosqlite:///workspace/recall.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        event.listen(self.engine.sync_engine, "connect", self._enable_foreign_keys)
        event.listen(self.engine.sync_engine, "connect", self._register_casefold)
        self._fts_available = False

    @staticmethod
    def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @staticmethod
    def _register_casefold(dbapi_connection, _connection_record) -> None:
        # SQLite lower() folds ASCII only.
        dbapi_connection.create_function("recall_casefold", 1, _casefold)

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    async def init_db(self) -> None:
        """Create tables, apply pending migrations, and set up the FTS shadow index."""
        database_file = sqlite_file_from_url(self.database_url)
        if database_file is not None:
            database_file.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)
        async with self.engine.begin() as conn:
            self._fts_available = await conn.run_sync(self._setup_fts)
        if not self._fts_available:
            logger.warning("fts5_unavailable", fallback="like")

    @staticmethod
    def _set_index_meta_sync(connection, key: str, value: str) -> None:
        connection.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": _utc_iso_now()},
        )

    def _setup_fts(self, connection) -> bool:
        try:
            for statement in _FTS_DDL:
                connection.execute(text(statement))
        except OperationalError:
            # SQLite builds without FTS5 keep working through LIKE search.
            self._set_index_meta_sync(connection, "fts_available", "0")
            return False

        current = connection.execute(
            text("SELECT value FROM index_meta WHERE key = 'fts_schema_version'")
        ).scalar()
        if current != FTS_SCHEMA_VERSION:
            connection.execute(text("INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')"))
            connection.execute(text("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')"))
            self._set_index_meta_sync(connection, "fts_schema_version", FTS_SCHEMA_VERSION)
            logger.info("fts_index_rebuilt", schema_version=FTS_SCHEMA_VERSION)
        self._set_index_meta_sync(connection, "fts_available", "1")
        return True

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager that commits on success."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Row helpers
    # =========================================================================

    @staticmethod
    def _session_to_dict(row: ChatSession) -> Dict[str, Any]:
        try:
            tags = json.loads(row.tags or "[]")
        except (TypeError, ValueError):
            tags = []
        return {
            "id": row.id,
            "title": row.title,
            "summary": row.summary,
            "tags": tags if isinstance(tags, list) else [],
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    @staticmethod
    def _message_to_dict(row: Message) -> Dict[str, Any]:
        return {
            "id": row.id,
            "session_id": row.session_id,
            "role": row.role,
            "content": row.content,
            "timestamp": row.timestamp,
            "token_count": row.token_count,
        }

    @staticmethod
    def _memory_to_dict(row: Memory) -> Dict[str, Any]:
        return {
            "id": row.id,
            "fact": row.fact,
            "category": row.category,
            "source_session": row.source_session,
            "created_at": row.created_at,
            "superseded_by": row.superseded_by,
        }

    @staticmethod
    def _encode_tags(tags: Iterable[str]) -> str:
        # Tags are a set; store them sorted so equal sets encode identically.
        cleaned = sorted({str(tag).strip() for tag in tags if str(tag).strip()})
        return json.dumps(cleaned)

    @staticmethod
    def _escape_like_pattern(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        session_id: str,
        title: Optional[str],
        created_at: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Insert a new session with updated_at == created_at.

        Raises:
            InvalidArgument: empty id
            DuplicateKey: a session with this id already exists
        """
        if not session_id or not session_id.strip():
            raise InvalidArgument("session id must not be empty")
        created = created_at or _utc_iso_now()

        async with self.session() as session:
            if await session.get(ChatSession, session_id) is not None:
                raise DuplicateKey(f"Session '{session_id}' already exists")
            row = ChatSession(
                id=session_id,
                title=title,
                tags=self._encode_tags(tags or []),
                created_at=created,
                updated_at=created,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise DuplicateKey(f"Session '{session_id}' already exists") from exc
            return self._session_to_dict(row)

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await session.get(ChatSession, session_id)
            return self._session_to_dict(row) if row is not None else None

    async def update_session(
        self,
        session_id: str,
        *,
        title: Optional[str] = None,
        summary: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        updated_at: Optional[str] = None,
    ) -> None:
        """
        Partially update a session. Unspecified fields keep their values.

        No fields at all is a no-op. updated_at never moves backwards.

        Raises:
            NotFound: fields were given but the session does not exist
        """
        values: Dict[str, Any] = {}
        if title is not None:
            values["title"] = title
        if summary is not None:
            values["summary"] = summary
        if tags is not None:
            values["tags"] = self._encode_tags(tags)
        if updated_at is not None:
            values["updated_at"] = func.max(ChatSession.updated_at, updated_at)
        if not values:
            return

        async with self.session() as session:
            result = await session.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFound(f"Session '{session_id}' not found")

    async def list_sessions(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Sessions ordered by created_at descending, capped at limit."""
        if limit <= 0:
            return []
        async with self.session() as session:
            result = await session.execute(
                select(ChatSession)
                .order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
                .limit(limit)
            )
            return [self._session_to_dict(row) for row in result.scalars().all()]

    async def next_session_id(self, prefix: str) -> str:
        """
        Allocate `<prefix>_<NNN>`, one past the highest numeric suffix in use.
        """
        pattern = f"{self._escape_like_pattern(prefix)}\\_%"
        async with self.session() as session:
            result = await session.execute(
                select(ChatSession.id).where(ChatSession.id.like(pattern, escape="\\"))
            )
            highest = 0
            for (session_id,) in result.all():
                suffix = session_id[len(prefix) + 1:]
                if suffix.isdigit():
                    highest = max(highest, int(suffix))
        return f"{prefix}_{highest + 1:03d}"

    async def delete_session(self, session_id: str) -> None:
        """
        Delete a session and, by cascade, its messages.

        Memories that cite the session keep existing with no source session.
        """
        async with self.session() as session:
            if await session.get(ChatSession, session_id) is None:
                raise NotFound(f"Session '{session_id}' not found")
            await session.execute(delete(Message).where(Message.session_id == session_id))
            await session.execute(
                update(Memory)
                .where(Memory.source_session == session_id)
                .values(source_session=None)
            )
            await session.execute(delete(ChatSession).where(ChatSession.id == session_id))

    # =========================================================================
    # Messages
    # =========================================================================

    async def insert_message(
        self,
        session_id: str,
        role: str,
        content: str,
        timestamp: str,
        token_count: Optional[int] = None,
    ) -> int:
        """
        Append a message to a session and return its row id.

        Raises:
            InvalidArgument: role not in user/assistant/system, empty content
                             or timestamp
            ForeignKeyViolation: the session does not exist
        """
        if role not in VALID_ROLES:
            raise InvalidArgument(
                f"Invalid role '{role}'. Expected one of: {', '.join(VALID_ROLES)}"
            )
        if not isinstance(content, str) or not content:
            raise InvalidArgument("message content must be a non-empty string")
        if not timestamp:
            raise InvalidArgument("message timestamp must not be empty")

        async with self.session() as session:
            if await session.get(ChatSession, session_id) is None:
                raise ForeignKeyViolation(
                    f"Cannot add message: session '{session_id}' does not exist"
                )
            row = Message(
                session_id=session_id,
                role=role,
                content=content,
                timestamp=timestamp,
                token_count=token_count,
            )
            session.add(row)
            await session.flush()
            return int(row.id)

    async def get_messages(self, session_id: str) -> List[Dict[str, Any]]:
        """All messages of a session in insertion order (empty if none)."""
        async with self.session() as session:
            result = await session.execute(
                select(Message).where(Message.session_id == session_id).order_by(Message.id.asc())
            )
            return [self._message_to_dict(row) for row in result.scalars().all()]

    async def count_messages(self, session_id: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(Message.id)).where(Message.session_id == session_id)
            )
            return int(result.scalar_one())

    # =========================================================================
    # Memories
    # =========================================================================

    async def insert_memory(
        self,
        fact: str,
        category: Optional[str] = DEFAULT_CATEGORY,
        source_session: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> int:
        """
        Append a new active memory and return its id.

        Raises:
            InvalidArgument: fact is empty after trimming
            ForeignKeyViolation: source_session is given but does not exist
        """
        if not isinstance(fact, str) or not fact.strip():
            raise InvalidArgument("memory fact must not be empty")

        async with self.session() as session:
            if source_session is not None and await session.get(ChatSession, source_session) is None:
                raise ForeignKeyViolation(
                    f"Cannot add memory: session '{source_session}' does not exist"
                )
            row = Memory(
                fact=fact,
                category=(category or "").strip() or DEFAULT_CATEGORY,
                source_session=source_session,
                created_at=created_at or _utc_iso_now(),
            )
            session.add(row)
            await session.flush()
            return int(row.id)

    async def get_memory(self, memory_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a memory by id, active or not."""
        async with self.session() as session:
            row = await session.get(Memory, memory_id)
            return self._memory_to_dict(row) if row is not None else None

    async def get_active_memories(self) -> List[Dict[str, Any]]:
        """Memories without a supersession pointer, oldest first."""
        async with self.session() as session:
            result = await session.execute(
                select(Memory)
                .where(Memory.superseded_by.is_(None))
                .order_by(Memory.created_at.asc(), Memory.id.asc())
            )
            return [self._memory_to_dict(row) for row in result.scalars().all()]

    async def find_memory_by_fact(
        self, fact: str, include_superseded: bool = False
    ) -> Optional[Dict[str, Any]]:
        """
        Exact, case-sensitive lookup of a fact.

        Only active memories match unless include_superseded is set.
        """
        query = select(Memory).where(Memory.fact == fact)
        if not include_superseded:
            query = query.where(Memory.superseded_by.is_(None))
        async with self.session() as session:
            result = await session.execute(query.order_by(Memory.id.asc()).limit(1))
            row = result.scalar_one_or_none()
            return self._memory_to_dict(row) if row is not None else None

    async def supersede_memory(self, old_id: int, new_id: int) -> None:
        """
        Mark old_id as replaced by new_id. Repeating the same call is a no-op.

        Raises:
            InvalidArgument: old_id == new_id, new_id is itself superseded,
                or old_id is already superseded by a different memory
            NotFound: either memory does not exist
        """
        if old_id == new_id:
            raise InvalidArgument("A memory cannot supersede itself")

        async with self.session() as session:
            old_row = await session.get(Memory, old_id)
            if old_row is None:
                raise NotFound(f"Memory {old_id} not found")
            new_row = await session.get(Memory, new_id)
            if new_row is None:
                raise NotFound(f"Memory {new_id} not found")
            if old_row.superseded_by == new_id:
                return
            if new_row.superseded_by is not None:
                raise InvalidArgument(
                    f"Memory {new_id} is already superseded by {new_row.superseded_by}"
                )
            if old_row.superseded_by is not None:
                raise InvalidArgument(
                    f"Memory {old_id} is already superseded by {old_row.superseded_by}"
                )
            old_row.superseded_by = new_id
        logger.info("memory_superseded", old_id=old_id, new_id=new_id)

    # =========================================================================
    # Search Operations
    # =========================================================================

    @staticmethod
    def _query_terms(query: str) -> List[str]:
        return re.findall(r"\w+", query or "")

    @staticmethod
    def _fts_match_expression(terms: List[str]) -> str:
        # Quoting each term keeps FTS5 operators (AND, NOT, NEAR, *) literal.
        return " ".join(f'"{term}"' for term in terms)

    async def _disable_fts(self, session: AsyncSession, exc: Exception) -> None:
        self._fts_available = False
        logger.warning("fts5_query_failed", error=str(exc), fallback="like")
        await session.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) VALUES ('fts_available', '0', :now) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at"
            ),
            {"now": _utc_iso_now()},
        )

    async def search_messages(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Ranked full-text search over message content.

        Each hit carries source="message", the content, and the owning
        session id and title.
        """
        terms = self._query_terms(query)
        if not terms or limit <= 0:
            return []

        async with self.session() as session:
            if self._fts_available:
                try:
                    result = await session.execute(
                        text(
                            "SELECT m.id AS id, m.content AS content, m.session_id AS session_id, "
                            "s.title AS session_title, m.timestamp AS timestamp, "
                            "bm25(messages_fts) AS rank "
                            "FROM messages_fts "
                            "JOIN messages m ON m.id = messages_fts.rowid "
                            "JOIN sessions s ON s.id = m.session_id "
                            "WHERE messages_fts MATCH :match "
                            "ORDER BY rank ASC, m.id ASC "
                            "LIMIT :limit"
                        ),
                        {"match": self._fts_match_expression(terms), "limit": limit},
                    )
                    return [
                        {"source": "message", **dict(row)} for row in result.mappings().all()
                    ]
                except OperationalError as exc:
                    await self._disable_fts(session, exc)

            conditions = [
                func.recall_casefold(Message.content).like(
                    f"%{self._escape_like_pattern(term.casefold())}%", escape="\\"
                )
                for term in terms
            ]
            result = await session.execute(
                select(Message, ChatSession.title)
                .join(ChatSession, ChatSession.id == Message.session_id)
                .where(and_(*conditions))
                .order_by(Message.id.desc())
                .limit(limit)
            )
            return [
                {
                    "source": "message",
                    "id": message.id,
                    "content": message.content,
                    "session_id": message.session_id,
                    "session_title": title,
                    "timestamp": message.timestamp,
                    "rank": 0.0,
                }
                for message, title in result.all()
            ]

    async def search_memories(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Ranked full-text search over active memory facts.

        Superseded memories never appear.
        """
        terms = self._query_terms(query)
        if not terms or limit <= 0:
            return []

        async with self.session() as session:
            if self._fts_available:
                try:
                    result = await session.execute(
                        text(
                            "SELECT mem.id AS id, mem.fact AS content, mem.category AS category, "
                            "mem.source_session AS session_id, s.title AS session_title, "
                            "mem.created_at AS timestamp, bm25(memories_fts) AS rank "
                            "FROM memories_fts "
                            "JOIN memories mem ON mem.id = memories_fts.rowid "
                            "LEFT JOIN sessions s ON s.id = mem.source_session "
                            "WHERE memories_fts MATCH :match "
                            "AND mem.superseded_by IS NULL "
                            "ORDER BY rank ASC, mem.id ASC "
                            "LIMIT :limit"
                        ),
                        {"match": self._fts_match_expression(terms), "limit": limit},
                    )
                    return [
                        {"source": "memory", **dict(row)} for row in result.mappings().all()
                    ]
                except OperationalError as exc:
                    await self._disable_fts(session, exc)

            conditions = [
                func.recall_casefold(Memory.fact).like(
                    f"%{self._escape_like_pattern(term.casefold())}%", escape="\\"
                )
                for term in terms
            ]
            result = await session.execute(
                select(Memory, ChatSession.title)
                .outerjoin(ChatSession, ChatSession.id == Memory.source_session)
                .where(Memory.superseded_by.is_(None))
                .where(and_(*conditions))
                .order_by(Memory.id.desc())
                .limit(limit)
            )
            return [
                {
                    "source": "memory",
                    "id": memory.id,
                    "content": memory.fact,
                    "category": memory.category,
                    "session_id": memory.source_session,
                    "session_title": title,
                    "timestamp": memory.created_at,
                    "rank": 0.0,
                }
                for memory, title in result.all()
            ]

    async def search(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Messages and memories merged by rank, best first, capped at limit."""
        hits = await self.search_messages(query, limit) + await self.search_memories(query, limit)
        hits.sort(key=lambda hit: float(hit.get("rank") or 0.0))
        return hits[:limit]

    # =========================================================================
    # Status
    # =========================================================================

    async def get_index_status(self) -> Dict[str, Any]:
        async with self.session() as session:
            sessions = (await session.execute(select(func.count(ChatSession.id)))).scalar_one()
            messages = (await session.execute(select(func.count(Message.id)))).scalar_one()
            active = (
                await session.execute(
                    select(func.count(Memory.id)).where(Memory.superseded_by.is_(None))
                )
            ).scalar_one()
            superseded = (
                await session.execute(
                    select(func.count(Memory.id)).where(Memory.superseded_by.is_not(None))
                )
            ).scalar_one()
            versions = (
                await session.execute(
                    select(SchemaMigration.version).order_by(SchemaMigration.version.asc())
                )
            ).scalars().all()
        return {
            "sessions": int(sessions),
            "messages": int(messages),
            "active_memories": int(active),
            "superseded_memories": int(superseded),
            "fts_available": self._fts_available,
            "schema_versions": list(versions),
        }


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance, built from settings."""
    global _sqlite_client
    if _sqlite_client is None:
        from ..config import get_settings

        _sqlite_client = SQLiteClient(get_settings().database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
