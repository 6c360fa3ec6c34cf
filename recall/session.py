"""
Session context and the service that keeps it in step with the store.

A SessionContext is a plain value owned by whoever drives the conversation:
the session id plus an in-memory buffer of its messages. Nothing in the
store tracks a "current" session.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from .db.sqlite_client import SQLiteClient
from .semantic_index import session_vector_id

logger = structlog.get_logger(__name__)

DEFAULT_TITLE = "New session"
AUTO_TITLE_CHARS = 60
RECENT_SESSIONS_LIMIT = 15
SUMMARY_EXCERPT_MESSAGES = 10
SUMMARY_EXCERPT_CHARS = 200

COMPACT_INSTRUCTIONS = (
    "Summarize this conversation in 3-5 bullet points, preserving key facts, "
    "decisions, and action items. Be concise."
)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ChatMessage:
    role: str
    content: str
    timestamp: str


@dataclass
class SessionContext:
    id: str
    title: str
    created_at: str
    updated_at: str
    tags: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)

    def history(self) -> List[Dict[str, Any]]:
        """Buffered user/assistant turns in completion-request shape."""
        return [
            {"role": message.role, "content": message.content}
            for message in self.messages
            if message.role in ("user", "assistant")
        ]

    def transcript(self) -> str:
        return "\n\n".join(
            f"{'User' if message.role == 'user' else 'Assistant'}: {message.content}"
            for message in self.messages
        )


def _context_from_rows(row: Dict[str, Any], messages: List[Dict[str, Any]]) -> SessionContext:
    return SessionContext(
        id=row["id"],
        title=row.get("title") or DEFAULT_TITLE,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        tags=list(row.get("tags") or []),
        summary=row.get("summary"),
        messages=[
            ChatMessage(role=item["role"], content=item["content"], timestamp=item["timestamp"])
            for item in messages
        ],
    )


class SessionService:
    def __init__(self, client: SQLiteClient, dispatcher=None):
        self.client = client
        self.dispatcher = dispatcher

    async def init_session(self, now: Optional[datetime] = None) -> SessionContext:
        """Create a new session with a date-ordered id (`session_YYYYMMDD_NNN`)."""
        local_now = (now or datetime.now()).astimezone()
        session_id = await self.client.next_session_id(f"session_{local_now:%Y%m%d}")
        created_at = local_now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        row = await self.client.create_session(session_id, DEFAULT_TITLE, created_at=created_at)
        logger.info("session_started", session_id=session_id)
        return _context_from_rows(row, [])

    async def append_message(
        self,
        ctx: SessionContext,
        role: str,
        content: str,
        timestamp: Optional[str] = None,
    ) -> ChatMessage:
        """
        Persist a message, then add it to the buffer.

        While the session still has the default title, the first user
        message (cut to 60 characters) becomes the title.
        """
        timestamp = timestamp or _utc_iso_now()
        await self.client.insert_message(ctx.id, role, content, timestamp)
        message = ChatMessage(role=role, content=content, timestamp=timestamp)
        ctx.messages.append(message)
        ctx.updated_at = max(ctx.updated_at, timestamp)

        title = None
        if ctx.title == DEFAULT_TITLE and role == "user":
            title = content[:AUTO_TITLE_CHARS]
            ctx.title = title
        await self.client.update_session(ctx.id, title=title, updated_at=timestamp)
        return message

    async def load_session(self, session_id: str) -> Optional[SessionContext]:
        row = await self.client.get_session(session_id)
        if row is None:
            return None
        return _context_from_rows(row, await self.client.get_messages(session_id))

    async def resume_session(self, session_id: str) -> Optional[SessionContext]:
        ctx = await self.load_session(session_id)
        if ctx is not None:
            logger.info("session_resumed", session_id=session_id, messages=len(ctx.messages))
        return ctx

    async def list_recent_sessions(self, limit: int = RECENT_SESSIONS_LIMIT) -> List[SessionContext]:
        contexts = []
        for row in await self.client.list_sessions(limit):
            contexts.append(_context_from_rows(row, await self.client.get_messages(row["id"])))
        return contexts

    @staticmethod
    def default_summary(ctx: SessionContext) -> str:
        lines = [ctx.title]
        for message in ctx.messages[:SUMMARY_EXCERPT_MESSAGES]:
            role = "User" if message.role == "user" else "Assistant"
            lines.append(f"{role}: {message.content[:SUMMARY_EXCERPT_CHARS]}")
        return "\n".join(lines)

    def embed_session(self, ctx: SessionContext, summary: Optional[str] = None) -> Dict[str, Any]:
        """Queue a session-summary upsert. Returns the dispatcher's receipt."""
        if self.dispatcher is None:
            return {"queued": False, "reason": "no_dispatcher"}
        text = summary or ctx.summary or self.default_summary(ctx)
        return self.dispatcher.submit_session(ctx.id, ctx.title, text, ctx.created_at[:10])

    async def compact_session(self, ctx: SessionContext, completion) -> str:
        """
        Summarize the buffered conversation and replace the buffer with it.

        The summary is stored on the session and embedded; the stored
        messages are left untouched.
        """
        summary = (await completion.complete(COMPACT_INSTRUCTIONS, ctx.transcript())).strip()
        await self.client.update_session(ctx.id, summary=summary)
        ctx.summary = summary
        ctx.messages = [
            ChatMessage(
                role="assistant",
                content=f"Session compacted:\n\n{summary}",
                timestamp=_utc_iso_now(),
            )
        ]
        self.embed_session(ctx, summary)
        logger.info("session_compacted", session_id=ctx.id, chars=len(summary))
        return summary

    async def close_session(self, ctx: SessionContext) -> bool:
        """Delete the session if it never received a message. Returns True if deleted."""
        if await self.client.get_session(ctx.id) is None:
            return False
        if await self.client.count_messages(ctx.id) > 0:
            return False
        await self.client.delete_session(ctx.id)
        if self.dispatcher is not None:
            self.dispatcher.submit_delete(session_vector_id(ctx.id))
        logger.info("empty_session_removed", session_id=ctx.id)
        return True
