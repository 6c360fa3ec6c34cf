"""
System prompt assembly.

Section order is fixed: base instructions (context/SYSTEM.md), user profile
(context/USER.md), skill catalog, then memories and past sessions. Sections
are joined with a horizontal-rule divider.

Baseline mode includes every active memory and the most recent sessions.
Augmented mode, used when the semantic index is configured, asks the index
for the memories and sessions most relevant to the incoming message. The
memory lookup and the session lookup each fall back to baseline on their
own when they fail.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .db.sqlite_client import SQLiteClient
from .semantic_index import SemanticIndexClient, VectorMatch
from .skills import get_installed_skills, render_catalog

logger = structlog.get_logger(__name__)

SECTION_DIVIDER = "\n\n---\n\n"
ELLIPSIS = "…"

DEFAULT_RECENT_SESSIONS = 3
BASELINE_EXCERPT_CHARS = 200

RELEVANT_MEMORY_TOP_K = 10
RELEVANT_SESSION_TOP_K = 5
RELEVANT_SESSION_MESSAGES = 6
RELEVANT_EXCERPT_CHARS = 150


def _excerpt(content: str, limit: int) -> str:
    return content[:limit] + (ELLIPSIS if len(content) > limit else "")


def _role_label(role: str) -> str:
    return "User" if role == "user" else "Assistant"


def _read_trimmed(path: Path) -> str:
    if not path.is_file():
        return ""
    return path.read_text(encoding="utf-8").strip()


class ContextAssembler:
    def __init__(
        self,
        client: SQLiteClient,
        index: Optional[SemanticIndexClient],
        context_dir: Path,
        skills_dir: Path,
    ):
        self.client = client
        self.index = index
        self.context_dir = Path(context_dir)
        self.skills_dir = Path(skills_dir)

    # -------------------------------------------------------------------------
    # Shared sections
    # -------------------------------------------------------------------------

    def _leading_sections(self) -> List[str]:
        parts = []
        system_text = _read_trimmed(self.context_dir / "SYSTEM.md")
        if system_text:
            parts.append(system_text)
        user_text = _read_trimmed(self.context_dir / "USER.md")
        if user_text:
            parts.append(user_text)
        catalog = render_catalog(get_installed_skills(self.skills_dir))
        if catalog:
            parts.append(catalog)
        return parts

    async def _active_memories_section(self) -> Optional[str]:
        memories = await self.client.get_active_memories()
        if not memories:
            return None
        lines = ["# Active Memories", ""]
        lines.extend(f"- {memory['fact']}" for memory in memories)
        return "\n".join(lines)

    async def _recent_session_sections(self, n_sessions: int) -> List[str]:
        sections = []
        for session in await self.client.list_sessions(n_sessions):
            messages = await self.client.get_messages(session["id"])
            sections.append(self._summarize_session(session, messages))
        return sections

    @staticmethod
    def _summarize_session(session: Dict[str, Any], messages: List[Dict[str, Any]]) -> str:
        lines = [f'## Past session: "{session.get("title") or "Untitled"}"']
        for message in messages:
            lines.append(
                f"{_role_label(message['role'])}: "
                f"{_excerpt(message['content'], BASELINE_EXCERPT_CHARS)}"
            )
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Baseline
    # -------------------------------------------------------------------------

    async def build_prompt(self, n_recent_sessions: int = DEFAULT_RECENT_SESSIONS) -> str:
        """Recency-based prompt: all active memories plus the newest sessions."""
        parts = self._leading_sections()
        memories = await self._active_memories_section()
        if memories:
            parts.append(memories)
        parts.extend(await self._recent_session_sections(n_recent_sessions))
        return SECTION_DIVIDER.join(parts)

    # -------------------------------------------------------------------------
    # Augmented
    # -------------------------------------------------------------------------

    async def build_augmented_prompt(
        self, user_message: str, n_fallback_sessions: int = DEFAULT_RECENT_SESSIONS
    ) -> str:
        """
        Relevance-ranked prompt for `user_message`.

        Without a configured semantic index this is exactly build_prompt().
        """
        if self.index is None or not self.index.enabled:
            return await self.build_prompt(n_fallback_sessions)

        parts = self._leading_sections()
        memory_hits, session_hits = await asyncio.gather(
            self.index.query_relevant_memories(user_message, RELEVANT_MEMORY_TOP_K),
            self.index.query_relevant_sessions(user_message, RELEVANT_SESSION_TOP_K),
            return_exceptions=True,
        )

        if isinstance(memory_hits, BaseException):
            self._raise_if_not_degradable(memory_hits)
            logger.warning(
                "semantic_memory_fallback",
                error=str(memory_hits),
                reason=getattr(memory_hits, "reason", type(memory_hits).__name__),
            )
            section = await self._active_memories_section()
        else:
            section = self._relevant_memories_section(memory_hits)
        if section:
            parts.append(section)

        if isinstance(session_hits, BaseException):
            self._raise_if_not_degradable(session_hits)
            logger.warning(
                "semantic_session_fallback",
                error=str(session_hits),
                reason=getattr(session_hits, "reason", type(session_hits).__name__),
            )
            parts.extend(await self._recent_session_sections(n_fallback_sessions))
        else:
            section = await self._relevant_sessions_section(session_hits)
            if section:
                parts.append(section)

        return SECTION_DIVIDER.join(parts)

    @staticmethod
    def _raise_if_not_degradable(exc: BaseException) -> None:
        # Cancellation and interpreter exits are not lookup failures.
        if not isinstance(exc, Exception):
            raise exc

    @staticmethod
    def _relevant_memories_section(hits: List[VectorMatch]) -> Optional[str]:
        facts = [hit.metadata.get("fact") for hit in hits if hit.metadata.get("fact")]
        if not facts:
            return None
        lines = ["# Relevant Memories", ""]
        lines.extend(f"- {fact}" for fact in facts)
        return "\n".join(lines)

    async def _relevant_sessions_section(self, hits: List[VectorMatch]) -> Optional[str]:
        lines = ["# Relevant Past Conversations", ""]
        rendered = 0
        for hit in hits:
            session_id = hit.metadata.get("sessionId")
            if not session_id:
                continue
            session = await self.client.get_session(session_id)
            if session is None:
                continue

            # Excerpts come from the store, not from the embedded summary.
            messages = await self.client.get_messages(session_id)
            lines.append(f'## "{session.get("title") or "Untitled"}" ({hit.metadata.get("date") or ""})')
            for message in messages[:RELEVANT_SESSION_MESSAGES]:
                lines.append(
                    f"  {_role_label(message['role'])}: "
                    f"{_excerpt(message['content'], RELEVANT_EXCERPT_CHARS)}"
                )
            lines.append("")
            rendered += 1
        if not rendered:
            return None
        return "\n".join(lines)
