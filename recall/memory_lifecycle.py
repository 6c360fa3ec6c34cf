"""
Memory lifecycle: pull facts out of assistant replies and persist them.

A reply marks facts with `[MEMORY]`, either inline:

    [MEMORY] User has a cat named Pixel

or as a bulleted list directly under the marker:

    [MEMORY] Updated facts:
    - User lives in Lisbon
    - User prefers tea

Facts are deduplicated by exact text against active memories. After any
new fact is saved the mirror file (MEMORY.md) is rewritten from the full
active set.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .db.sqlite_client import DEFAULT_CATEGORY, SQLiteClient

logger = structlog.get_logger(__name__)

MEMORY_MARKER = "[MEMORY]"
BULLET_PREFIXES = ("- ", "* ", "• ")

_LEADING_ATTRIBUTION = re.compile(r"^(added|updated) to \w+:\s*", re.IGNORECASE)
_SENTENCE_END = re.compile(r"[.!?]\s+[A-Z]")
_TRAILING_PUNCTUATION = re.compile(r"[.!?]+$")

MIRROR_HEADER = ("# MEMORY.md - Persistent Memories", "", "## General Facts", "")


def _strip_bullet(line: str) -> Optional[str]:
    for prefix in BULLET_PREFIXES:
        if line.startswith(prefix):
            return line[len(prefix):].strip()
    return None


def clean_inline_fact(remainder: str) -> str:
    """Reduce the text after an inline marker to a single fact."""
    cleaned = _LEADING_ATTRIBUTION.sub("", remainder.strip(), count=1)
    boundary = _SENTENCE_END.search(cleaned)
    if boundary is not None:
        return cleaned[: boundary.start() + 1].strip()
    return _TRAILING_PUNCTUATION.sub("", cleaned).strip()


def parse_memory_candidates(text: str) -> List[str]:
    """Candidate facts in the order they appear; empty candidates are dropped."""
    candidates: List[str] = []
    lines = (text or "").split("\n")
    i = 0
    while i < len(lines):
        trimmed = lines[i].lstrip()
        marker_at = trimmed.find(MEMORY_MARKER)
        if marker_at == -1:
            i += 1
            continue

        inline = trimmed[marker_at + len(MEMORY_MARKER):].strip()
        bullets: List[str] = []
        j = i + 1
        while j < len(lines):
            following = lines[j].strip()
            bullet = _strip_bullet(following)
            if bullet is not None:
                bullets.append(bullet)
                j += 1
            elif following == "":
                # A blank line closes the list and is consumed with it.
                j += 1
                break
            else:
                break
        i = j

        if bullets:
            candidates.extend(bullet for bullet in bullets if bullet)
        else:
            fact = clean_inline_fact(inline)
            if fact:
                candidates.append(fact)
    return candidates


def render_mirror(memories: List[Dict[str, Any]]) -> str:
    lines = list(MIRROR_HEADER)
    for memory in memories:
        lines.append(f"- {memory['fact']}")
    lines.append("")
    return "\n".join(lines)


class MemoryManager:
    """Extracts, deduplicates and persists facts for one workspace."""

    def __init__(
        self,
        client: SQLiteClient,
        mirror_path: Path,
        dispatcher=None,
        workspace_dir: Optional[Path] = None,
    ):
        """
        Args:
            client: the structured store
            mirror_path: where the human-readable MEMORY.md is written
            dispatcher: optional background worker with `submit_memory`;
                        new facts are pushed to the semantic index through it
            workspace_dir: root for `read_workspace_file`
        """
        self.client = client
        self.mirror_path = Path(mirror_path)
        self.dispatcher = dispatcher
        self.workspace_dir = Path(workspace_dir) if workspace_dir else self.mirror_path.parent

    async def extract_and_save(self, text: str, session_id: Optional[str]) -> List[str]:
        """
        Persist every new fact marked in `text`, attributed to session_id.

        Returns the facts actually inserted, in order. Facts already active
        are skipped silently.
        """
        saved: List[str] = []
        for fact in parse_memory_candidates(text):
            if await self._save_fact(fact, session_id):
                saved.append(fact)

        if saved:
            await self.sync_mirror()
            logger.info("memories_saved", count=len(saved), session_id=session_id)
        return saved

    async def _save_fact(self, fact: str, session_id: Optional[str]) -> bool:
        if await self.client.find_memory_by_fact(fact) is not None:
            return False
        memory_id = await self.client.insert_memory(
            fact, DEFAULT_CATEGORY, source_session=session_id
        )
        if self.dispatcher is not None:
            self.dispatcher.submit_memory(memory_id, fact, DEFAULT_CATEGORY)
        return True

    async def sync_mirror(self) -> Path:
        """Rewrite the mirror file from the full active-memory set."""
        memories = await self.client.get_active_memories()
        self.mirror_path.parent.mkdir(parents=True, exist_ok=True)
        self.mirror_path.write_text(render_mirror(memories), encoding="utf-8")
        return self.mirror_path

    async def get_active_memories(self) -> List[Dict[str, Any]]:
        return await self.client.get_active_memories()

    def read_workspace_file(self, filename: str) -> str:
        path = self.workspace_dir / filename
        if not path.exists():
            return f"No file found at workspace/{filename}"
        return path.read_text(encoding="utf-8")
