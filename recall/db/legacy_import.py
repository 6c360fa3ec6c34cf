"""
One-time import of pre-database workspace files.

Sources:
- `sessions/*.jsonl`: one JSON object per line, `{"type": "meta", ...}`
  describing the session and `{"type": "message", ...}` per turn
- `sessions/*.json`: a whole session document with a `messages` array
- `context/MEMORY.md`: `- fact` bullet lines

The import is idempotent: sessions whose id already exists and facts whose
exact text already exists (active or not) are skipped.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from .sqlite_client import DEFAULT_CATEGORY, VALID_ROLES, SQLiteClient

logger = structlog.get_logger(__name__)

DEFAULT_TITLE = "New session"


def _read_jsonl_session(path: Path) -> Optional[Dict[str, Any]]:
    try:
        raw = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning("legacy_session_unreadable", path=str(path))
        return None
    session: Dict[str, Any] = {"id": "", "title": DEFAULT_TITLE, "messages": []}
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        if obj.get("type") == "meta":
            session["id"] = obj.get("id") or session["id"]
            session["title"] = obj.get("title") or session["title"]
            if not session.get("created_at"):
                session["created_at"] = obj.get("created_at")
            session["updated_at"] = obj.get("updated_at") or session.get("created_at")
            if isinstance(obj.get("tags"), list):
                session["tags"] = obj["tags"]
        elif obj.get("type") == "message":
            session["messages"].append(obj)
    return session


def _read_json_session(path: Path) -> Optional[Dict[str, Any]]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("legacy_session_unreadable", path=str(path))
        return None
    if not isinstance(document, dict):
        return None
    messages = document.get("messages")
    document["messages"] = messages if isinstance(messages, list) else []
    return document


async def _import_session(client: SQLiteClient, session: Dict[str, Any]) -> Optional[int]:
    """Import one parsed session; returns its message count or None if skipped."""
    session_id = session.get("id")
    created_at = session.get("created_at")
    if not session_id or not created_at:
        return None
    if await client.get_session(session_id) is not None:
        return None

    await client.create_session(
        session_id,
        session.get("title") or DEFAULT_TITLE,
        created_at=created_at,
        tags=session["tags"] if isinstance(session.get("tags"), list) else [],
    )
    await client.update_session(session_id, updated_at=session.get("updated_at") or created_at)

    imported = 0
    for message in session["messages"]:
        role = message.get("role")
        content = message.get("content")
        if role not in VALID_ROLES or not isinstance(content, str) or not content:
            logger.warning("legacy_message_skipped", session_id=session_id, role=role)
            continue
        await client.insert_message(
            session_id, role, content, message.get("timestamp") or created_at
        )
        imported += 1
    return imported


async def _import_sessions(client: SQLiteClient, sessions_dir: Path, counts: Dict[str, int]) -> None:
    if not sessions_dir.is_dir():
        return
    for path in sorted(sessions_dir.iterdir()):
        if path.suffix == ".jsonl":
            session = _read_jsonl_session(path)
        elif path.suffix == ".json":
            session = _read_json_session(path)
        else:
            continue
        if session is None:
            continue
        imported = await _import_session(client, session)
        if imported is None:
            continue
        counts["sessions"] += 1
        counts["messages"] += imported


async def _import_memory_file(client: SQLiteClient, memory_file: Path) -> int:
    if not memory_file.is_file():
        return 0
    try:
        raw = memory_file.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning("legacy_memory_file_unreadable", path=str(memory_file))
        return 0
    count = 0
    for line in raw.splitlines():
        trimmed = line.strip()
        if not trimmed.startswith("- "):
            continue
        fact = trimmed[2:].strip()
        if not fact:
            continue
        if await client.find_memory_by_fact(fact, include_superseded=True) is not None:
            continue
        await client.insert_memory(fact, DEFAULT_CATEGORY)
        count += 1
    return count


async def migrate_existing_data(client: SQLiteClient, workspace_dir: Path) -> Dict[str, int]:
    """Import legacy sessions and facts; returns how many of each were added."""
    workspace_dir = Path(workspace_dir)
    counts = {"sessions": 0, "messages": 0, "memories": 0}
    await _import_sessions(client, workspace_dir / "sessions", counts)
    counts["memories"] = await _import_memory_file(client, workspace_dir / "context" / "MEMORY.md")
    logger.info("legacy_import_finished", **counts)
    return counts
