import json
from pathlib import Path

import pytest

from recall.db.legacy_import import migrate_existing_data
from recall.db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _write_legacy_workspace(root: Path) -> None:
    sessions = root / "sessions"
    sessions.mkdir(parents=True)
    lines = [
        {"type": "meta", "id": "session_20240101_001", "title": "Old chat",
         "created_at": "2024-01-01T09:00:00Z", "updated_at": "2024-01-01T10:00:00Z", "tags": ["travel"]},
        {"type": "message", "role": "user", "content": "hello", "timestamp": "2024-01-01T09:00:01Z"},
        {"type": "message", "role": "tool", "content": "ignored", "timestamp": "2024-01-01T09:00:02Z"},
        {"type": "message", "role": "assistant", "content": "", "timestamp": "2024-01-01T09:00:03Z"},
        {"type": "message", "role": "assistant", "content": "hi!", "timestamp": "2024-01-01T09:00:04Z"},
    ]
    body = "\n".join(json.dumps(line) for line in lines[:2]) + "\n{broken json\n"
    body += "\n".join(json.dumps(line) for line in lines[2:]) + "\n"
    (sessions / "session_20240101_001.jsonl").write_text(body, encoding="utf-8")
    (sessions / "session_20240102_001.json").write_text(
        json.dumps(
            {
                "id": "session_20240102_001",
                "title": "Document chat",
                "created_at": "2024-01-02T09:00:00Z",
                "messages": [{"role": "user", "content": "from json", "timestamp": "2024-01-02T09:00:01Z"}],
            }
        ),
        encoding="utf-8",
    )
    (sessions / "notes.txt").write_text("not a session", encoding="utf-8")

    context = root / "context"
    context.mkdir()
    (context / "MEMORY.md").write_text(
        "# Memories\n\n- User likes coffee\n- User lives in Lisbon\n-\nplain line\n", encoding="utf-8"
    )


@pytest.mark.asyncio
async def test_migrate_existing_data_imports_once(tmp_path: Path) -> None:
    _write_legacy_workspace(tmp_path)
    client = SQLiteClient(_sqlite_url(tmp_path / "recall.db"))
    await client.init_db()
    try:
        first = await migrate_existing_data(client, tmp_path)
        second = await migrate_existing_data(client, tmp_path)

        assert first == {"sessions": 2, "messages": 3, "memories": 2}
        assert second == {"sessions": 0, "messages": 0, "memories": 0}

        session = await client.get_session("session_20240101_001")
        assert session["title"] == "Old chat"
        assert session["updated_at"] == "2024-01-01T10:00:00Z"
        assert session["tags"] == ["travel"]
        messages = await client.get_messages("session_20240101_001")
        assert [(m["role"], m["content"]) for m in messages] == [("user", "hello"), ("assistant", "hi!")]

        assert (await client.get_session("session_20240102_001"))["updated_at"] == "2024-01-02T09:00:00Z"
        facts = [row["fact"] for row in await client.get_active_memories()]
        assert sorted(facts) == ["User likes coffee", "User lives in Lisbon"]
        assert all(row["source_session"] is None for row in await client.get_active_memories())
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_migrate_existing_data_skips_superseded_facts(tmp_path: Path) -> None:
    _write_legacy_workspace(tmp_path)
    client = SQLiteClient(_sqlite_url(tmp_path / "recall.db"))
    await client.init_db()
    try:
        old_id = await client.insert_memory("User likes coffee")
        new_id = await client.insert_memory("User prefers tea")
        await client.supersede_memory(old_id, new_id)

        counts = await migrate_existing_data(client, tmp_path)

        assert counts["memories"] == 1
        facts = [row["fact"] for row in await client.get_active_memories()]
        assert "User likes coffee" not in facts
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_migrate_existing_data_without_legacy_files(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "recall.db"))
    await client.init_db()
    try:
        assert await migrate_existing_data(client, tmp_path / "empty") == {
            "sessions": 0,
            "messages": 0,
            "memories": 0,
        }
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_migrate_existing_data_skips_undecodable_files(tmp_path: Path) -> None:
    _write_legacy_workspace(tmp_path)
    (tmp_path / "sessions" / "session_20231231_001.jsonl").write_bytes(b'{"type": "meta", "id": "\xff\xfe"}\n')
    (tmp_path / "sessions" / "session_20231231_002.json").write_bytes(b"\x80\x81not utf-8")
    client = SQLiteClient(_sqlite_url(tmp_path / "recall.db"))
    await client.init_db()
    try:
        counts = await migrate_existing_data(client, tmp_path)

        assert counts == {"sessions": 2, "messages": 3, "memories": 2}
        assert await client.get_session("session_20231231_001") is None
    finally:
        await client.close()
