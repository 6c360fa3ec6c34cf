"""Slash commands of the interactive shell."""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog

from .db.errors import CompletionError
from .db.sqlite_client import SQLiteClient
from .memory_lifecycle import MemoryManager
from .session import SessionContext, SessionService
from .skills import get_installed_skills

logger = structlog.get_logger(__name__)

SEARCH_LIMIT = 10
SEARCH_EXCERPT_CHARS = 200
SESSIONS_LIMIT = 15


@dataclass
class CommandResult:
    text: str
    session: Optional[SessionContext] = None
    exit: bool = False


def split_command(line: str) -> Tuple[str, str]:
    name, _, args = line.strip().partition(" ")
    return name.lower(), args.strip()


class CommandHandler:
    def __init__(
        self,
        *,
        client: SQLiteClient,
        sessions: SessionService,
        memory: MemoryManager,
        skills_dir,
        completion=None,
        index=None,
        worker=None,
    ):
        self.client = client
        self.sessions = sessions
        self.memory = memory
        self.skills_dir = skills_dir
        self.completion = completion
        self.index = index
        self.worker = worker
        self._commands: Dict[str, Tuple[str, Callable[[str, SessionContext], Awaitable[CommandResult]]]] = {
            "/memories": ("Display saved facts", self._memories),
            "/profile": ("Display user profile", self._profile),
            "/skills": ("List installed skills", self._skills),
            "/search": ("Search across sessions and memories", self._search),
            "/sessions": ("List recent sessions", self._sessions),
            "/resume": ("Resume a past session", self._resume),
            "/compact": ("Summarize and compress current session", self._compact),
            "/status": ("Show store, index and worker status", self._status),
            "/help": ("List commands", self._help),
            "/exit": ("Leave the assistant", self._exit),
        }

    @staticmethod
    def is_command(line: str) -> bool:
        return line.strip().startswith("/")

    async def handle(self, line: str, ctx: SessionContext) -> CommandResult:
        name, args = split_command(line)
        entry = self._commands.get(name)
        if entry is None:
            return CommandResult(f"Unknown command: {name}")
        return await entry[1](args, ctx)

    async def _memories(self, args: str, ctx: SessionContext) -> CommandResult:
        return CommandResult(self.memory.read_workspace_file("MEMORY.md"))

    async def _profile(self, args: str, ctx: SessionContext) -> CommandResult:
        return CommandResult(self.memory.read_workspace_file("context/USER.md"))

    async def _skills(self, args: str, ctx: SessionContext) -> CommandResult:
        skills = get_installed_skills(self.skills_dir)
        if not skills:
            return CommandResult(
                "No skills installed.\n\nAdd a skill by creating workspace/skills/<name>/SKILL.md"
            )
        lines = ["Installed skills:\n"]
        lines.extend(f"  {skill.name}  {skill.description}" for skill in skills)
        return CommandResult("\n".join(lines))

    async def _search(self, query: str, ctx: SessionContext) -> CommandResult:
        if not query:
            return CommandResult("Usage: /search <query>")
        results = await self.client.search(query, SEARCH_LIMIT)
        if not results:
            return CommandResult(f'No results found for "{query}".')
        lines = [f'Search results for "{query}":\n']
        for hit in results:
            if hit["source"] == "memory":
                prefix = "[memory]"
            else:
                prefix = f"[session: {hit.get('session_title') or hit.get('session_id')}]"
            content = hit["content"]
            if len(content) > SEARCH_EXCERPT_CHARS:
                content = content[:SEARCH_EXCERPT_CHARS] + "…"
            lines.append(f"{prefix} {content}")
        return CommandResult("\n".join(lines))

    async def _sessions(self, args: str, ctx: SessionContext) -> CommandResult:
        recent = await self.sessions.list_recent_sessions(SESSIONS_LIMIT)
        if not recent:
            return CommandResult("No sessions found.")
        lines = ["Recent sessions:\n"]
        for item in recent:
            lines.append(
                f'  {item.id}  {item.created_at[:10]}  "{item.title}"  ({len(item.messages)} messages)'
            )
        lines.append("\nUse /resume <session_id> to reload a session.")
        return CommandResult("\n".join(lines))

    async def _resume(self, session_id: str, ctx: SessionContext) -> CommandResult:
        if not session_id:
            return CommandResult("Usage: /resume <session_id>")
        if session_id == ctx.id:
            return CommandResult(f'Already in session "{session_id}".')
        resumed = await self.sessions.resume_session(session_id)
        if resumed is None:
            return CommandResult(f'Session "{session_id}" not found.')
        await self.sessions.close_session(ctx)
        return CommandResult(
            f'Resumed session {resumed.id}: "{resumed.title}" ({len(resumed.messages)} messages)',
            session=resumed,
        )

    async def _compact(self, args: str, ctx: SessionContext) -> CommandResult:
        if not ctx.messages:
            return CommandResult("Nothing to compact yet.")
        if self.completion is None:
            return CommandResult("Error: completion service is not configured.")
        try:
            summary = await self.sessions.compact_session(ctx, self.completion)
        except CompletionError as exc:
            logger.warning("compact_failed", session_id=ctx.id, error=str(exc))
            return CommandResult(f"Error: {exc}")
        return CommandResult(f"Session compacted:\n\n{summary}")

    async def _status(self, args: str, ctx: SessionContext) -> CommandResult:
        status = await self.client.get_index_status()
        lines = [
            f"Session: {ctx.id} ({len(ctx.messages)} messages)",
            f"Sessions: {status['sessions']}  Messages: {status['messages']}",
            f"Memories: {status['active_memories']} active, {status['superseded_memories']} superseded",
            f"Full-text search: {'fts5' if status['fts_available'] else 'like fallback'}",
            f"Schema versions: {', '.join(status['schema_versions']) or 'none'}",
            f"Semantic index: {'enabled' if self.index is not None and self.index.enabled else 'disabled'}",
        ]
        if self.worker is not None:
            worker = self.worker.status()
            stats = worker["stats"]
            lines.append(
                f"Embed worker: {'running' if worker['running'] else 'stopped'}, "
                f"queue {worker['queue_depth']}/{worker['queue_maxsize']}, "
                f"ok {stats['succeeded']} failed {stats['failed']} dropped {stats['dropped']}"
            )
        return CommandResult("\n".join(lines))

    async def _help(self, args: str, ctx: SessionContext) -> CommandResult:
        lines = ["Commands:\n"]
        lines.extend(f"  {name:<10} {description}" for name, (description, _) in self._commands.items())
        return CommandResult("\n".join(lines))

    async def _exit(self, args: str, ctx: SessionContext) -> CommandResult:
        return CommandResult("Bye.", exit=True)
