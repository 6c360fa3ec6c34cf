"""
Command-line entry point.

    recall                      start a new session
    recall --resume <id>        continue an existing session
    recall import-legacy        import pre-database workspace files
"""

import argparse
import asyncio
import sys
from typing import Optional

import structlog

from .agent_loop import AgentLoop
from .commands import CommandHandler
from .completion_client import CompletionClient
from .config import Settings, get_settings
from .context_assembler import ContextAssembler
from .db import close_sqlite_client, get_sqlite_client
from .db.errors import CompletionError
from .db.legacy_import import migrate_existing_data
from .logging_setup import setup_logging
from .memory_lifecycle import MemoryManager
from .runtime_state import runtime_state
from .semantic_index import SemanticIndexClient
from .session import SessionContext, SessionService
from .tools import ToolExecutor, tool_definitions

logger = structlog.get_logger(__name__)

PROMPT = "> "


def _read_line(prompt: str) -> Optional[str]:
    try:
        return input(prompt)
    except EOFError:
        return None


def _print_token(token: str) -> None:
    print(token, end="", flush=True)


def _print_tool_use(name: str, arguments) -> None:
    print(f"\n\n[using {name}...]\n", flush=True)


class Shell:
    """Wires the engine together for one interactive run."""

    def __init__(self, settings: Settings, client, index: SemanticIndexClient):
        worker = runtime_state.embed_worker
        self.settings = settings
        self.client = client
        self.index = index
        self.sessions = SessionService(client, worker)
        self.memory = MemoryManager(
            client, settings.mirror_file, dispatcher=worker, workspace_dir=settings.workspace_dir
        )
        self.assembler = ContextAssembler(client, index, settings.context_dir, settings.skills_dir)
        self.completion = CompletionClient.from_settings(settings)
        self.agent = AgentLoop(
            self.completion, ToolExecutor.from_settings(settings), tools=tool_definitions()
        )
        self.commands = CommandHandler(
            client=client,
            sessions=self.sessions,
            memory=self.memory,
            skills_dir=settings.skills_dir,
            completion=self.completion,
            index=index,
            worker=worker,
        )

    async def answer(self, ctx: SessionContext, text: str) -> None:
        await self.sessions.append_message(ctx, "user", text)
        system_prompt = await self.assembler.build_augmented_prompt(text)
        try:
            result = await self.agent.run(
                system_prompt,
                ctx.history(),
                on_token=_print_token,
                on_tool_use=_print_tool_use,
            )
        except CompletionError as exc:
            print(f"\nError: {exc}", file=sys.stderr)
            return
        print()

        if not result.text.strip():
            return
        await self.sessions.append_message(ctx, "assistant", result.text)
        for fact in await self.memory.extract_and_save(result.text, ctx.id):
            print(f"✦ Memory saved: {fact}")
        self.sessions.embed_session(ctx)

    async def run(self, resume_id: Optional[str] = None) -> int:
        ctx: Optional[SessionContext] = None
        if resume_id:
            ctx = await self.sessions.resume_session(resume_id)
            if ctx is None:
                print(f'Session "{resume_id}" not found.', file=sys.stderr)
                return 1
        else:
            ctx = await self.sessions.init_session()
        print(f"recall · session {ctx.id} · /help for commands")

        try:
            while True:
                line = await asyncio.to_thread(_read_line, PROMPT)
                if line is None:
                    break
                if not line.strip():
                    continue
                if self.commands.is_command(line):
                    result = await self.commands.handle(line, ctx)
                    print(result.text)
                    if result.session is not None:
                        ctx = result.session
                    if result.exit:
                        break
                    continue
                await self.answer(ctx, line.strip())
        finally:
            await self.sessions.close_session(ctx)
        return 0


async def run_chat(settings: Settings, resume_id: Optional[str]) -> int:
    client = get_sqlite_client()
    await client.init_db()
    index = SemanticIndexClient.from_settings(settings)
    await runtime_state.ensure_started(lambda: index)
    logger.info(
        "recall_started",
        workspace=str(settings.workspace_dir),
        fts_available=client.fts_available,
        semantic_index=index.enabled,
    )
    try:
        return await Shell(settings, client, index).run(resume_id)
    finally:
        await runtime_state.shutdown(drain_timeout=settings.embed_drain_timeout_sec)
        await close_sqlite_client()


async def run_import(settings: Settings) -> int:
    client = get_sqlite_client()
    await client.init_db()
    try:
        counts = await migrate_existing_data(client, settings.workspace_dir)
    finally:
        await close_sqlite_client()
    print(
        f"Imported {counts['sessions']} sessions, {counts['messages']} messages, "
        f"{counts['memories']} memories."
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recall", description="Personal assistant with persistent memory."
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("chat", "import-legacy"),
        default="chat",
        help="chat (default) or import-legacy",
    )
    parser.add_argument("--resume", metavar="SESSION_ID", help="continue an existing session")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    settings.workspace_dir.mkdir(parents=True, exist_ok=True)

    try:
        if args.command == "import-legacy":
            return asyncio.run(run_import(settings))
        return asyncio.run(run_chat(settings, args.resume))
    except KeyboardInterrupt:
        print()
        return 130


if __name__ == "__main__":
    sys.exit(main())
