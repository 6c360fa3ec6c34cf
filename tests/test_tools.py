from pathlib import Path

import pytest

from recall.completion_client import ToolCall
from recall.tools import (
    COMMAND_OUTPUT_MAX_BYTES,
    COMMAND_OUTPUT_MAX_CHARS,
    READ_FILE_MAX_CHARS,
    ReadFile,
    RunCommand,
    ToolExecutor,
    parse_tool_request,
    tool_definitions,
)


def _executor(tmp_path: Path, timeout: float = 5.0) -> ToolExecutor:
    workspace = tmp_path / "workspace"
    (workspace / "bin").mkdir(parents=True)
    (workspace / "skills").mkdir()
    return ToolExecutor(workspace, workspace / "skills", workspace / "bin", command_timeout_sec=timeout)


def _script(executor: ToolExecutor, name: str, body: str) -> Path:
    path = executor.bin_dir / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def _call(tool: str, **arguments) -> ToolCall:
    return ToolCall(id="call_0", name=tool, arguments=arguments)


def test_tool_definitions_use_function_format() -> None:
    definitions = tool_definitions()
    names = [item["function"]["name"] for item in definitions]
    assert names == ["read_file", "write_file", "read_skill", "run_command"]

    write_file = definitions[1]["function"]
    assert write_file["parameters"]["type"] == "object"
    assert set(write_file["parameters"]["properties"]) == {"path", "content"}
    assert sorted(write_file["parameters"]["required"]) == ["content", "path"]
    assert "kind" not in write_file["parameters"]["properties"]
    assert "title" not in write_file["parameters"]["properties"]["path"]
    assert write_file["description"].startswith("Write content to a file")


def test_parse_tool_request_returns_typed_models() -> None:
    assert isinstance(parse_tool_request("read_file", {"path": "a.txt"}), ReadFile)
    request = parse_tool_request("run_command", {"command": "greet world"})
    assert isinstance(request, RunCommand)
    assert request.command == "greet world"


@pytest.mark.asyncio
async def test_write_then_read_relative_to_workspace(tmp_path: Path) -> None:
    executor = _executor(tmp_path)

    written = await executor.execute(_call("write_file", path="notes/todo.md", content="buy milk"))
    assert written == "File written successfully: notes/todo.md (8 chars)"
    assert (executor.workspace_dir / "notes" / "todo.md").read_text(encoding="utf-8") == "buy milk"

    assert await executor.execute(_call("read_file", path="notes/todo.md")) == "buy milk"
    assert await executor.execute(_call("read_file", path="missing.md")) == "Error: File not found: missing.md"


@pytest.mark.asyncio
async def test_read_file_truncates_large_files(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    big = tmp_path / "big.txt"
    big.write_text("a" * (READ_FILE_MAX_CHARS + 10), encoding="utf-8")

    result = await executor.execute(_call("read_file", path=str(big)))

    assert result.startswith("a" * READ_FILE_MAX_CHARS + "\n\n[truncated")
    assert result.endswith(f"file is {READ_FILE_MAX_CHARS + 10} chars]")


@pytest.mark.asyncio
async def test_read_skill_returns_body_or_not_found(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    skill = executor.skills_dir / "weather"
    skill.mkdir()
    (skill / "SKILL.md").write_text(
        "---\nname: weather\ndescription: Forecasts\n---\nRun bin/forecast <city>.", encoding="utf-8"
    )

    assert await executor.execute(_call("read_skill", name="weather")) == "Run bin/forecast <city>."
    assert (
        await executor.execute(_call("read_skill", name="cooking"))
        == 'Skill not found: "cooking". Use /skills to see installed skills.'
    )


@pytest.mark.asyncio
async def test_run_command_executes_script_in_workspace(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    _script(executor, "greet", 'echo "hello $1 from $(basename "$(pwd -P)")"')
    _script(executor, "quiet", "true")

    assert await executor.execute(_call("run_command", command="greet ana")) == "hello ana from workspace"
    assert await executor.execute(_call("run_command", command="quiet")) == "(no output)"


@pytest.mark.asyncio
async def test_run_command_reports_failures(tmp_path: Path) -> None:
    executor = _executor(tmp_path, timeout=1.0)
    _script(executor, "broken", 'echo "bad input" >&2\nexit 3')
    _script(executor, "slow", "exec sleep 5")

    assert await executor.execute(_call("run_command", command="broken")) == "Command failed:\nbad input"
    assert await executor.execute(_call("run_command", command="slow")) == "Command failed:\ntimed out after 1s"
    assert await executor.execute(_call("run_command", command="nope")) == (
        'Error: Script not found: "nope". Place executable scripts in workspace/bin/.'
    )


@pytest.mark.asyncio
async def test_run_command_rejects_paths_outside_bin(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    outside = executor.workspace_dir / "escape"
    outside.write_text("#!/bin/sh\necho escaped\n", encoding="utf-8")
    outside.chmod(0o755)

    for command in ("../escape", "/bin/echo hi", "../../etc/passwd"):
        result = await executor.execute(_call("run_command", command=command))
        assert result.startswith("Error: Path traversal not allowed")


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_become_result_text(tmp_path: Path) -> None:
    executor = _executor(tmp_path)

    assert await executor.execute(_call("delete_everything")) == "Unknown tool: delete_everything"

    invalid = await executor.execute(_call("write_file", path="a.txt"))
    assert invalid.startswith("Error: invalid arguments for write_file:")
    assert "content" in invalid

    unparsed = await executor.execute(ToolCall(id="c", name="read_file", arguments=None, raw_arguments="{oops"))
    assert unparsed == "Error: arguments for read_file are not a valid JSON object"


@pytest.mark.asyncio
async def test_run_command_caps_captured_output(tmp_path: Path) -> None:
    executor = _executor(tmp_path)
    _script(executor, "flood", "head -c 3000000 /dev/zero | tr '\\0' 'a'")

    result = await executor.execute(_call("run_command", command="flood"))

    assert result.startswith("a" * COMMAND_OUTPUT_MAX_CHARS + "\n\n[truncated")
    assert result.endswith(f"output is {COMMAND_OUTPUT_MAX_BYTES} chars]")
