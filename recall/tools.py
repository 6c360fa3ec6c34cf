"""
Tools the assistant may call, and the sandboxed executor that runs them.

The tool set is closed: each tool is a pydantic model tagged by `kind`, the
declarations sent to the completion service are generated from those
models, and execution dispatches on the validated model type. Every
failure inside a tool comes back as result text so the conversation can
continue.
"""

import asyncio
import shlex
import subprocess
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .completion_client import ToolCall
from .db.errors import ToolFailure
from .skills import read_skill

logger = structlog.get_logger(__name__)

READ_FILE_MAX_CHARS = 50_000
COMMAND_OUTPUT_MAX_CHARS = 20_000
# Per stream; anything past this is drained and discarded while the script runs.
COMMAND_OUTPUT_MAX_BYTES = 1024 * 1024
DEFAULT_COMMAND_TIMEOUT_SEC = 30.0


class ReadFile(BaseModel):
    """Read the contents of a file at the given path. Returns the file content as a string."""

    kind: Literal["read_file"] = "read_file"
    path: str = Field(min_length=1, description="Absolute or relative file path to read")


class WriteFile(BaseModel):
    """Write content to a file at the given path. Creates parent directories if needed. Overwrites existing content."""

    kind: Literal["write_file"] = "write_file"
    path: str = Field(min_length=1, description="Absolute or relative file path to write to")
    content: str = Field(description="Content to write to the file")


class ReadSkill(BaseModel):
    """Load the full instructions of an installed skill by name. Use this when a user's request matches a skill listed in the Available Skills section of your system prompt."""

    kind: Literal["read_skill"] = "read_skill"
    name: str = Field(min_length=1, description="The name of the skill to load")


class RunCommand(BaseModel):
    """Run a script from the workspace/bin/ directory. Only scripts placed in workspace/bin/ are allowed. Pass the script name and any arguments as the command string (e.g. 'my-script arg1 arg2'). Times out after 30 seconds."""

    kind: Literal["run_command"] = "run_command"
    command: str = Field(
        min_length=1,
        description=(
            "Script name followed by arguments (e.g. 'my-script arg1 arg2'). "
            "The script must exist in workspace/bin/."
        ),
    )


ToolRequest = Annotated[
    Union[ReadFile, WriteFile, ReadSkill, RunCommand], Field(discriminator="kind")
]
TOOL_MODELS = (ReadFile, WriteFile, ReadSkill, RunCommand)
TOOL_NAMES = tuple(model.model_fields["kind"].default for model in TOOL_MODELS)

_request_adapter = TypeAdapter(ToolRequest)


def _strip_titles(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        name: {key: value for key, value in schema.items() if key != "title"}
        for name, schema in properties.items()
    }


def tool_definitions() -> List[Dict[str, Any]]:
    """Function declarations in chat/completions `tools` format."""
    definitions = []
    for model in TOOL_MODELS:
        schema = model.model_json_schema()
        properties = dict(schema.get("properties", {}))
        properties.pop("kind", None)
        definitions.append(
            {
                "type": "function",
                "function": {
                    "name": model.model_fields["kind"].default,
                    "description": (model.__doc__ or "").strip(),
                    "parameters": {
                        "type": "object",
                        "properties": _strip_titles(properties),
                        "required": [
                            name for name in schema.get("required", []) if name != "kind"
                        ],
                    },
                },
            }
        )
    return definitions


def parse_tool_request(name: str, arguments: Dict[str, Any]) -> ToolRequest:
    """Validate a tool call into its typed request. Raises ValidationError."""
    return _request_adapter.validate_python({**arguments, "kind": name})


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "kind")
        parts.append(f"{location or 'arguments'}: {error.get('msg')}")
    return "; ".join(parts)


class ToolExecutor:
    """Runs validated tool requests against one workspace."""

    def __init__(
        self,
        workspace_dir: Path,
        skills_dir: Path,
        bin_dir: Path,
        command_timeout_sec: float = DEFAULT_COMMAND_TIMEOUT_SEC,
    ) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.skills_dir = Path(skills_dir)
        self.bin_dir = Path(bin_dir)
        self.command_timeout_sec = command_timeout_sec

    @classmethod
    def from_settings(cls, settings) -> "ToolExecutor":
        return cls(
            workspace_dir=settings.workspace_dir,
            skills_dir=settings.skills_dir,
            bin_dir=settings.bin_dir,
            command_timeout_sec=settings.command_timeout_sec,
        )

    async def execute(self, call: ToolCall) -> str:
        """Run one tool call and return its result text. Never raises for tool errors."""
        if call.name not in TOOL_NAMES:
            logger.warning("tool_unknown", tool=call.name)
            return f"Unknown tool: {call.name}"
        if call.arguments is None:
            return f"Error: arguments for {call.name} are not a valid JSON object"
        try:
            request = parse_tool_request(call.name, call.arguments)
        except ValidationError as exc:
            return f"Error: invalid arguments for {call.name}: {_describe_validation_error(exc)}"

        try:
            result = await asyncio.to_thread(self.run, request)
        except ToolFailure as exc:
            logger.warning("tool_failed", tool=call.name, error=str(exc))
            return str(exc)
        except OSError as exc:
            logger.warning("tool_failed", tool=call.name, error=str(exc))
            return f"Error: {exc}"
        logger.info("tool_executed", tool=call.name, chars=len(result))
        return result

    def run(self, request: ToolRequest) -> str:
        if isinstance(request, ReadFile):
            return self._read_file(request)
        if isinstance(request, WriteFile):
            return self._write_file(request)
        if isinstance(request, ReadSkill):
            return read_skill(self.skills_dir, request.name)
        if isinstance(request, RunCommand):
            return self._run_command(request)
        raise ToolFailure(f"Error: unsupported tool request {type(request).__name__}")

    def _resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if not path.is_absolute():
            path = self.workspace_dir / path
        return path

    def _read_file(self, request: ReadFile) -> str:
        path = self._resolve(request.path)
        if not path.is_file():
            raise ToolFailure(f"Error: File not found: {request.path}")
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ToolFailure(f"Error reading file: {exc}") from exc
        if len(content) > READ_FILE_MAX_CHARS:
            return (
                content[:READ_FILE_MAX_CHARS]
                + f"\n\n[truncated — file is {len(content)} chars]"
            )
        return content

    def _write_file(self, request: WriteFile) -> str:
        path = self._resolve(request.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(request.content, encoding="utf-8")
        except OSError as exc:
            raise ToolFailure(f"Error writing file: {exc}") from exc
        return f"File written successfully: {request.path} ({len(request.content)} chars)"

    def _run_command(self, request: RunCommand) -> str:
        try:
            parts = shlex.split(request.command)
        except ValueError as exc:
            raise ToolFailure(f"Error: could not parse command: {exc}") from exc
        if not parts:
            raise ToolFailure("Error: No script name provided.")

        bin_dir = self.bin_dir.resolve()
        script = (bin_dir / parts[0]).resolve()
        if bin_dir not in script.parents:
            raise ToolFailure(
                "Error: Path traversal not allowed. Scripts must reside in workspace/bin/."
            )
        if not script.is_file():
            raise ToolFailure(
                f'Error: Script not found: "{parts[0]}". Place executable scripts in workspace/bin/.'
            )

        try:
            process = subprocess.Popen(
                [str(script), *parts[1:]],
                cwd=str(self.workspace_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise ToolFailure(f"Command failed:\n{exc}") from exc

        with process, ThreadPoolExecutor(max_workers=2) as readers:
            stdout_future = readers.submit(_read_bounded, process.stdout, COMMAND_OUTPUT_MAX_BYTES)
            stderr_future = readers.submit(_read_bounded, process.stderr, COMMAND_OUTPUT_MAX_BYTES)
            try:
                returncode = process.wait(timeout=self.command_timeout_sec)
            except subprocess.TimeoutExpired as exc:
                process.kill()
                process.wait()
                raise ToolFailure(
                    f"Command failed:\ntimed out after {self.command_timeout_sec:g}s"
                ) from exc
            stdout = stdout_future.result()
            stderr = stderr_future.result()

        if returncode != 0:
            detail = stderr.strip() or stdout.strip() or f"exit status {returncode}"
            raise ToolFailure(f"Command failed:\n{detail}")

        output = stdout.strip()
        if len(output) > COMMAND_OUTPUT_MAX_CHARS:
            return (
                output[:COMMAND_OUTPUT_MAX_CHARS]
                + f"\n\n[truncated — output is {len(output)} chars]"
            )
        return output or "(no output)"


def _read_bounded(stream, limit: int) -> str:
    kept = bytearray()
    for chunk in iter(lambda: stream.read(65536), b""):
        if len(kept) < limit:
            kept.extend(chunk[: limit - len(kept)])
    return kept.decode("utf-8", errors="replace")
