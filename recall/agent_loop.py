"""
Bounded tool-use loop between the assistant and the completion service.

Each round streams one completion. A reply without tool calls ends the
loop; otherwise the requested tools run one at a time, in request order,
and their results go back as a single tool turn. After `max_rounds`
rounds the loop stops and returns the last round's text.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

from .completion_client import Completion, ToolCall

logger = structlog.get_logger(__name__)

MAX_TOOL_ROUNDS = 10

TokenCallback = Callable[[str], None]
ToolUseCallback = Callable[[str, Dict[str, Any]], None]


@dataclass
class AgentResult:
    text: str
    rounds: int
    exhausted: bool = False


def _assistant_turn(completion: Completion) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "content": completion.text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": call.raw_arguments or json.dumps(call.arguments or {}),
                },
            }
            for call in completion.tool_calls
        ],
    }


class AgentLoop:
    def __init__(
        self,
        completion,
        executor,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_rounds: int = MAX_TOOL_ROUNDS,
    ):
        """
        Args:
            completion: object with `stream(system, history, tools)` returning
                        a CompletionStream
            executor: object with `async execute(ToolCall) -> str`
            tools: tool declarations passed to every round
            max_rounds: round budget
        """
        self.completion = completion
        self.executor = executor
        self.tools = tools
        self.max_rounds = max(1, max_rounds)

    async def run(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        on_token: Optional[TokenCallback] = None,
        on_tool_use: Optional[ToolUseCallback] = None,
    ) -> AgentResult:
        """
        Drive rounds until a tool-free reply or the round budget runs out.

        `history` is copied; the caller's list is not modified.
        """
        messages = list(history)
        rounds = 0
        last_text = ""

        while rounds < self.max_rounds:
            rounds += 1
            stream = self.completion.stream(system_prompt, messages, self.tools)
            async for token in stream:
                if on_token is not None:
                    on_token(token)
            completion = await stream.result()
            last_text = completion.text

            if not completion.tool_calls:
                return AgentResult(text=completion.text, rounds=rounds)

            messages.append(_assistant_turn(completion))
            results = []
            for call in completion.tool_calls:
                results.append(
                    {"tool_call_id": call.id, "content": await self._run_tool(call, on_tool_use)}
                )
            messages.append({"role": "tool", "results": results})

        logger.warning("agent_round_budget_exhausted", rounds=rounds)
        return AgentResult(text=last_text, rounds=rounds, exhausted=True)

    async def _run_tool(self, call: ToolCall, on_tool_use: Optional[ToolUseCallback]) -> str:
        if on_tool_use is not None:
            on_tool_use(call.name, call.arguments or {})
        try:
            return await self.executor.execute(call)
        except Exception as exc:
            # A misbehaving tool must not end the conversation.
            logger.warning("tool_execution_crashed", tool=call.name, error=str(exc))
            return f"Error: tool {call.name} failed: {exc}"
