from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from quillgate.logging import get_logger
from quillgate.service.errors import UpstreamFailure
from quillgate.service.llm import GenerativeClient
from quillgate.storage.models import Part, ToolCall, ToolDeclaration, ToolResult, Turn

logger = get_logger(__name__)

CapabilityHandler = Callable[[Dict[str, Any]], Awaitable[str]]


@dataclass(frozen=True)
class Capability:
    """A tool the model may call: its declaration plus the coroutine that serves it."""

    declaration: ToolDeclaration
    handler: CapabilityHandler

    @property
    def name(self) -> str:
        return self.declaration.name


@dataclass
class ToolLoopResult:
    text: Optional[str] = None
    rounds: int = 0
    exceeded: bool = False
    usage: Dict[str, int] = field(default_factory=dict)
    trace: List[Dict[str, Any]] = field(default_factory=list)


def _merge_usage(total: Dict[str, int], usage: Dict[str, int]) -> None:
    for key, value in usage.items():
        total[key] = total.get(key, 0) + int(value or 0)


class ToolInvocationLoop:
    """Drive a model through bounded rounds of capability calls.

    Each round the model either answers with text (the loop ends) or asks for
    one or more capability calls. Calls from one reply run concurrently and
    their results are appended as a synthetic ``model`` turn carrying the
    calls followed by a ``tool`` turn carrying the results. Capability
    failures are fed back to the model as error results rather than ending
    the loop.
    """

    def __init__(self, llm: GenerativeClient) -> None:
        self.llm = llm

    async def run(
        self,
        turns: Sequence[Turn],
        capabilities: Sequence[Capability],
        max_iterations: int,
        *,
        system_instruction: Optional[str] = None,
    ) -> ToolLoopResult:
        conversation = list(turns)
        registry = {capability.name: capability for capability in capabilities}
        declarations = [capability.declaration for capability in capabilities] or None
        result = ToolLoopResult()

        while True:
            generation = await self.llm.generate(
                conversation, system_instruction=system_instruction, tools=declarations
            )
            _merge_usage(result.usage, generation.usage)
            if generation.is_terminal:
                result.text = generation.text
                return result

            if result.rounds >= max_iterations:
                logger.warning(
                    "tool_loop_exceeded",
                    max_iterations=max_iterations,
                    pending_calls=[call.name for call in generation.tool_calls],
                )
                result.exceeded = True
                return result

            result.rounds += 1
            calls = generation.tool_calls
            for call in calls:
                result.trace.append(
                    {"stage": "tool_call", "round": result.rounds, "name": call.name}
                )
            tool_results = await asyncio.gather(
                *(self._invoke(call, registry) for call in calls)
            )
            for tool_result in tool_results:
                result.trace.append(
                    {
                        "stage": "tool_result",
                        "round": result.rounds,
                        "name": tool_result.name,
                        "status": tool_result.response.get("status"),
                    }
                )

            model_parts = [Part(text=generation.text)] if generation.text else []
            model_parts.extend(Part(tool_call=call) for call in calls)
            conversation.append(Turn(role="model", parts=model_parts))
            conversation.append(
                Turn(role="tool", parts=[Part(tool_result=item) for item in tool_results])
            )

    async def _invoke(self, call: ToolCall, registry: Dict[str, Capability]) -> ToolResult:
        capability = registry.get(call.name)
        if capability is None:
            logger.info("tool_call_undeclared", name=call.name)
            return ToolResult(
                call_id=call.id,
                name=call.name,
                response={"status": "error", "content": f"unknown capability '{call.name}'"},
            )
        try:
            content = await capability.handler(call.arguments)
        except UpstreamFailure as exc:
            logger.info("tool_call_failed", name=call.name, error=exc.message)
            return ToolResult(
                call_id=call.id,
                name=call.name,
                response={"status": "error", "content": f"{call.name} failed: {exc.message}"},
            )
        except Exception as exc:
            logger.exception("tool_call_crashed", name=call.name, error_type=type(exc).__name__)
            return ToolResult(
                call_id=call.id,
                name=call.name,
                response={"status": "error", "content": f"{call.name} failed unexpectedly"},
            )
        return ToolResult(
            call_id=call.id, name=call.name, response={"status": "ok", "content": content}
        )
