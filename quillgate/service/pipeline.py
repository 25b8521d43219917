from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from quillgate.logging import get_logger, log_pipeline_trace, sanitize_error_message
from quillgate.service.errors import ErrorKind, PipelineError, UpstreamFailure
from quillgate.service.llm import GenerativeClient
from quillgate.service.prompts import RESEARCH_PERSONA, WRITER_PERSONA, build_writer_input
from quillgate.service.search import WEB_SEARCH_TOOL, SearchService
from quillgate.service.tool_loop import Capability, ToolInvocationLoop
from quillgate.storage.models import ConversationRequest, Turn

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    text: Optional[str] = None
    error: Optional[PipelineError] = None
    trace: List[Dict[str, Any]] = field(default_factory=list)
    tool_rounds: int = 0
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None


class PipelineOrchestrator:
    """Research-then-write generation for one admitted request.

    The research stage sees the caller's full conversation and may search the
    web through the tool loop. The writer is called exactly once, after
    research finishes, with no capabilities and only the final user request,
    the research summary and the caller's style notes as input.
    """

    def __init__(
        self,
        llm: GenerativeClient,
        search: SearchService,
        *,
        max_iterations: int = 3,
    ) -> None:
        self.llm = llm
        self.search = search
        self.max_iterations = max_iterations
        self.tool_loop = ToolInvocationLoop(llm)

    def capabilities(self) -> List[Capability]:
        async def web_search(arguments: Dict[str, Any]) -> str:
            query = arguments.get("query")
            return await self.search.search(query if isinstance(query, str) else "")

        return [Capability(declaration=WEB_SEARCH_TOOL, handler=web_search)]

    async def run(self, conversation: ConversationRequest) -> PipelineResult:
        result = PipelineResult()
        started = time.monotonic()

        def mark(stage: str, **details: Any) -> None:
            entry = {"stage": stage, "elapsed_ms": int((time.monotonic() - started) * 1000)}
            entry.update(details)
            result.trace.append(entry)

        def fail(kind: ErrorKind, stage: str, message: str) -> PipelineResult:
            result.error = PipelineError(kind=kind, stage=stage, message=message)
            mark("error", kind=kind.value, failed_stage=stage)
            logger.warning(
                "pipeline_failed", kind=kind.value, stage=stage, message=message
            )
            log_pipeline_trace(result.trace, logger)
            return result

        mark("researching")
        try:
            research = await self.tool_loop.run(
                conversation.turns,
                self.capabilities(),
                self.max_iterations,
                system_instruction=RESEARCH_PERSONA,
            )
        except UpstreamFailure as exc:
            return fail(ErrorKind.UPSTREAM, "researching", sanitize_error_message(exc.message))

        for entry in research.trace:
            mark(entry["stage"], **{k: v for k, v in entry.items() if k != "stage"})
        result.tool_rounds = research.rounds
        result.usage = dict(research.usage)

        if research.exceeded:
            return fail(
                ErrorKind.TOOL_LOOP_EXCEEDED,
                "researching",
                f"research exceeded {self.max_iterations} tool rounds",
            )
        summary = (research.text or "").strip()
        if not summary:
            return fail(ErrorKind.UPSTREAM, "researching", "research stage returned no text")

        mark("writing")
        writer_input = build_writer_input(
            conversation.latest_request, summary, conversation.system_instruction
        )
        try:
            draft = await self.llm.generate(
                [Turn.user(writer_input)], system_instruction=WRITER_PERSONA, tools=None
            )
        except UpstreamFailure as exc:
            return fail(ErrorKind.UPSTREAM, "writing", sanitize_error_message(exc.message))

        for key, value in draft.usage.items():
            result.usage[key] = result.usage.get(key, 0) + int(value or 0)
        if draft.tool_calls:
            return fail(ErrorKind.UPSTREAM, "writing", "writer requested an undeclared capability")
        text = (draft.text or "").strip()
        if not text:
            return fail(ErrorKind.UPSTREAM, "writing", "writer stage returned no text")

        result.text = text
        mark("completed")
        logger.info(
            "pipeline_completed",
            tool_rounds=result.tool_rounds,
            text_len=len(text),
            usage=result.usage,
        )
        log_pipeline_trace(result.trace, logger)
        return result
