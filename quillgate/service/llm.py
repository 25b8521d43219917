from __future__ import annotations

import json
from typing import List, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from quillgate.logging import get_logger
from quillgate.service.errors import UpstreamFailure
from quillgate.storage.models import Generation, ToolCall, ToolDeclaration, Turn

logger = get_logger(__name__)


class GenerativeClient(Protocol):
    """Interface for the generative-text service."""

    async def generate(
        self,
        turns: Sequence[Turn],
        *,
        system_instruction: Optional[str] = None,
        tools: Optional[Sequence[ToolDeclaration]] = None,
    ) -> Generation: ...


def _dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def turns_to_messages(turns: Sequence[Turn], system_instruction: Optional[str] = None) -> List[dict]:
    """Translate conversation turns into chat-completions messages.

    ``model`` turns become ``assistant`` messages (carrying any synthetic tool
    calls) and each tool result part becomes its own ``tool`` message.
    """
    messages: List[dict] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for turn in turns:
        if turn.role == "tool":
            for part in turn.parts:
                if part.tool_result is None:
                    continue
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.tool_result.call_id,
                        "content": _dump(part.tool_result.response),
                    }
                )
            continue

        chunks = []
        for part in turn.parts:
            if part.text:
                chunks.append(part.text)
            elif part.data is not None:
                chunks.append(_dump(part.data))
        content = "\n".join(chunks)

        if turn.role == "user":
            messages.append({"role": "user", "content": content})
            continue

        message: dict = {"role": "assistant", "content": content or None}
        calls = turn.tool_calls
        if calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": _dump(call.arguments)},
                }
                for call in calls
            ]
        elif not content:
            message["content"] = ""
        messages.append(message)
    return messages


def _parse_arguments(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("tool_arguments_unparseable", raw_len=len(raw))
        return {"_unparsed": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LLMService:
    """Generative-text client over an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 60.0,
        temperature: float = 0.4,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        # Retries belong to callers at the boundary, never inside the pipeline
        self.client = client or (
            AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_seconds,
                max_retries=0,
            )
            if api_key
            else None
        )

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def generate(
        self,
        turns: Sequence[Turn],
        *,
        system_instruction: Optional[str] = None,
        tools: Optional[Sequence[ToolDeclaration]] = None,
    ) -> Generation:
        if self.client is None:
            raise UpstreamFailure("generative service API key is not configured")

        request: dict = {
            "model": self.model,
            "messages": turns_to_messages(turns, system_instruction),
            "temperature": self.temperature,
        }
        if tools:
            request["tools"] = [tool.to_openai() for tool in tools]

        try:
            completion = await self.client.chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            logger.warning("llm_timeout", model=self.model)
            raise UpstreamFailure("generative service timed out") from exc
        except openai.APIStatusError as exc:
            logger.warning(
                "llm_status_error", model=self.model, status_code=exc.status_code
            )
            raise UpstreamFailure(
                f"generative service returned status {exc.status_code}"
            ) from exc
        except openai.APIError as exc:
            logger.warning("llm_request_failed", model=self.model, error=str(exc))
            raise UpstreamFailure("generative service request failed") from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if first_choice is None or first_choice.message is None:
            raise UpstreamFailure("generative service returned no choices")

        message = first_choice.message
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
            if getattr(call, "function", None) is not None
        ]
        usage = {}
        if completion.usage is not None:
            usage = {
                "prompt_tokens": getattr(completion.usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(completion.usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(completion.usage, "total_tokens", 0) or 0,
            }
        logger.debug(
            "llm_generation",
            model=self.model,
            tool_calls=[call.name for call in tool_calls],
            content_len=len(message.content or ""),
        )
        return Generation(text=message.content, tool_calls=tool_calls, usage=usage)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
