from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Protocol

import logging
from openai import AsyncOpenAI

from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.models.realtime import ToolCallRequest, ToolCallResult
from voice_agent.services.facility import Facility, FacilityRepository
from voice_agent.services.tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "I'm sorry, something went wrong on my side. Could you say that once more?"
FALLBACK_TEXT = "Sorry, could you say that again?"
DEFAULT_MAX_TOOL_ROUNDS = 8


def build_greeting(facility: Facility) -> str:
    return f"Thank you for calling the {facility.name} tenant desk. How can I help you today?"


def build_system_prompt(facility: Facility, today: Optional[date] = None) -> str:
    today = today or date.today()
    return (
        f"You are the phone operator for {facility.name}, a commercial facility that rents "
        "short-term spaces for pop-up stores, events and offices on a daily basis. "
        "Use the tools to look up sections, availability and to record inquiries, "
        "then answer briefly and clearly.\n\n"
        f"Facility: {facility.name}\n"
        f"Address: {facility.address}\n"
        f"Phone: {facility.phone}\n"
        f"Hours: {facility.hours}\n\n"
        "Rules:\n"
        "- Replies are read aloud over the phone. Keep them to one or two short sentences.\n"
        "- Quote rent per day, for example '15,000 yen per day'.\n"
        "- Say areas plainly, for example '45 square meters'. Avoid jargon.\n"
        "- Ask for the start and end dates before checking availability.\n"
        "- Collect the caller's name and phone number before recording an inquiry.\n"
        f"- Today's date is {today.isoformat()}."
    )


@dataclass
class ProviderReply:
    text: Optional[str] = None
    tool_call: Optional[ToolCallRequest] = None


class ReasoningProvider(Protocol):
    async def complete(
        self,
        system_prompt: str,
        tools: List[Dict[str, Any]],
        messages: List[Dict[str, Any]],
    ) -> ProviderReply: ...


class ProviderUnavailableError(RuntimeError):
    pass


class OpenAIReasoningProvider:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: int = 512,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL") or None
        self.max_tokens = max_tokens
        self._client: Optional[AsyncOpenAI] = None
        if self.api_key:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        else:
            logger.warning("openai.missing_api_key")

    async def complete(
        self,
        system_prompt: str,
        tools: List[Dict[str, Any]],
        messages: List[Dict[str, Any]],
    ) -> ProviderReply:
        if not self._client:
            raise ProviderUnavailableError("OPENAI_API_KEY not configured")

        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            tools=tools,
            parallel_tool_calls=False,
            max_tokens=self.max_tokens,
        )
        message = response.choices[0].message
        if message.tool_calls:
            call = message.tool_calls[0]
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("openai.bad_tool_arguments tool=%s", call.function.name)
                arguments = {}
            return ProviderReply(
                tool_call=ToolCallRequest(
                    name=call.function.name,
                    arguments=arguments if isinstance(arguments, dict) else {},
                    call_id=call.id,
                )
            )
        return ProviderReply(text=(message.content or "").strip())


@dataclass
class AgentResult:
    text: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    tool_calls: List[ToolCallResult] = field(default_factory=list)
    provider_calls: int = 0
    failed: bool = False


class ConversationAgent:
    """Tool-calling loop over the chat history.

    One tool call is resolved per provider round trip. ``messages`` on the
    result holds only the turns this run produced, ready to append to the
    caller's history.
    """

    def __init__(
        self,
        provider: ReasoningProvider,
        repository: FacilityRepository,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    ) -> None:
        self.provider = provider
        self.repository = repository
        self.max_tool_rounds = max_tool_rounds

    def system_prompt(self, today: Optional[date] = None) -> str:
        return build_system_prompt(self.repository.get_facility(), today)

    async def run(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        user_text: str,
        on_tool_call: Optional[Callable[[ToolCallRequest], None]] = None,
        recorder: Optional[FlightRecorder] = None,
    ) -> AgentResult:
        dispatcher = ToolDispatcher(self.repository, recorder)
        tools = dispatcher.get_tool_schemas()
        new_messages: List[Dict[str, Any]] = [{"role": "user", "content": user_text}]
        results: List[ToolCallResult] = []
        provider_calls = 0

        try:
            while True:
                provider_calls += 1
                if recorder:
                    with recorder.stage("PLAN", provider_call=provider_calls):
                        reply = await self.provider.complete(system_prompt, tools, [*history, *new_messages])
                else:
                    reply = await self.provider.complete(system_prompt, tools, [*history, *new_messages])

                if reply.tool_call is None:
                    break
                if len(results) >= self.max_tool_rounds:
                    logger.warning("agent.tool_rounds_exhausted rounds=%d", len(results))
                    reply = ProviderReply(text="")
                    break

                call = reply.tool_call
                call_id = call.call_id or f"call_{uuid.uuid4().hex[:12]}"
                if on_tool_call:
                    on_tool_call(call)
                output = self._execute(dispatcher, call)
                results.append(ToolCallResult(call_id=call_id, name=call.name, output=output))
                new_messages.append(
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": call_id,
                                "type": "function",
                                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                            }
                        ],
                    }
                )
                new_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call_id,
                        "content": json.dumps(output, ensure_ascii=False, default=str),
                    }
                )
        except Exception as exc:
            logger.error("agent.provider_error %s", exc, exc_info=True)
            if recorder:
                recorder.log("PLAN", "provider_error", error=str(exc))
            return AgentResult(
                text=APOLOGY_TEXT,
                messages=[],
                tool_calls=results,
                provider_calls=provider_calls,
                failed=True,
            )

        text = (reply.text or "").strip() or FALLBACK_TEXT
        new_messages.append({"role": "assistant", "content": text})
        logger.info("agent.reply provider_calls=%d tool_calls=%d", provider_calls, len(results))
        return AgentResult(
            text=text,
            messages=new_messages,
            tool_calls=results,
            provider_calls=provider_calls,
        )

    @staticmethod
    def _execute(dispatcher: ToolDispatcher, call: ToolCallRequest) -> Dict[str, Any]:
        try:
            return dispatcher.dispatch(call.name, dict(call.arguments))
        except (ValueError, KeyError) as exc:
            # UnknownToolError and pydantic ValidationError are both ValueErrors
            logger.warning("agent.tool_error tool=%s error=%s", call.name, exc)
            return {"error": str(exc)}
