import json
from datetime import date
from types import SimpleNamespace

import pytest

from fakes import ScriptedProvider, text_reply, tool_reply
from voice_agent.services.agent import (
    APOLOGY_TEXT,
    FALLBACK_TEXT,
    ConversationAgent,
    OpenAIReasoningProvider,
    build_greeting,
    build_system_prompt,
)


@pytest.mark.asyncio
async def test_two_tool_calls_then_text(repository):
    provider = ScriptedProvider(
        [
            tool_reply("list_sections", call_id="c1", category="food"),
            tool_reply(
                "check_section_availability",
                call_id="c2",
                section_name="1F-B",
                start_date="2026-02-20",
                end_date="2026-02-22",
            ),
            text_reply("1F-B is free from the 20th to the 22nd."),
        ]
    )
    seen = []
    agent = ConversationAgent(provider, repository)

    result = await agent.run("system", [], "Is the food space free?", on_tool_call=seen.append)

    assert result.failed is False
    assert result.provider_calls == 3
    assert [call.name for call in seen] == ["list_sections", "check_section_availability"]
    roles = [message["role"] for message in result.messages]
    assert roles == ["user", "assistant", "tool", "assistant", "tool", "assistant"]
    assert result.messages[-1]["content"] == "1F-B is free from the 20th to the 22nd."

    availability = json.loads(result.messages[4]["content"])
    assert availability["available"] is True
    assert result.messages[3]["tool_calls"][0]["id"] == "c2"
    assert result.messages[4]["tool_call_id"] == "c2"

    # the third provider call saw both tool results
    assert [m["role"] for m in provider.calls[2]] == roles[:-1]


@pytest.mark.asyncio
async def test_history_is_sent_before_new_turn(repository):
    provider = ScriptedProvider([text_reply("Hello again.")])
    history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    agent = ConversationAgent(provider, repository)

    result = await agent.run("system", history, "are you there?")

    assert provider.calls[0] == [*history, {"role": "user", "content": "are you there?"}]
    assert len(result.messages) == 2


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_become_error_results(repository):
    provider = ScriptedProvider(
        [
            tool_reply("book_flight", call_id="c1"),
            tool_reply("get_section_info", call_id="c2"),
            text_reply("Could you tell me which section?"),
        ]
    )
    agent = ConversationAgent(provider, repository)

    result = await agent.run("system", [], "hello")

    unknown = json.loads(result.messages[2]["content"])
    invalid = json.loads(result.messages[4]["content"])
    assert "Unknown tool" in unknown["error"]
    assert "section_name" in invalid["error"]
    assert result.failed is False


@pytest.mark.asyncio
async def test_unparseable_date_goes_back_to_the_model(repository):
    provider = ScriptedProvider(
        [
            tool_reply(
                "check_section_availability",
                section_name="1F-A",
                start_date="99999999999999999999",
                end_date="2026-02-15",
            ),
            text_reply("Which start date did you mean?"),
        ]
    )
    agent = ConversationAgent(provider, repository)

    result = await agent.run("system", [], "Is 1F-A free?")

    assert result.failed is False
    assert result.provider_calls == 2
    assert "invalid date" in json.loads(result.messages[2]["content"])["error"]
    assert result.text == "Which start date did you mean?"


@pytest.mark.asyncio
async def test_provider_error_returns_apology_without_turns(repository):
    provider = ScriptedProvider([tool_reply("list_sections"), RuntimeError("network down")])
    agent = ConversationAgent(provider, repository)

    result = await agent.run("system", [], "hello")

    assert result.failed is True
    assert result.text == APOLOGY_TEXT
    assert result.messages == []
    assert result.provider_calls == 2


@pytest.mark.asyncio
async def test_empty_answer_falls_back(repository):
    agent = ConversationAgent(ScriptedProvider([text_reply("   ")]), repository)
    result = await agent.run("system", [], "hmm")
    assert result.text == FALLBACK_TEXT
    assert result.messages[-1] == {"role": "assistant", "content": FALLBACK_TEXT}


@pytest.mark.asyncio
async def test_tool_rounds_are_bounded(repository):
    provider = ScriptedProvider([tool_reply("list_sections", call_id=f"c{i}") for i in range(5)])
    agent = ConversationAgent(provider, repository, max_tool_rounds=2)

    result = await agent.run("system", [], "list everything")

    assert len(result.tool_calls) == 2
    assert result.provider_calls == 3
    assert result.text == FALLBACK_TEXT


def test_system_prompt_carries_facility_details(repository):
    facility = repository.get_facility()
    prompt = build_system_prompt(facility, today=date(2026, 2, 3))
    assert facility.name in prompt
    assert facility.phone in prompt
    assert facility.hours in prompt
    assert "2026-02-03" in prompt
    assert "per day" in prompt
    assert facility.name in build_greeting(facility)


class _Completions:
    def __init__(self, message):
        self.message = message
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(choices=[SimpleNamespace(message=self.message)])


def _provider_with(message):
    provider = OpenAIReasoningProvider(api_key="sk-test", model="gpt-test")
    completions = _Completions(message)
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return provider, completions


@pytest.mark.asyncio
async def test_openai_provider_uses_first_tool_call():
    calls = [
        SimpleNamespace(id="c1", function=SimpleNamespace(name="get_section_info", arguments='{"section_name": "1F-A"}')),
        SimpleNamespace(id="c2", function=SimpleNamespace(name="list_sections", arguments="{}")),
    ]
    provider, completions = _provider_with(SimpleNamespace(content=None, tool_calls=calls))

    reply = await provider.complete("system", [{"type": "function"}], [{"role": "user", "content": "hi"}])

    assert reply.text is None
    assert reply.tool_call.name == "get_section_info"
    assert reply.tool_call.arguments == {"section_name": "1F-A"}
    assert reply.tool_call.call_id == "c1"
    assert completions.kwargs["parallel_tool_calls"] is False
    assert completions.kwargs["messages"][0] == {"role": "system", "content": "system"}


@pytest.mark.asyncio
async def test_openai_provider_text_reply():
    provider, _ = _provider_with(SimpleNamespace(content=" Sure. ", tool_calls=None))
    reply = await provider.complete("system", [], [])
    assert reply.text == "Sure."
    assert reply.tool_call is None
