from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from parley.backends.agent_client import AgentClient, AgentConfig, _text_of


def completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def fake_openai(*responses):
    create = AsyncMock(side_effect=list(responses))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), create


@pytest.mark.asyncio
async def test_reply_sends_history_and_records_turns(temp_db):
    client, create = fake_openai(completion(" first answer "), completion("second answer"))
    agent = AgentClient(AgentConfig(system_prompt="be brief", model="m1"), client=client)

    assert await agent.reply("conv-1", "hello") == "first answer"
    assert await agent.reply("conv-1", "again") == "second answer"

    messages = create.call_args.kwargs["messages"]
    assert messages[0] == {"role": "system", "content": "be brief"}
    assert [m["content"] for m in messages[1:]] == ["hello", "first answer", "again"]
    assert create.call_args.kwargs["model"] == "m1"
    assert temp_db.count_messages("conv-1") == 4


@pytest.mark.asyncio
async def test_history_is_bounded(temp_db):
    for n in range(10):
        temp_db.append_message("conv-1", "user", f"old {n}")
    client, create = fake_openai(completion("ok"))
    agent = AgentClient(AgentConfig(max_history=3), client=client)

    await agent.reply("conv-1", "new")
    messages = create.call_args.kwargs["messages"]
    assert [m["content"] for m in messages[1:]] == ["old 7", "old 8", "old 9", "new"]


@pytest.mark.asyncio
async def test_empty_choices_return_empty_string(temp_db):
    client, _ = fake_openai(SimpleNamespace(choices=[]))
    agent = AgentClient(AgentConfig(), client=client)
    assert await agent.reply("conv-1", "hello") == ""
    assert temp_db.count_messages("conv-1") == 1


@pytest.mark.asyncio
async def test_multimodal_message_stored_as_text(temp_db):
    client, create = fake_openai(completion("a cat"))
    agent = AgentClient(AgentConfig(), client=client)
    parts = [
        {"type": "text", "text": "what is this?"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ]
    await agent.reply("conv-1", parts)
    assert create.call_args.kwargs["messages"][-1]["content"] == parts
    assert temp_db.load_history("conv-1")[0]["content"] == "what is this?\n[image attached]"


def test_text_of_plain_string():
    assert _text_of("hi") == "hi"


def test_config_from_dict_defaults():
    cfg = AgentConfig.from_dict({"model": "local", "max_history": "5"})
    assert cfg.model == "local"
    assert cfg.max_history == 5
    assert cfg.base_url == "https://api.openai.com/v1"
    assert AgentConfig.from_dict(None).max_tokens == 1024
