import asyncio

import pytest

from parley.infra import database


@pytest.fixture(autouse=True)
def _fresh_db(temp_db):
    yield


def test_conversation_is_stable_per_room():
    first = database.get_or_create_conversation("!a:example.org", "Room A")
    assert database.get_or_create_conversation("!a:example.org") == first
    assert database.get_or_create_conversation("!b:example.org") != first


def test_reset_conversation_rebinds_room():
    old = database.get_or_create_conversation("!a:example.org")
    new = database.reset_conversation("!a:example.org")
    assert new != old
    assert database.get_conversation("!a:example.org") == new


def test_reset_unknown_room_creates_binding():
    new = database.reset_conversation("!fresh:example.org")
    assert database.get_conversation("!fresh:example.org") == new


def test_message_mapping_round_trip():
    database.store_message_mapping("$evt", "conv-1", sender="@alice:example.org",
                                   room_id="!a:example.org", reply_event_id="$reply")
    mapping = database.get_message_mapping("$evt")
    assert mapping["conversation_id"] == "conv-1"
    assert mapping["reply_event_id"] == "$reply"
    assert database.get_message_mapping("$missing") is None


def test_audio_text_cache():
    database.store_audio_message("$voice", "hello from a voice note", room_id="!a:example.org")
    assert database.get_audio_text("$voice") == "hello from a voice note"
    assert database.get_audio_text("$other") is None


def test_history_is_oldest_first_and_limited():
    for n in range(5):
        database.append_message("conv-1", "user", f"msg {n}")
    database.append_message("conv-2", "user", "elsewhere")

    history = database.load_history("conv-1", limit=3)
    assert [m["content"] for m in history] == ["msg 2", "msg 3", "msg 4"]
    assert database.count_messages("conv-1") == 5


def test_migrations_are_idempotent():
    database.init_db()
    database.init_db()
    assert database.count_messages("nothing") == 0


@pytest.mark.asyncio
async def test_async_call_runs_in_thread():
    conv = await database.async_call(database.get_or_create_conversation, "!async:example.org")
    assert await asyncio.to_thread(database.get_conversation, "!async:example.org") == conv
