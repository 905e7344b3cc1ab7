import asyncio

import pytest
from pydantic import ValidationError

from expense_assistant.errors import ErrorKind, PersistenceError, SessionNotFoundError
from expense_assistant.memory.history import HistoryRenderer, append_turn
from expense_assistant.memory.session_store import SessionStore, make_display_name
from expense_assistant.schema.core_schema import Session, Turn
from expense_assistant.schema.labels import NO_HISTORY, Speaker


def _turns(*pairs):
    return [Turn(speaker=speaker, text=text) for speaker, text in pairs]


def test_render_empty_history_uses_sentinel():
    assert HistoryRenderer(use_tokenizer=False).render([], 8) == NO_HISTORY


def test_render_formats_last_n_turns_oldest_first():
    turns = _turns(
        (Speaker.USER, "hi"),
        (Speaker.BOT, "Hello!"),
        (Speaker.USER, "I bought milk"),
        (Speaker.BOT, "Where did you buy it?"),
    )
    renderer = HistoryRenderer(use_tokenizer=False)
    assert renderer.render(turns, 8) == "User: hi\nBot: Hello!\nUser: I bought milk\nBot: Where did you buy it?"
    assert renderer.render(turns, 2) == "User: I bought milk\nBot: Where did you buy it?"


def test_render_drops_oldest_lines_to_fit_budget():
    turns = _turns((Speaker.USER, "a" * 40), (Speaker.BOT, "b" * 40), (Speaker.USER, "c" * 40))
    rendered = HistoryRenderer(token_budget=15, use_tokenizer=False).render(turns, 8)
    assert rendered == "User: " + "c" * 40


def test_appended_turns_are_immutable(session):
    turn = append_turn(session, Speaker.USER, "hello")
    assert session.history == [turn]
    assert session.last_active_at == turn.timestamp
    with pytest.raises(ValidationError):
        turn.text = "changed"


def test_display_name_is_trimmed_to_a_short_title():
    assert make_display_name("") == "New chat"
    assert make_display_name("  spent   200 on chai ") == "spent 200 on chai"
    long_name = make_display_name("I bought a very large number of groceries at the supermarket today")
    assert long_name.endswith("…")
    assert len(long_name) <= 41


async def test_get_or_create_allocates_and_reuses_sessions(session_store):
    created = await session_store.get_or_create(None, "u1", "how much did I spend on food")
    assert created.session_id
    assert created.display_name == "how much did I spend on food"

    again = await session_store.get_or_create(created.session_id, "u1")
    assert again is created
    assert len(session_store) == 1


async def test_unknown_id_creates_session_under_that_id(session_store):
    session = await session_store.get_or_create("client-chosen", "u1", "hi")
    assert session.session_id == "client-chosen"
    assert "client-chosen" in session_store


async def test_append_to_unknown_session_is_not_found(session_store):
    with pytest.raises(SessionNotFoundError) as exc_info:
        await session_store.append("missing", Speaker.USER, "hello")
    assert exc_info.value.kind == ErrorKind.NOT_FOUND
    assert "missing" not in session_store


async def test_recent_history_renders_the_session(session_store):
    session = await session_store.get_or_create(None, "u1", "hi")
    assert session_store.recent_history(session) == NO_HISTORY

    await session_store.append(session.session_id, Speaker.USER, "hi")
    await session_store.append(session.session_id, Speaker.BOT, "Hello! How can I help?")
    assert session_store.recent_history(session) == "User: hi\nBot: Hello! How can I help?"
    assert session_store.recent_history(session, n=1) == "Bot: Hello! How can I help?"


async def test_end_persists_then_evicts(session_store, store):
    session = await session_store.get_or_create(None, "u1", "hi")
    await session_store.append(session.session_id, Speaker.USER, "hi")

    await session_store.end(session.session_id)

    assert session.session_id not in session_store
    record = await store.get("chats", session.session_id)
    assert record["userId"] == "u1"
    assert record["displayName"] == "hi"
    assert [t["text"] for t in record["history"]] == ["hi"]
    assert record["history"][0]["speaker"] == "user"


async def test_end_failure_keeps_session_cached(flaky_store):
    sessions = SessionStore(flaky_store, use_tokenizer=False).open()
    session = await sessions.get_or_create(None, "u1", "hi")

    flaky_store.fail_writes = True
    with pytest.raises(PersistenceError):
        await sessions.end(session.session_id)

    assert session.session_id in sessions
    assert await flaky_store.get("chats", session.session_id) is None


async def test_end_unknown_session_is_not_found(session_store):
    with pytest.raises(SessionNotFoundError):
        await session_store.end("missing")


async def test_ended_session_can_be_resumed_by_its_owner(session_store):
    session = await session_store.get_or_create(None, "u1", "hi")
    await session_store.append(session.session_id, Speaker.USER, "hi")
    await session_store.append(session.session_id, Speaker.BOT, "Hello!")
    await session_store.end(session.session_id)

    resumed = await session_store.get_or_create(session.session_id, "u1")
    assert [t.text for t in resumed.history] == ["hi", "Hello!"]
    assert resumed.display_name == "hi"


async def test_ended_chat_of_another_user_is_not_found_and_left_untouched(session_store, store):
    session = await session_store.get_or_create(None, "u1", "hi")
    await session_store.append(session.session_id, Speaker.USER, "hi")
    await session_store.end(session.session_id)
    before = await store.get("chats", session.session_id)

    with pytest.raises(SessionNotFoundError):
        await session_store.get_or_create(session.session_id, "u2", "hello")

    assert session.session_id not in session_store
    assert await store.get("chats", session.session_id) == before


async def test_live_session_of_another_user_is_not_found(session_store):
    session = await session_store.get_or_create(None, "u1", "hi")
    await session_store.append(session.session_id, Speaker.USER, "hi")

    with pytest.raises(SessionNotFoundError):
        await session_store.get_or_create(session.session_id, "u2", "hello")

    assert session_store.get(session.session_id).user_id == "u1"
    assert [t.text for t in session.history] == ["hi"]


async def test_only_the_owner_can_end_a_session(session_store, store):
    session = await session_store.get_or_create(None, "u1", "hi")

    with pytest.raises(SessionNotFoundError):
        await session_store.end(session.session_id, user_id="u2")
    assert session.session_id in session_store
    assert await store.get("chats", session.session_id) is None

    await session_store.end(session.session_id, user_id="u1")
    assert session.session_id not in session_store


async def test_shutdown_flushes_every_session(session_store, store):
    first = await session_store.get_or_create(None, "u1", "one")
    second = await session_store.get_or_create(None, "u2", "two")

    await session_store.shutdown()

    assert len(session_store) == 0
    assert not session_store.is_open
    assert await store.get("chats", first.session_id) is not None
    assert await store.get("chats", second.session_id) is not None


async def test_lock_queues_turns_for_the_same_session(session_store):
    order = []

    async def turn(tag, delay):
        async with session_store.lock("s1"):
            order.append(f"{tag}-start")
            await asyncio.sleep(delay)
            order.append(f"{tag}-end")

    await asyncio.gather(turn("a", 0.02), turn("b", 0))
    assert order == ["a-start", "a-end", "b-start", "b-end"]
    assert session_store._turn_locks == {}


async def test_lock_outlives_session_end_while_turns_wait(session_store):
    session = await session_store.get_or_create(None, "u1", "hi")
    order = []

    async def ending():
        async with session_store.lock(session.session_id):
            order.append("end-start")
            await asyncio.sleep(0.02)
            await session_store.end(session.session_id)
            order.append("end-done")

    async def turn(tag, delay):
        await asyncio.sleep(delay)
        async with session_store.lock(session.session_id):
            order.append(f"{tag}-start")
            await asyncio.sleep(0.02)
            order.append(f"{tag}-end")

    await asyncio.gather(ending(), turn("b", 0), turn("c", 0.03))
    assert order == ["end-start", "end-done", "b-start", "b-end", "c-start", "c-end"]


async def test_lock_does_not_block_other_sessions(session_store):
    order = []

    async def turn(session_id, delay):
        async with session_store.lock(session_id):
            order.append(f"{session_id}-start")
            await asyncio.sleep(delay)
            order.append(f"{session_id}-end")

    await asyncio.gather(turn("s1", 0.02), turn("s2", 0))
    assert order.index("s2-end") < order.index("s1-end")


def test_session_record_round_trip():
    session = Session(session_id="s1", user_id="u1", display_name="chai")
    append_turn(session, Speaker.USER, "chai for 20")
    restored = Session.from_record(session.to_record())
    assert restored.session_id == "s1"
    assert restored.history[0].speaker == Speaker.USER
    assert restored.history[0].text == "chai for 20"
