import asyncio
import json

import pytest
from conftest import ScriptedLLM, extraction

from expense_assistant.chatbot.llm_client import LLMClient
from expense_assistant.schema.core_schema import ErrorResponse, SessionEndResponse, TurnRequest, TurnResponse
from expense_assistant.schema.labels import AddFlowState, Speaker
from expense_assistant.storage.document_store import InMemoryDocumentStore
from expense_assistant.utils.conversation_logger import ConversationLogger


class EchoTranscriber:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error

    async def transcribe(self, audio, language_hint="en-US"):
        if self.error:
            raise self.error
        return self.text


async def test_convo_turn_never_touches_add_flow_or_query_classifier(llm, make_assistant):
    llm.script("intent", "convo", "convo").script("convo", "Hello! How can I help?", "You're welcome!")
    assistant = make_assistant(llm)

    first = await assistant.process_text("u1", "hi")
    second = await assistant.process_text("u1", "thanks", session_id=first.session_id)

    assert isinstance(first, TurnResponse)
    assert first.response_text == "Hello! How can I help?"
    assert second.session_id == first.session_id
    assert llm.kinds() == ["intent", "convo", "intent", "convo"]

    session = assistant.sessions.get(first.session_id)
    assert [(t.speaker, t.text) for t in session.history] == [
        (Speaker.USER, "hi"),
        (Speaker.BOT, "Hello! How can I help?"),
        (Speaker.USER, "thanks"),
        (Speaker.BOT, "You're welcome!"),
    ]
    assert session.add_flow == AddFlowState.IDLE


async def test_intent_prompt_includes_the_current_turn(llm, make_assistant):
    llm.script("intent", "convo").script("convo", "Hi!")
    await make_assistant(llm).process_text("u1", "hello")
    assert "Context:\nUser: hello" in llm.calls[0][1]


async def test_add_confirm_commit_through_the_assistant(llm, store, make_assistant):
    llm.script("intent", "add", "add", "add")
    llm.script("extract", extraction(), extraction(add=True), extraction(add=True))
    assistant = make_assistant(llm)

    draft = await assistant.process_text("u1", "latte and muffin at Starbucks for 450")
    assert "Shall I add this to the database?" in draft.response_text

    saved = await assistant.process_text("u1", "yes", session_id=draft.session_id)
    session = assistant.sessions.get(draft.session_id)
    assert session.add_flow == AddFlowState.COMMITTED
    assert saved.response_text.startswith("Receipt saved successfully!")
    assert session.last_committed_id in saved.response_text

    again = await assistant.process_text("u1", "yes", session_id=draft.session_id)
    assert "already saved" in again.response_text
    assert len(await store.query("receipts")) == 1
    assert "query" not in llm.kinds()


async def test_fetch_turn_uses_structured_query(llm, make_assistant, seed_receipt):
    await seed_receipt("r1", "2026-10-01", "food", [("Biryani", 350), ("Lassi", 80)])
    llm.script("intent", "fetch").script("query", '{"intent": "TOTAL_SPENDING", "aggregation": "sum"}')

    response = await make_assistant(llm).process_text("u1", "how much have I spent?")

    assert response.response_text == "You spent ₹430 total across 2 items."
    assert "extract" not in llm.kinds()


async def test_semantic_fetch_through_the_assistant(llm, make_assistant, keyword_embedder):
    llm.script("intent", "add", "add", "fetch")
    llm.script("extract", extraction(receipt={**json.loads(extraction())["receipt"],
                                               "items": [{"name": "Coffee", "price": 450}]}))
    llm.script("extract", extraction(add=True))
    llm.script("summary", "You spent ₹450 on coffee at Starbucks.")
    assistant = make_assistant(llm, embedder_override=keyword_embedder, enable_semantic=True)

    first = await assistant.process_text("u1", "coffee at Starbucks 450")
    await assistant.process_text("u1", "yes", session_id=first.session_id)
    answer = await assistant.process_text("u1", "what did I spend on coffee?", session_id=first.session_id)

    assert answer.response_text == "You spent ₹450 on coffee at Starbucks."
    assert "query" not in llm.kinds()


async def test_query_parse_error_becomes_error_response(llm, make_assistant):
    llm.script("intent", "fetch").script("query", "Sorry, I can't help with that.")
    response = await make_assistant(llm).process_text("u1", "show receipts", session_id="s-42")

    assert isinstance(response, ErrorResponse)
    assert response.kind == "QueryParseError"
    assert response.session_id == "s-42"


async def test_generation_outage_is_a_classification_error(make_assistant):
    class DownChatModel:
        async def ainvoke(self, messages):
            raise ConnectionError("service unavailable")

    response = await make_assistant(LLMClient(llm=DownChatModel())).process_text("u1", "hi")
    assert isinstance(response, ErrorResponse)
    assert response.kind == "ClassificationError"


async def test_unexpected_failure_is_an_internal_error(make_assistant):
    response = await make_assistant(ScriptedLLM()).process_text("u1", "hi")
    assert isinstance(response, ErrorResponse)
    assert response.kind == "InternalError"


@pytest.mark.parametrize(
    "request_kwargs, transcriber",
    [
        ({"audio_content": b"\x00\x01"}, None),
        ({"audio_content": b"\x00\x01"}, EchoTranscriber(text="   ")),
        ({"audio_content": b"\x00\x01"}, EchoTranscriber(error=RuntimeError("codec"))),
        ({"utterance_text": "   "}, None),
        ({}, None),
    ],
)
async def test_transcription_failures(llm, make_assistant, request_kwargs, transcriber):
    assistant = make_assistant(llm, transcriber=transcriber)
    response = await assistant.handle(TurnRequest(user_id="u1", **request_kwargs))

    assert isinstance(response, ErrorResponse)
    assert response.kind == "TranscriptionFailure"
    assert llm.calls == []


async def test_audio_is_transcribed_before_classification(llm, make_assistant):
    llm.script("intent", "convo").script("convo", "Namaste!")
    assistant = make_assistant(llm, transcriber=EchoTranscriber(text="namaste"))

    response = await assistant.handle(TurnRequest(user_id="u1", audio_content=b"\x00", language_hint="hi-IN"))

    assert response.response_text == "Namaste!"
    assert '"namaste"' in llm.calls[0][1]


async def test_session_end_persists_and_evicts(llm, store, make_assistant):
    llm.script("intent", "convo").script("convo", "Hello!")
    assistant = make_assistant(llm)
    turn = await assistant.process_text("u1", "hi")

    ended = await assistant.handle(TurnRequest(user_id="u1", session_id=turn.session_id, is_session_end=True))

    assert ended == SessionEndResponse(success=True)
    assert turn.session_id not in assistant.sessions
    assert (await store.get("chats", turn.session_id))["displayName"] == "hi"


async def test_session_end_failure_keeps_session(llm, flaky_store, make_assistant):
    llm.script("intent", "convo").script("convo", "Hello!")
    assistant = make_assistant(llm, document_store=flaky_store)
    turn = await assistant.process_text("u1", "hi")

    flaky_store.fail_writes = True
    ended = await assistant.end_session(turn.session_id)

    assert ended.success is False
    assert ended.message
    assert turn.session_id in assistant.sessions


async def test_ending_unknown_session_reports_failure(llm, make_assistant):
    ended = await make_assistant(llm).end_session("nope")
    assert ended.success is False
    assert "nope" in ended.message


async def test_another_user_cannot_continue_a_live_session(llm, store, make_assistant):
    llm.script("intent", "add").script("extract", extraction())
    assistant = make_assistant(llm)
    alice = await assistant.process_text("alice", "latte and muffin at Starbucks for 450")

    hijack = await assistant.process_text("bob", "yes", session_id=alice.session_id)

    assert isinstance(hijack, ErrorResponse)
    assert hijack.kind == "NotFound"
    session = assistant.sessions.get(alice.session_id)
    assert session.user_id == "alice"
    assert [t.speaker for t in session.history] == [Speaker.USER, Speaker.BOT]
    assert session.add_flow == AddFlowState.AWAITING_CONFIRMATION
    assert await store.query("receipts") == []


async def test_another_user_cannot_take_over_an_ended_chat(llm, store, make_assistant):
    llm.script("intent", "convo").script("convo", "Hello!")
    assistant = make_assistant(llm)
    alice = await assistant.process_text("alice", "hi")
    await assistant.end_session(alice.session_id, "alice")
    before = await store.get("chats", alice.session_id)

    taken = await assistant.process_text("bob", "hello", session_id=alice.session_id)
    ended = await assistant.end_session(alice.session_id, "bob")

    assert isinstance(taken, ErrorResponse)
    assert taken.kind == "NotFound"
    assert ended.success is False
    assert alice.session_id not in assistant.sessions
    assert await store.get("chats", alice.session_id) == before


async def test_session_end_by_another_user_is_refused(llm, store, make_assistant):
    llm.script("intent", "convo").script("convo", "Hello!")
    assistant = make_assistant(llm)
    turn = await assistant.process_text("alice", "hi")

    ended = await assistant.handle(TurnRequest(user_id="bob", session_id=turn.session_id, is_session_end=True))

    assert ended.success is False
    assert turn.session_id in assistant.sessions
    assert await store.get("chats", turn.session_id) is None


async def test_turns_on_one_session_are_queued(make_assistant):
    llm = ScriptedLLM(delay=0.01)
    llm.script("intent", "convo", "convo", "convo").script("convo", "one", "two", "three")
    assistant = make_assistant(llm)
    first = await assistant.process_text("u1", "hi")

    await asyncio.gather(
        assistant.process_text("u1", "a", session_id=first.session_id),
        assistant.process_text("u1", "b", session_id=first.session_id),
    )

    speakers = [t.speaker for t in assistant.sessions.get(first.session_id).history]
    assert speakers == [Speaker.USER, Speaker.BOT] * 3


class SlowWriteStore(InMemoryDocumentStore):
    async def set(self, collection, doc_id, data):
        await asyncio.sleep(0.01)
        await super().set(collection, doc_id, data)


async def test_turns_queued_behind_session_end_do_not_interleave(make_assistant):
    llm = ScriptedLLM(delay=0.01)
    llm.script("intent", "convo", "convo", "convo").script("convo", "one", "two", "three")
    assistant = make_assistant(llm, document_store=SlowWriteStore())
    first = await assistant.process_text("u1", "hi")
    session_id = first.session_id

    async def later(text, delay):
        await asyncio.sleep(delay)
        return await assistant.process_text("u1", text, session_id=session_id)

    ended, second, third = await asyncio.gather(
        assistant.end_session(session_id, "u1"),
        later("b", 0),
        later("c", 0.02),
    )

    assert ended.success is True
    assert (second.response_text, third.response_text) == ("two", "three")
    history = assistant.sessions.get(session_id).history
    assert [t.text for t in history] == ["hi", "one", "b", "two", "c", "three"]
    assert assistant.sessions._turn_locks == {}


async def test_conversation_log_seeds_a_new_session(tmp_path, llm, make_assistant):
    log_path = tmp_path / "logs" / "chat.jsonl"
    conversation_log = ConversationLogger(str(log_path))
    conversation_log.log_exchange("chai for 20", "You're about to save this receipt", "old-session")
    with open(log_path, "a", encoding="utf-8") as f:
        f.write("not json\n")
        f.write(json.dumps({"role": "bot", "content": "Saved!"}) + "\n")
    conversation_log.log_turn(Speaker.USER, "thanks", "old-session", metadata={"source": "cli"})

    assistant = make_assistant(llm)
    session_id = await assistant.load_conversation_log(str(log_path), "u1")

    session = assistant.sessions.get(session_id)
    assert [(t.speaker, t.text) for t in session.history] == [
        (Speaker.USER, "chai for 20"),
        (Speaker.BOT, "You're about to save this receipt"),
        (Speaker.BOT, "Saved!"),
        (Speaker.USER, "thanks"),
    ]
    assert session.display_name == "chai for 20"
    assistant.display_session(session_id)


async def test_shutdown_writes_open_chats(llm, store, make_assistant):
    llm.script("intent", "convo").script("convo", "Hello!")
    assistant = make_assistant(llm)
    turn = await assistant.process_text("u1", "hi")

    await assistant.shutdown()

    assert await store.get("chats", turn.session_id) is not None
