from __future__ import annotations

import asyncio
import json

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from expense_assistant.chatbot.add_flow import AddFlowHandler, ExpenseRepository
from expense_assistant.chatbot.chat_assistant import ChatAssistant
from expense_assistant.chatbot.llm_client import EmbeddingClient
from expense_assistant.config import Settings
from expense_assistant.errors import EmbeddingError
from expense_assistant.memory.session_store import SessionStore
from expense_assistant.schema.core_schema import Session
from expense_assistant.storage.document_store import InMemoryDocumentStore

RECEIPT = {
    "vendor": "Starbucks",
    "date": "2026-10-18",
    "amount": 450,
    "category": "food",
    "paymentMode": "upi",
    "items": [
        {"name": "Latte", "price": 250, "quantity": 1},
        {"name": "Muffin", "price": 200, "quantity": 1},
    ],
}


class ScriptedLLM:
    """Text generator that answers by prompt kind and records every call."""

    MARKERS = {
        "intent": "You are an intent classifier",
        "extract": "You help users log expenses",
        "query": "Classify an Indian personal-finance query",
        "summary": "Summarize this user expense data",
        "convo": "focused on conversations not involving receipts",
    }

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.scripts: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str]] = []

    def script(self, kind: str, *answers: str) -> "ScriptedLLM":
        self.scripts.setdefault(kind, []).extend(answers)
        return self

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]

    async def generate(self, prompt_parts) -> str:
        prompt = "\n\n".join(prompt_parts)
        kind = next((k for k, marker in self.MARKERS.items() if marker in prompt), "other")
        self.calls.append((kind, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        answers = self.scripts.get(kind)
        if not answers:
            raise AssertionError(f"unexpected {kind} generation call")
        return answers.pop(0)


class FlakyDocumentStore(InMemoryDocumentStore):
    """In-memory store whose writes can be made to fail on demand."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_writes = False

    def _flush(self) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super()._flush()


class FailingEmbedder:
    async def embed(self, texts, task_type, normalize=False):
        raise EmbeddingError("Embedding service failed", cause=RuntimeError("quota exceeded"))


class KeywordEmbedder:
    """Maps texts onto axes by keyword so distances are predictable."""

    AXES = ("coffee", "fuel")

    async def embed(self, texts, task_type, normalize=False):
        vectors = []
        for text in texts:
            lowered = text.lower()
            vector = [1.0 if axis in lowered else 0.0 for axis in self.AXES]
            vector.append(0.0 if any(vector) else 1.0)
            vectors.append(vector)
        return vectors


def extraction(
    validation: bool = True,
    add: bool = False,
    declined: bool = False,
    question: str | None = None,
    receipt: dict | None = RECEIPT,
) -> str:
    return json.dumps(
        {
            "validationPassed": validation,
            "addToDb": add,
            "declined": declined,
            "question": question,
            "receipt": receipt,
        }
    )


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(composite_indexes=[("userId", "date")])


@pytest.fixture
def flaky_store() -> FlakyDocumentStore:
    return FlakyDocumentStore(composite_indexes=[("userId", "date")])


@pytest.fixture
def embedder() -> EmbeddingClient:
    return EmbeddingClient(embeddings=DeterministicFakeEmbedding(size=8), dimensions=8)


@pytest.fixture
def failing_embedder() -> FailingEmbedder:
    return FailingEmbedder()


@pytest.fixture
def keyword_embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def session() -> Session:
    return Session(session_id="s1", user_id="u1")


@pytest.fixture
def session_store(store) -> SessionStore:
    return SessionStore(store, use_tokenizer=False).open()


@pytest.fixture
def add_flow(llm, store, embedder):
    def _build(embedder_override=None, store_override=None) -> AddFlowHandler:
        repository = ExpenseRepository(store_override or store, embedder_override or embedder)
        return AddFlowHandler(llm, repository)

    return _build


@pytest.fixture
def make_assistant(store, embedder):
    def _make(llm, *, document_store=None, embedder_override=None, transcriber=None,
              enable_semantic=False) -> ChatAssistant:
        return ChatAssistant(
            settings=Settings(google_api_key="test-key"),
            llm=llm,
            embedder=embedder_override or embedder,
            document_store=document_store or store,
            transcriber=transcriber,
            enable_semantic=enable_semantic,
            use_tokenizer=False,
        )

    return _make


@pytest.fixture
def seed_receipt(store):
    async def _seed(receipt_id, date, category, items, *, user_id="u1", vendor="Shop",
                    payment_mode="upi", target=None) -> None:
        await (target or store).set(
            "receipts",
            receipt_id,
            {
                "userId": user_id,
                "receiptId": receipt_id,
                "vendor": vendor,
                "date": date,
                "amount": sum(price for _, price in items),
                "category": category,
                "paymentMode": payment_mode,
                "items": [{"name": name, "price": price, "quantity": 1} for name, price in items],
                "createdAt": f"{date}T10:00:00",
            },
        )

    return _seed
