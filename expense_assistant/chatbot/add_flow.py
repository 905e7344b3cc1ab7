"""
Add-Flow Handler

Turns "I bought …" utterances into saved expenses:

  DRAFTING → AWAITING_CONFIRMATION → COMMITTED   (or ABANDONED on "no")

The state lives on the Session and only this module changes it. Nothing is
written until the user has seen the confirmation message and said yes; the
commit itself writes the receipt and every item embedding in one batch.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import ClassificationError, EmbeddingError, PersistenceError
from ..schema.core_schema import (
    CommittedExpense,
    DraftExtraction,
    ExpenseDraft,
    ItemVector,
    LineItem,
    Session,
    normalize_date,
)
from ..schema.labels import AddFlowState, EmbeddingTask
from ..storage.document_store import DocumentStore, new_id
from .json_cleanup import strip_code_fence
from .llm_client import Embedder, TextGenerator
from .summarizer import format_inr

logger = logging.getLogger(__name__)

RECEIPTS_COLLECTION = "receipts"
EMBEDDINGS_SUBCOLLECTION = "embeddings"

DECLINED_REPLY = "Okay, I won't save that expense."
FALLBACK_QUESTION = "Could you tell me where you bought it, what you bought and how much it cost?"
DATE_QUESTION = "What date was this purchase made? For example 15/09/2026 or 2026-09-15."
NOTHING_PENDING_REPLY = "Okay. There's no expense waiting to be saved."

EXTRACTION_PROMPT = """You help users log expenses (Indian context, amounts in ₹) from conversation.
Today's date is {today}.

Read the conversation and the latest message, then answer ONLY with JSON of this shape:
{{
  "validationPassed": true | false,
  "addToDb": true | false,
  "declined": true | false,
  "question": "clarifying question or null",
  "receipt": {{
    "vendor": "store name",
    "date": "YYYY-MM-DD",
    "amount": 0,
    "category": "food | groceries | transport | shopping | utilities | entertainment | health | other",
    "paymentMode": "cash | upi | card | digital | null",
    "items": [{{"name": "item", "price": 0, "quantity": 1}}],
    "notes": "",
    "confidence": 0.0
  }}
}}

Rules:
- validationPassed is true only when vendor, at least one item with a price, and the total are known.
  Otherwise set it false and put ONE short question for the missing details in "question".
- A missing date means today.
- addToDb is true only when the latest message confirms ("yes", "save it", "go ahead") a receipt the bot just asked to save.
- declined is true when the latest message refuses to save ("no", "cancel", "don't save").
- Always include the full receipt you understood so far in "receipt" (null if nothing is known yet).

Conversation:
{history}

Latest message:
"{utterance}"
"""


def price_bucket(price: float) -> str:
    if price >= 1000:
        return "₹1000_plus"
    if price >= 500:
        return "₹500_999"
    if price >= 100:
        return "₹100_499"
    return "₹0_99"


def embedding_input(item: LineItem, draft: ExpenseDraft) -> str:
    """`name | category | price-bucket | vendor`"""
    return f"{item.name} | {draft.category or 'uncategorized'} | {price_bucket(item.price)} | {draft.vendor}"


def _qty(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def render_confirmation(draft: ExpenseDraft) -> str:
    if draft.items:
        item_summary = ", ".join(
            f"{_qty(item.quantity)} {item.name} for ₹{format_inr(item.price)}"
            for item in draft.items
        )
    else:
        item_summary = "No items listed"
    return (
        "You're about to save this receipt:\n"
        f"- Vendor: {draft.vendor}\n"
        f"- Items: {item_summary}\n"
        f"- Total: ₹{format_inr(draft.amount)}\n"
        f"- Date: {draft.date}\n\n"
        'Shall I add this to the database? Reply with "yes" or "no".'
    )


def parse_extraction(raw: str) -> DraftExtraction:
    """Validate the model's JSON payload before it reaches the state machine."""
    try:
        payload = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError as e:
        raise ClassificationError("Expense extraction returned malformed JSON", cause=e) from e
    if not isinstance(payload, dict):
        raise ClassificationError("Expense extraction did not return a JSON object")

    # Older prompt shape: {"validationPassed": .., "data": {"receipt": ..} | "question"}
    data = payload.get("data")
    if isinstance(data, dict) and "receipt" not in payload:
        payload["receipt"] = data.get("receipt")
    elif isinstance(data, str) and not payload.get("question"):
        payload["question"] = data

    # An unreadable purchase date is asked about again rather than guessed
    receipt = payload.get("receipt")
    if isinstance(receipt, dict) and receipt.get("date") and normalize_date(receipt["date"]) is None:
        logger.info("Extraction returned an unreadable date %r", receipt["date"])
        payload["receipt"] = {**receipt, "date": None}
        payload["validationPassed"] = False
        payload["question"] = DATE_QUESTION

    try:
        return DraftExtraction.model_validate(payload)
    except ValidationError as e:
        raise ClassificationError("Expense extraction payload failed validation", cause=e) from e


class ExpenseRepository:
    """Writes committed expenses and their item vectors."""

    def __init__(self, store: DocumentStore, embedder: Embedder) -> None:
        self.store = store
        self.embedder = embedder

    async def commit(self, user_id: str, draft: ExpenseDraft) -> CommittedExpense:
        """
        Embed every line item, then write the receipt and all item vectors in
        a single batch.

        Raises:
            EmbeddingError: before anything is written.
            PersistenceError: the batch failed; nothing is visible.
        """
        expense_id = new_id()
        created_at = datetime.now()
        draft = draft.model_copy(update={"date": draft.date or created_at.date().isoformat()})

        inputs = [embedding_input(item, draft) for item in draft.items]
        logger.info("Generating %d item embeddings for receipt %s", len(inputs), expense_id)
        try:
            vectors = await self.embedder.embed(inputs, EmbeddingTask.DOCUMENT) if inputs else []
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError("Embedding service failed", cause=e) from e
        if len(vectors) != len(draft.items):
            raise EmbeddingError(
                f"Got {len(vectors)} embeddings for {len(draft.items)} items"
            )

        committed = CommittedExpense(
            expense_id=expense_id,
            user_id=user_id,
            created_at=created_at,
            draft=draft,
            vectors=[
                ItemVector(
                    expense_id=expense_id,
                    item_index=idx,
                    name=item.name,
                    price=item.price,
                    quantity=item.quantity,
                    vendor=draft.vendor,
                    purchase_date=draft.date,
                    category=draft.category,
                    embedding=vector,
                )
                for idx, (item, vector) in enumerate(zip(draft.items, vectors))
            ],
        )

        batch = self.store.batch()
        batch.set(RECEIPTS_COLLECTION, expense_id, committed.to_record())
        item_collection = f"{RECEIPTS_COLLECTION}/{expense_id}/{EMBEDDINGS_SUBCOLLECTION}"
        for vector in committed.vectors:
            batch.set(item_collection, new_id(), vector.to_record(user_id, created_at))
        try:
            await batch.commit()
        except Exception as e:
            logger.error("Failed to save receipt %s: %s", expense_id, e)
            raise PersistenceError("Failed to save receipt", cause=e) from e

        logger.info("Saved receipt %s with %d item embeddings", expense_id, committed.items_inserted)
        return committed

    async def save_receipt(self, user_id: str, draft: Dict[str, Any]) -> Dict[str, Any]:
        """Save an already-reviewed receipt (e.g. edited in a form) without the chat flow."""
        committed = await self.commit(user_id, ExpenseDraft.model_validate(draft))
        return {
            "success": True,
            "message": "Receipt and line-items stored with embeddings",
            "receipt_id": committed.expense_id,
            "items_inserted": committed.items_inserted,
        }


class AddFlowHandler:
    """Re-entrant handler for add-intent turns."""

    def __init__(self, llm: TextGenerator, repository: ExpenseRepository) -> None:
        self.llm = llm
        self.repository = repository

    async def extract(self, utterance: str, history_text: str) -> DraftExtraction:
        prompt = EXTRACTION_PROMPT.format(
            today=datetime.now().date().isoformat(),
            history=history_text,
            utterance=utterance,
        )
        raw = await self.llm.generate([prompt])
        return parse_extraction(raw)

    async def handle(self, session: Session, utterance: str, history_text: str) -> str:
        extraction = await self.extract(utterance, history_text)
        state = session.add_flow
        logger.info(
            "Add flow %s: state=%s validation=%s addToDb=%s declined=%s",
            session.session_id, state.value, extraction.validation_passed,
            extraction.add_to_db, extraction.declined,
        )

        if extraction.declined:
            if state not in (AddFlowState.AWAITING_CONFIRMATION, AddFlowState.DRAFTING):
                return NOTHING_PENDING_REPLY
            self._abandon(session)
            return DECLINED_REPLY

        if extraction.add_to_db:
            if state == AddFlowState.AWAITING_CONFIRMATION and session.pending_draft is not None:
                return await self._commit(session)
            if state == AddFlowState.COMMITTED and self._is_recommit(session, extraction.receipt):
                return (
                    "That receipt is already saved "
                    f"(Receipt ID: {session.last_committed_id}). Nothing new was added."
                )

        if not extraction.validation_passed or extraction.receipt is None:
            session.add_flow = AddFlowState.DRAFTING
            return extraction.question or FALLBACK_QUESTION

        draft = extraction.receipt
        if not draft.date:
            draft = draft.model_copy(update={"date": datetime.now().date().isoformat()})
        session.pending_draft = draft
        session.add_flow = AddFlowState.AWAITING_CONFIRMATION
        return render_confirmation(draft)

    async def _commit(self, session: Session) -> str:
        draft = session.pending_draft
        # EmbeddingError / PersistenceError leave the draft pending so "yes" can retry
        committed = await self.repository.commit(session.user_id, draft)
        session.pending_draft = None
        session.last_committed_id = committed.expense_id
        session.last_committed_draft = committed.draft
        session.add_flow = AddFlowState.COMMITTED
        return (
            "Receipt saved successfully! "
            f"Receipt ID: {committed.expense_id} ({committed.items_inserted} items)."
        )

    @staticmethod
    def _is_recommit(session: Session, receipt: Optional[ExpenseDraft]) -> bool:
        if receipt is None or session.last_committed_draft is None:
            return True
        committed = session.last_committed_draft
        return (
            receipt.vendor.strip().lower() == committed.vendor.strip().lower()
            and abs(receipt.amount - committed.amount) < 0.01
        )

    @staticmethod
    def _abandon(session: Session) -> None:
        session.pending_draft = None
        session.add_flow = AddFlowState.ABANDONED
