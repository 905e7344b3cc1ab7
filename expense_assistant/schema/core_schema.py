"""
Core Schema Definitions for the Expense Assistant

Pipeline:
  (1) Utterance → Session (history log) → Intent
  (2) add   → ExpenseDraft → confirmation → CommittedExpense (+ ItemVector per item)
  (3) fetch → QueryDescriptor → ShapedRow[] → summary
  (4) convo → free-form reply
"""

from typing import Any, List, Optional, Union
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .labels import AddFlowState, Aggregation, QueryIntent, Speaker


def _now() -> datetime:
    return datetime.now()



# Day-first forms are tried before month-first ones (Indian receipts)
DATE_FORMATS = (
    "%Y-%m-%d", "%Y/%m/%d",
    "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%d/%m/%y",
    "%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y", "%b %d %Y", "%B %d %Y",
)


def normalize_date(value: Any) -> Optional[str]:
    """ISO YYYY-MM-DD for a date-like value, or None when it can't be read."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


# ============================================================================
# SESSION & HISTORY
# ============================================================================

class Turn(BaseModel):
    """One utterance (user) or reply (bot). Immutable once appended."""
    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    timestamp: datetime = Field(default_factory=_now)


class Session(BaseModel):
    """
    One ongoing multi-turn conversation.
    History is append-only; add-flow state is owned by the add-flow handler.
    """
    session_id: str = Field(..., description="Opaque session identifier")
    user_id: str
    display_name: str = Field("New chat", description="Short title derived from the first utterance")
    started_at: datetime = Field(default_factory=_now)
    last_active_at: datetime = Field(default_factory=_now)
    history: List[Turn] = Field(default_factory=list)

    add_flow: AddFlowState = AddFlowState.IDLE
    pending_draft: Optional["ExpenseDraft"] = None
    last_committed_id: Optional[str] = None
    last_committed_draft: Optional["ExpenseDraft"] = None

    def to_record(self) -> dict:
        """Durable representation written when the session ends."""
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "displayName": self.display_name,
            "startedAt": self.started_at.isoformat(),
            "lastActive": self.last_active_at.isoformat(),
            "history": [
                {
                    "speaker": t.speaker.value,
                    "text": t.text,
                    "timestamp": t.timestamp.isoformat(),
                }
                for t in self.history
            ],
        }

    @classmethod
    def from_record(cls, record: dict) -> "Session":
        return cls(
            session_id=record["sessionId"],
            user_id=record["userId"],
            display_name=record.get("displayName") or "New chat",
            started_at=record.get("startedAt") or _now(),
            last_active_at=record.get("lastActive") or _now(),
            history=[
                Turn(speaker=t["speaker"], text=t["text"], timestamp=t["timestamp"])
                for t in record.get("history", [])
            ],
        )


# ============================================================================
# EXPENSES
# ============================================================================

class LineItem(BaseModel):
    name: str
    price: float = 0.0
    quantity: float = 1

    @field_validator("price", mode="before")
    @classmethod
    def _price_default(cls, v):
        return 0.0 if v is None else v

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity_default(cls, v):
        return 1 if v in (None, 0) else v


class ExpenseDraft(BaseModel):
    """Unpersisted expense extracted from conversation."""
    model_config = ConfigDict(populate_by_name=True)

    vendor: str = Field(..., description="Merchant / store name")
    date: Optional[str] = Field(None, description="Purchase date, YYYY-MM-DD")
    amount: float = Field(..., description="Receipt total")
    items: List[LineItem] = Field(default_factory=list)
    notes: Optional[str] = None
    confidence: Optional[float] = None
    category: Optional[str] = None
    payment_mode: Optional[str] = Field(None, alias="paymentMode")

    @field_validator("date", mode="before")
    @classmethod
    def _iso_date(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        iso = normalize_date(v)
        if iso is None:
            raise ValueError(f"Unrecognised purchase date: {v!r}")
        return iso

    @model_validator(mode="before")
    @classmethod
    def _amount_from_items(cls, data):
        # Receipts without an explicit total fall back to the item sum
        if isinstance(data, dict) and data.get("amount") is None:
            items = data.get("items") or []
            data = {
                **data,
                "amount": sum(
                    float(i.get("price") or 0) * float(i.get("quantity") or 1)
                    for i in items
                    if isinstance(i, dict)
                ),
            }
        return data

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ItemVector(BaseModel):
    """Embedding of a single line item, tagged with its owning expense."""
    expense_id: str
    item_index: int
    name: str
    price: float
    quantity: float
    vendor: str
    purchase_date: Optional[str] = None
    category: Optional[str] = None
    embedding: List[float]

    def to_record(self, user_id: str, created_at: datetime) -> dict:
        return {
            "user_id": user_id,
            "receipt_id": self.expense_id,
            "item_index": self.item_index,
            "vendor": self.vendor,
            "purchase_date": self.purchase_date,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "category_name": self.category,
            "embedding": self.embedding,
            "created_at": created_at.isoformat(),
        }


class CommittedExpense(BaseModel):
    """A confirmed draft after an all-or-nothing commit."""
    expense_id: str
    user_id: str
    created_at: datetime
    draft: ExpenseDraft
    vectors: List[ItemVector]

    @property
    def items_inserted(self) -> int:
        return len(self.vectors)

    def to_record(self) -> dict:
        return {
            "userId": self.user_id,
            "receiptId": self.expense_id,
            **self.draft.to_record(),
            "createdAt": self.created_at.isoformat(),
        }


class DraftExtraction(BaseModel):
    """What the add-flow extraction call returns, validated at the boundary."""
    model_config = ConfigDict(populate_by_name=True)

    validation_passed: bool = Field(False, alias="validationPassed")
    add_to_db: bool = Field(False, alias="addToDb")
    declined: bool = Field(False, description="User explicitly said no to saving")
    question: Optional[str] = Field(None, description="Clarifying question when validation fails")
    receipt: Optional[ExpenseDraft] = None


# ============================================================================
# FETCH QUERIES
# ============================================================================

class DateRange(BaseModel):
    start: datetime
    end: datetime


class QueryFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_keyword: Optional[str] = Field(None, alias="dateKeyword")
    date_range: Optional[DateRange] = Field(None, alias="dateRange")
    category: Optional[str] = None
    merchants: Optional[List[str]] = None
    payment_mode: Optional[str] = Field(None, alias="paymentMode")
    min_amount: Optional[float] = Field(None, alias="minAmount")

    @field_validator("merchants", mode="before")
    @classmethod
    def _merchants_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v


class QueryDescriptor(BaseModel):
    """Structured fetch query; lives for a single request."""
    intent: QueryIntent = QueryIntent.UNKNOWN
    filters: QueryFilters = Field(default_factory=QueryFilters)
    aggregation: Optional[Aggregation] = None

    @field_validator("intent", mode="before")
    @classmethod
    def _repair_intent(cls, v):
        if isinstance(v, QueryIntent):
            return v
        label = str(v or "").strip().upper()
        try:
            return QueryIntent(label)
        except ValueError:
            return QueryIntent.UNKNOWN

    @field_validator("aggregation", mode="before")
    @classmethod
    def _repair_aggregation(cls, v):
        if v is None or isinstance(v, Aggregation):
            return v
        try:
            return Aggregation(str(v).strip().lower())
        except ValueError:
            return None

    @field_validator("filters", mode="before")
    @classmethod
    def _filters_default(cls, v):
        return {} if v is None else v


class ShapedRow(BaseModel):
    """One line item flattened out of a matching expense."""
    name: str
    price: float = 0.0
    quantity: float = 1
    total: float = 0.0
    category: Optional[str] = None
    vendor: Optional[str] = None
    receipt_id: Optional[str] = None
    user_id: Optional[str] = None
    date: Optional[str] = None
    created_at: Optional[str] = None
    amount: float = 0.0
    payment_mode: Optional[str] = None


class RetrievalResult(BaseModel):
    success: bool
    summary: str
    rows: List[ShapedRow] = Field(default_factory=list)
    source: str = "keyword"
    intent: Optional[QueryIntent] = None
    total_items: int = 0
    error: Optional[str] = None


# ============================================================================
# REQUEST BOUNDARY
# ============================================================================

class TurnRequest(BaseModel):
    utterance_text: Optional[str] = None
    audio_content: Optional[bytes] = None
    language_hint: str = "en-US"
    user_id: str
    session_id: Optional[str] = None
    is_session_end: bool = False


class TurnResponse(BaseModel):
    response_text: str
    session_id: str


class SessionEndResponse(BaseModel):
    success: bool
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    kind: str
    message: str
    session_id: Optional[str] = None


BoundaryResponse = Union[TurnResponse, SessionEndResponse, ErrorResponse]


Session.model_rebuild()
