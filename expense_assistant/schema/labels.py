"""
Closed label sets used across the pipeline.

Model outputs are untyped text; they are mapped onto these enums as soon as
they come back from the text-generation service.
"""

from enum import Enum


class Intent(str, Enum):
    """Top-level intent of a user turn"""
    ADD = "add"
    FETCH = "fetch"
    CONVO = "convo"  # Safe default for anything unrecognised


class Speaker(str, Enum):
    USER = "user"
    BOT = "bot"


class AddFlowState(str, Enum):
    """Add-flow state held on the session, transitioned only by the add-flow handler"""
    IDLE = "idle"
    DRAFTING = "drafting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class QueryIntent(str, Enum):
    """Fetch query intents (values are the labels the model answers with)"""
    TOTAL = "TOTAL_SPENDING"
    AVERAGE = "AVERAGE_SPENDING"
    BY_CATEGORY = "CATEGORY_SPENDING"
    BY_PAYMENT_MODE = "PAYMENT_MODE_SPLIT"
    BY_MERCHANT = "MERCHANT_SPENDING"
    THRESHOLD = "THRESHOLD_EXPENSES"
    MOST_EXPENSIVE = "MOST_EXPENSIVE"
    CHEAPEST = "CHEAPEST"
    AVERAGE_DAILY = "AVERAGE_DAILY"
    UNKNOWN = "UNKNOWN"

    @property
    def is_average(self) -> bool:
        return self in (QueryIntent.AVERAGE, QueryIntent.AVERAGE_DAILY)


class Aggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    MAX = "max"


class EmbeddingTask(str, Enum):
    """Gemini embedding task types"""
    DOCUMENT = "RETRIEVAL_DOCUMENT"
    QUERY = "RETRIEVAL_QUERY"


NO_HISTORY = "new chat, no history"
NO_EXPENSES_FOUND = "No expenses found for your query."
