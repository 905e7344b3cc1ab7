"""
Query Classifier

Input: a fetch-intent utterance.
Output: QueryDescriptor
  - intent: one of the closed QueryIntent labels (unknown labels → UNKNOWN)
  - filters: dateKeyword / category / merchants / paymentMode / minAmount
  - aggregation: sum | avg | count | max

The model is observed to under-classify "average" questions, so any
utterance mentioning "average" is forced to AVERAGE_SPENDING.
"""

import json
import logging

from pydantic import ValidationError

from ..errors import QueryParseError
from ..schema.core_schema import QueryDescriptor, QueryFilters
from ..schema.labels import Aggregation, QueryIntent
from .json_cleanup import clean_json_text
from .llm_client import TextGenerator

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = """Classify an Indian personal-finance query into one of these intents:
- TOTAL_SPENDING: Total amount spent
- AVERAGE_SPENDING: Average spending amount
- CATEGORY_SPENDING: Spending by category
- PAYMENT_MODE_SPLIT: Split by payment method
- MERCHANT_SPENDING: Spending at specific merchants
- THRESHOLD_EXPENSES: Expenses above/below threshold
- MOST_EXPENSIVE: Most expensive items/transactions
- CHEAPEST: Least expensive items/transactions
- AVERAGE_DAILY: Daily average spending
- UNKNOWN: Cannot classify

Filters (all optional):
- dateKeyword: this_week | last_week | this_month | last_month | this_quarter | indian_fy
- category: lower-case category name, e.g. "food"
- merchants: list of merchant names
- paymentMode: cash | upi | card | digital
- minAmount: number

Aggregation (optional): sum | avg | count | max

Your response MUST be valid JSON. Examples:

For "average spending":
{
  "intent": "AVERAGE_SPENDING",
  "filters": {},
  "aggregation": "avg"
}

For "total spent on food last month":
{
  "intent": "CATEGORY_SPENDING",
  "filters": {
    "category": "food",
    "dateKeyword": "last_month"
  },
  "aggregation": "sum"
}

Respond only with JSON, no other text."""


def _mentions_average(utterance: str) -> bool:
    return "average" in (utterance or "").lower()


def parse_descriptor(raw: str, utterance: str) -> QueryDescriptor:
    """
    Parse the model answer into a QueryDescriptor.

    Raises:
        QueryParseError: malformed JSON and no "average" heuristic applies.
    """
    cleaned = clean_json_text(raw)
    try:
        payload = json.loads(cleaned)
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")
        descriptor = QueryDescriptor.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed classifier JSON: %r", cleaned)
        if _mentions_average(utterance):
            return QueryDescriptor(
                intent=QueryIntent.AVERAGE,
                filters=QueryFilters(),
                aggregation=Aggregation.AVG,
            )
        raise QueryParseError(f"Query classifier JSON parse error: {e}", cause=e) from e

    if _mentions_average(utterance) and not descriptor.intent.is_average:
        descriptor.intent = QueryIntent.AVERAGE
        descriptor.aggregation = Aggregation.AVG
    return descriptor


class QueryClassifier:
    """Maps a fetch utterance to a structured QueryDescriptor (single LLM call)"""

    def __init__(self, llm: TextGenerator) -> None:
        self.llm = llm

    async def classify(self, utterance: str) -> QueryDescriptor:
        raw = await self.llm.generate([CLASSIFY_PROMPT, utterance])
        descriptor = parse_descriptor(raw, utterance)
        logger.info("Classified %r as %s", utterance, descriptor.model_dump(mode="json", exclude_none=True))
        return descriptor
