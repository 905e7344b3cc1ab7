"""
Summarizer

One- or two-sentence answers for fetch queries. Common aggregations use fixed
templates; everything else gets a single one-sentence LLM summary.
"""

import logging
from typing import List, Sequence

from ..schema.core_schema import QueryDescriptor, ShapedRow
from ..schema.labels import NO_EXPENSES_FOUND, Aggregation, QueryIntent
from .llm_client import TextGenerator

logger = logging.getLogger(__name__)


def format_inr(amount: float) -> str:
    """Indian digit grouping (12,34,567.5), at most two decimals."""
    value = round(float(amount or 0), 2)
    sign = "-" if value < 0 else ""
    whole, _, frac = f"{abs(value):.2f}".partition(".")
    frac = frac.rstrip("0")

    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups: List[str] = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join(groups + [tail])

    return f"{sign}{whole}.{frac}" if frac else f"{sign}{whole}"


def total_price(rows: Sequence[ShapedRow]) -> float:
    return sum(r.price or 0 for r in rows)


def wants_average(utterance: str, descriptor: QueryDescriptor) -> bool:
    return (
        descriptor.aggregation == Aggregation.AVG
        or descriptor.intent == QueryIntent.AVERAGE
        or "average" in (utterance or "").lower()
    )


class Summarizer:
    """Turns shaped rows into a short natural-language answer"""

    def __init__(self, llm: TextGenerator) -> None:
        self.llm = llm

    async def summarize(
        self,
        utterance: str,
        rows: Sequence[ShapedRow],
        descriptor: QueryDescriptor,
    ) -> str:
        logger.info("Summarizing %d rows for intent %s", len(rows), descriptor.intent.value)

        if not rows:
            return NO_EXPENSES_FOUND

        total = total_price(rows)

        if wants_average(utterance, descriptor):
            average = total / len(rows)
            return (
                f"Your average spending is ₹{average:.2f} per item. "
                f"Total: ₹{format_inr(total)} across {len(rows)} items."
            )

        if descriptor.intent == QueryIntent.TOTAL or descriptor.aggregation == Aggregation.SUM:
            category = descriptor.filters.category
            where = f" on {category}" if category else " total"
            return f"You spent ₹{format_inr(total)}{where} across {len(rows)} items."

        if descriptor.intent == QueryIntent.MOST_EXPENSIVE:
            top = rows[0]  # already sorted by the executor
            return f"Your most expensive item was {top.name} for ₹{format_inr(top.price)}."

        samples = ", ".join(f"{r.name} - ₹{format_inr(r.price)}" for r in rows[:3])
        text = await self.llm.generate(
            [
                "Summarize this user expense data in exactly one clear sentence (Indian context, amounts in ₹).",
                f"User Query: {utterance}",
                f"Data Summary: {len(rows)} items, Total: ₹{format_inr(total)}",
                f"Sample items: {samples}",
            ]
        )
        return text.strip()
