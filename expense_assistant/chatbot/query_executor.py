"""
Query Executor / Shaper

QueryDescriptor → backing-store fetch → flattened, filtered, sorted rows.

Only the owner and the date range are pushed to the store. Category,
merchants, payment mode and minimum amount are applied in memory after
flattening because receipts do not carry them as reliably filterable fields.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from ..errors import PersistenceError
from ..schema.core_schema import DateRange, QueryDescriptor, ShapedRow
from ..schema.labels import QueryIntent
from ..storage.document_store import (
    Document,
    DocumentStore,
    FieldFilter,
    FilterCombinationError,
)
from .add_flow import RECEIPTS_COLLECTION

logger = logging.getLogger(__name__)


def _start_of_day(d: datetime) -> datetime:
    return d.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(d: datetime) -> datetime:
    return d.replace(hour=23, minute=59, second=59, microsecond=0)


def _start_of_week(d: datetime) -> datetime:
    # Weeks start on Sunday (Monday=0 … Sunday=6)
    days_since_sunday = (d.weekday() + 1) % 7
    return _start_of_day(d - timedelta(days=days_since_sunday))


def resolve_date_keyword(keyword: Optional[str], now: Optional[datetime] = None) -> Optional[DateRange]:
    """
    Resolve a relative date keyword to an explicit range.

    Unknown or empty keywords resolve to None (no date filter).
    """
    if not keyword:
        return None
    now = now or datetime.now()
    year = now.year
    key = keyword.strip().lower()

    if key == "this_week":
        return DateRange(start=_start_of_week(now), end=now)
    if key == "last_week":
        end = _end_of_day(_start_of_week(now) - timedelta(days=1))
        return DateRange(start=_start_of_day(end - timedelta(days=6)), end=end)
    if key == "this_month":
        return DateRange(start=datetime(year, now.month, 1), end=now)
    if key == "last_month":
        prev_year, prev_month = (year - 1, 12) if now.month == 1 else (year, now.month - 1)
        last_day = calendar.monthrange(prev_year, prev_month)[1]
        return DateRange(
            start=datetime(prev_year, prev_month, 1),
            end=datetime(prev_year, prev_month, last_day, 23, 59, 59),
        )
    if key == "this_quarter":
        quarter_month = ((now.month - 1) // 3) * 3 + 1
        return DateRange(start=datetime(year, quarter_month, 1), end=now)
    if key in ("indian_fy", "fiscal_year", "this_fy"):
        fy_start_year = year - 1 if now.month < 4 else year
        return DateRange(
            start=datetime(fy_start_year, 4, 1),
            end=datetime(fy_start_year + 1, 3, 31, 23, 59, 59),
        )

    logger.debug("Unknown date keyword %r; no date filter applied", keyword)
    return None


@dataclass
class Shape:
    """In-memory post-processing applied after flattening."""
    category: Optional[str] = None
    merchants: Optional[List[str]] = None
    payment_mode: Optional[str] = None
    min_amount: Optional[float] = None
    date_range: Optional[Tuple[str, str]] = None
    sort_by_amount: Optional[str] = None  # "asc" | "desc"
    limit: Optional[int] = None


def build_query(
    user_id: str,
    descriptor: QueryDescriptor,
    now: Optional[datetime] = None,
) -> Tuple[List[FieldFilter], Shape]:
    filters = [FieldFilter("userId", "==", user_id)]
    shape = Shape()
    f = descriptor.filters

    date_range = f.date_range or resolve_date_keyword(f.date_keyword, now)
    if date_range is not None:
        # Receipts store dates as YYYY-MM-DD strings
        start, end = date_range.start.date().isoformat(), date_range.end.date().isoformat()
        filters.append(FieldFilter("date", ">=", start))
        filters.append(FieldFilter("date", "<=", end))
        shape.date_range = (start, end)

    if f.category:
        shape.category = f.category
    if f.merchants:
        shape.merchants = [m.lower() for m in f.merchants]
    if f.payment_mode:
        shape.payment_mode = f.payment_mode
    if f.min_amount:
        shape.min_amount = f.min_amount

    if descriptor.intent == QueryIntent.MOST_EXPENSIVE:
        shape.sort_by_amount = "desc"
        shape.limit = 1
    elif descriptor.intent == QueryIntent.CHEAPEST:
        shape.sort_by_amount = "asc"
        shape.limit = 1

    return filters, shape


def flatten_document(doc: Document) -> List[ShapedRow]:
    data = doc.data
    rows = []
    for item in data.get("items") or []:
        price = item.get("price") or 0
        quantity = item.get("quantity") or 1
        rows.append(
            ShapedRow(
                name=item.get("name") or "",
                price=price,
                quantity=quantity,
                total=price * quantity,
                category=data.get("category"),
                vendor=data.get("vendor"),
                receipt_id=data.get("receiptId") or doc.id,
                user_id=data.get("userId"),
                date=data.get("date"),
                created_at=str(data["createdAt"]) if data.get("createdAt") else None,
                amount=data.get("amount") or 0,
                payment_mode=data.get("paymentMode"),
            )
        )
    return rows


def _keep(row: ShapedRow, shape: Shape, filter_dates: bool) -> bool:
    if shape.category and row.category != shape.category:
        return False
    if shape.merchants and (row.vendor or "").lower() not in shape.merchants:
        return False
    if shape.min_amount and row.price < shape.min_amount:
        return False
    if shape.payment_mode and row.payment_mode != shape.payment_mode:
        return False
    if filter_dates and shape.date_range:
        start, end = shape.date_range
        if not row.date or not (start <= row.date <= end):
            return False
    return True


def shape_documents(
    docs: Sequence[Document],
    shape: Shape,
    filter_dates: bool = False,
) -> List[ShapedRow]:
    """
    Flatten every line item into its own row, then apply deferred filters,
    sorting and limit. Embeddings are never copied into rows.
    """
    rows = [row for doc in docs for row in flatten_document(doc)]
    logger.info("Shaped %d individual items from %d receipts", len(rows), len(docs))

    rows = [r for r in rows if _keep(r, shape, filter_dates)]

    if shape.sort_by_amount:
        rows.sort(key=lambda r: r.amount, reverse=shape.sort_by_amount == "desc")
    if shape.limit:
        rows = rows[: shape.limit]
    return rows


class QueryExecutor:
    """Runs a QueryDescriptor against the receipts collection"""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def fetch_documents(self, user_id: str, filters: List[FieldFilter]) -> Tuple[List[Document], bool]:
        """
        Returns (documents, store_filtered_dates).

        A filter-combination error is retried once with only the owner filter.
        """
        try:
            docs = await self.store.query(RECEIPTS_COLLECTION, filters)
            logger.info("Found %d receipts for user", len(docs))
            return docs, True
        except FilterCombinationError as e:
            logger.warning("Receipts query with filters failed (%s). Trying owner-only query...", e)
        except Exception as e:
            raise PersistenceError("Receipts query failed", cause=e) from e

        try:
            docs = await self.store.query(
                RECEIPTS_COLLECTION, [FieldFilter("userId", "==", user_id)]
            )
        except Exception as e:
            raise PersistenceError("Owner-only receipts query failed", cause=e) from e
        logger.info("Owner-only query found %d receipts", len(docs))
        return docs, False

    async def execute(
        self,
        user_id: str,
        descriptor: QueryDescriptor,
        now: Optional[datetime] = None,
    ) -> List[ShapedRow]:
        filters, shape = build_query(user_id, descriptor, now)
        docs, dates_applied = await self.fetch_documents(user_id, filters)
        return shape_documents(docs, shape, filter_dates=not dates_applied)
