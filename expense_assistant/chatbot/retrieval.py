"""
Retrieval for fetch-intent turns.

SemanticRetriever embeds the question and compares it with the user's stored
item vectors. RetrievalSelector tries that first and, when it fails for any
reason, falls back to QueryClassifier → QueryExecutor → Summarizer.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np

from ..schema.core_schema import QueryDescriptor, RetrievalResult, ShapedRow
from ..schema.labels import EmbeddingTask, QueryIntent
from ..storage.document_store import Document, DocumentStore, FieldFilter
from .add_flow import EMBEDDINGS_SUBCOLLECTION
from .llm_client import Embedder
from .query_classifier import QueryClassifier
from .query_executor import QueryExecutor
from .summarizer import Summarizer

logger = logging.getLogger(__name__)


def cosine_distances(query: List[float], matrix: np.ndarray) -> np.ndarray:
    q = np.asarray(query, dtype=float)
    q_norm = np.linalg.norm(q)
    m_norm = np.linalg.norm(matrix, axis=1)
    denom = np.where(m_norm * q_norm == 0, 1.0, m_norm * q_norm)
    return 1.0 - (matrix @ q) / denom


def _row_from_vector_doc(doc: Document) -> ShapedRow:
    data = doc.data
    price = data.get("price") or 0
    quantity = data.get("quantity") or 1
    return ShapedRow(
        name=data.get("name") or "",
        price=price,
        quantity=quantity,
        total=price * quantity,
        category=data.get("category_name"),
        vendor=data.get("vendor"),
        receipt_id=data.get("receipt_id"),
        user_id=data.get("user_id"),
        date=data.get("purchase_date"),
        created_at=data.get("created_at"),
        amount=price * quantity,
    )


class SemanticRetriever:
    """Nearest item vectors for a question, within a cosine-distance cutoff"""

    def __init__(
        self,
        store: DocumentStore,
        embedder: Embedder,
        summarizer: Summarizer,
        max_distance: float = 0.45,
        top_k: int = 10,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.summarizer = summarizer
        self.max_distance = max_distance
        self.top_k = top_k

    async def search(self, utterance: str, user_id: str) -> List[Tuple[float, ShapedRow]]:
        docs = await self.store.collection_group(
            EMBEDDINGS_SUBCOLLECTION, [FieldFilter("user_id", "==", user_id)]
        )
        docs = [d for d in docs if d.data.get("embedding")]
        if not docs:
            return []

        query_vector = (
            await self.embedder.embed([utterance], EmbeddingTask.QUERY, normalize=True)
        )[0]
        matrix = np.asarray([d.data["embedding"] for d in docs], dtype=float)
        if matrix.shape[1] != len(query_vector):
            raise ValueError(
                f"Query vector has {len(query_vector)} dimensions, stored vectors have {matrix.shape[1]}"
            )

        distances = cosine_distances(query_vector, matrix)
        order = np.argsort(distances)[: self.top_k]
        return [
            (float(distances[i]), _row_from_vector_doc(docs[i]))
            for i in order
            if distances[i] <= self.max_distance
        ]

    async def retrieve(self, utterance: str, user_id: str) -> RetrievalResult:
        hits = await self.search(utterance, user_id)
        if not hits:
            return RetrievalResult(
                success=False,
                summary="",
                source="semantic",
                error="No semantically similar items",
            )
        rows = [row for _, row in hits]
        logger.info("Semantic search matched %d items (best distance %.3f)", len(rows), hits[0][0])
        summary = await self.summarizer.summarize(utterance, rows, QueryDescriptor())
        return RetrievalResult(
            success=True,
            summary=summary,
            rows=rows,
            source="semantic",
            intent=QueryIntent.UNKNOWN,
            total_items=len(rows),
        )


class RetrievalSelector:
    """Semantic path first, structured path on any semantic failure"""

    def __init__(
        self,
        classifier: QueryClassifier,
        executor: QueryExecutor,
        summarizer: Summarizer,
        semantic: Optional[SemanticRetriever] = None,
    ) -> None:
        self.classifier = classifier
        self.executor = executor
        self.summarizer = summarizer
        self.semantic = semantic

    async def retrieve(self, utterance: str, user_id: str) -> RetrievalResult:
        if self.semantic is not None:
            try:
                result = await self.semantic.retrieve(utterance, user_id)
            except Exception as e:
                logger.warning("Semantic retrieval failed: %s", e)
                result = RetrievalResult(success=False, summary="", source="semantic", error=str(e))
            if result.success:
                return result
            logger.info("Semantic retrieval unsuccessful (%s), falling back to keyword query", result.error)

        return await self.keyword_query(utterance, user_id)

    async def keyword_query(self, utterance: str, user_id: str) -> RetrievalResult:
        """Structured path. Classification / store errors propagate with their kind."""
        descriptor = await self.classifier.classify(utterance)
        rows = await self.executor.execute(user_id, descriptor)
        summary = await self.summarizer.summarize(utterance, rows, descriptor)
        return RetrievalResult(
            success=True,
            summary=summary,
            rows=rows,
            source="keyword",
            intent=descriptor.intent,
            total_items=len(rows),
        )
