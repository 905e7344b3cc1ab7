"""
LLM Client Wrappers (Gemini + LangChain)

Text generation goes through `ChatGoogleGenerativeAI`, embeddings through
`GoogleGenerativeAIEmbeddings`. Both accept an already-built LangChain model
instead, which is how tests and alternative providers plug in.
"""

import logging
from typing import List, Optional, Protocol, Sequence

import numpy as np
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings

from ..config import Settings
from ..errors import ClassificationError, EmbeddingError
from ..schema.labels import EmbeddingTask

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, prompt_parts: Sequence[str]) -> str: ...


class Embedder(Protocol):
    async def embed(
        self,
        texts: Sequence[str],
        task_type: EmbeddingTask,
        normalize: bool = False,
    ) -> List[List[float]]: ...


class Transcriber(Protocol):
    """Speech-to-text collaborator used at the request boundary."""

    async def transcribe(self, audio: bytes, language_hint: str = "en-US") -> str: ...


def _require_api_key(settings: Settings) -> str:
    if not settings.google_api_key:
        raise ValueError("GOOGLE_API_KEY or GEMINI_API_KEY not found in environment")
    return settings.google_api_key


class LLMClient:
    """Unified text-generation interface (Gemini by default)."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm: Optional[BaseChatModel] = None,
    ) -> None:
        """
        Args:
            settings: Model name and API key. Ignored when `llm` is given.
            llm: Pre-built LangChain chat model to use instead of Gemini.
        """
        if llm is not None:
            self._llm = llm
            self.model = getattr(llm, "model", None) or type(llm).__name__
            return

        settings = settings or Settings()
        self.model = settings.model
        # Temperature fixed at 0 for stable labels / JSON
        self._llm = ChatGoogleGenerativeAI(
            model=self.model,
            temperature=0,
            google_api_key=_require_api_key(settings),
        )

    async def generate(self, prompt_parts: Sequence[str]) -> str:
        """
        Generate one textual completion from prompt parts.

        Parts are joined into a single user message, mirroring how Gemini
        treats a list of text parts.
        """
        prompt = "\n\n".join(p for p in prompt_parts if p)
        try:
            resp = await self._llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as e:
            logger.error("Text generation failed (%s): %s", self.model, e)
            raise ClassificationError("Text generation service failed", cause=e) from e

        content = resp.content if hasattr(resp, "content") else resp
        if isinstance(content, list):
            # Gemini may return content blocks
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        return str(content)


class EmbeddingClient:
    """Embedding interface with one LangChain model per task type."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        embeddings: Optional[Embeddings] = None,
        query_embeddings: Optional[Embeddings] = None,
        dimensions: Optional[int] = None,
    ) -> None:
        """
        Args:
            settings: Embedding model name, vector size and API key. Ignored when models are given.
            embeddings: Model used for documents (and queries if no query model).
            query_embeddings: Optional separate model for RETRIEVAL_QUERY.
            dimensions: Expected vector size for injected models; unchecked when None.
        """
        self.dimensions = dimensions
        if embeddings is not None:
            self._by_task = {
                EmbeddingTask.DOCUMENT: embeddings,
                EmbeddingTask.QUERY: query_embeddings or embeddings,
            }
            return

        settings = settings or Settings()
        api_key = _require_api_key(settings)
        self.dimensions = settings.embedding_dimensions
        self._by_task = {
            task: GoogleGenerativeAIEmbeddings(
                model=settings.embedding_model,
                google_api_key=api_key,
                task_type=task.value,
            )
            for task in EmbeddingTask
        }

    async def embed(
        self,
        texts: Sequence[str],
        task_type: EmbeddingTask,
        normalize: bool = False,
    ) -> List[List[float]]:
        """One vector per input text, in order."""
        if not texts:
            return []
        model = self._by_task[EmbeddingTask(task_type)]
        try:
            if len(texts) == 1 and task_type == EmbeddingTask.QUERY:
                vectors = [await model.aembed_query(texts[0])]
            else:
                vectors = await model.aembed_documents(list(texts))
        except Exception as e:
            logger.error("Embedding request failed: %s", e)
            raise EmbeddingError("Embedding service failed", cause=e) from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        # Stored item vectors and query vectors must share one size
        if self.dimensions is not None:
            sizes = {len(v) for v in vectors}
            if sizes != {self.dimensions}:
                raise EmbeddingError(
                    f"Embedding service returned vectors of size {sorted(sizes)}, expected {self.dimensions}"
                )
        if normalize:
            vectors = [normalize_vector(v) for v in vectors]
        return [list(map(float, v)) for v in vectors]


def normalize_vector(vector: Sequence[float]) -> List[float]:
    arr = np.asarray(vector, dtype=float)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return arr.tolist()
    return (arr / norm).tolist()
