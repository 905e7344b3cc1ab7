"""
Main Chat Assistant Orchestrator.

Pipeline (one request per turn):
- Transcribe audio (external) or take the typed text
- Load / create the session and append the user's turn
- Classify intent from the utterance + recent history
- add   → AddFlowHandler (draft → confirm → commit)
- fetch → RetrievalSelector (semantic first, structured fallback)
- convo → ConversationalResponder
- Append the bot's turn and return the reply with the session id

Errors never cross the boundary as bare exceptions; they come back as an
ErrorResponse carrying the error kind.
"""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.table import Table

from ..config import Settings, load_settings
from ..errors import AssistantError, ErrorKind, SessionNotFoundError, TranscriptionError
from ..memory.session_store import SessionStore
from ..schema.core_schema import (
    BoundaryResponse,
    ErrorResponse,
    Session,
    SessionEndResponse,
    TurnRequest,
    TurnResponse,
)
from ..schema.labels import Intent, Speaker
from ..storage.document_store import DocumentStore, InMemoryDocumentStore
from ..utils.conversation_logger import read_log
from .add_flow import AddFlowHandler, ExpenseRepository
from .conversation import ConversationalResponder
from .intent_classifier import IntentClassifier
from .llm_client import Embedder, EmbeddingClient, LLMClient, TextGenerator, Transcriber
from .query_classifier import QueryClassifier
from .query_executor import QueryExecutor
from .retrieval import RetrievalSelector, SemanticRetriever
from .summarizer import Summarizer

logger = logging.getLogger(__name__)
console = Console()


class ChatAssistant:
    """Expense assistant with session memory, intent routing and retrieval."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm: Optional[TextGenerator] = None,
        embedder: Optional[Embedder] = None,
        document_store: Optional[DocumentStore] = None,
        transcriber: Optional[Transcriber] = None,
        enable_semantic: bool = True,
        use_tokenizer: bool = True,
    ) -> None:
        """
        Initialize the assistant and its components.

        Args:
            settings: Runtime settings (defaults to the environment).
            llm: Text generator; defaults to Gemini via LangChain.
            embedder: Embedding service; defaults to Gemini embeddings.
            document_store: Receipts / chats storage; defaults to an in-memory store.
            transcriber: Optional speech-to-text service for audio requests.
            enable_semantic: Try embedding search before the structured query path.
            use_tokenizer: Whether to use tiktoken when budgeting history context.
        """
        self.settings = settings or load_settings()
        self.llm = llm or LLMClient(self.settings)
        self.embedder = embedder or EmbeddingClient(self.settings)
        self.document_store = document_store or InMemoryDocumentStore(
            self.settings.storage_path, composite_indexes=[("userId", "date")]
        )
        self.transcriber = transcriber

        self.sessions = SessionStore(
            self.document_store,
            history_window=self.settings.history_window,
            history_token_budget=self.settings.history_token_budget,
            use_tokenizer=use_tokenizer,
        ).open()

        self.intent_classifier = IntentClassifier(self.llm)
        self.repository = ExpenseRepository(self.document_store, self.embedder)
        self.add_flow = AddFlowHandler(self.llm, self.repository)
        self.summarizer = Summarizer(self.llm)
        self.responder = ConversationalResponder(self.llm)

        semantic = None
        if enable_semantic:
            semantic = SemanticRetriever(
                self.document_store,
                self.embedder,
                self.summarizer,
                max_distance=self.settings.semantic_max_distance,
                top_k=self.settings.semantic_top_k,
            )
        self.retrieval = RetrievalSelector(
            QueryClassifier(self.llm),
            QueryExecutor(self.document_store),
            self.summarizer,
            semantic=semantic,
        )
        logger.info("Chat assistant initialized (semantic retrieval: %s)", enable_semantic)

    # ---------------------------------------------------------------------
    # Main entrypoint
    # ---------------------------------------------------------------------
    async def handle(self, request: TurnRequest) -> BoundaryResponse:
        """Process one request: a normal turn or a session end."""
        if request.is_session_end:
            return await self.end_session(request.session_id, request.user_id)

        try:
            text = await self._transcribe(request)
            session_id = request.session_id
            if not session_id:
                session = await self.sessions.get_or_create(None, request.user_id, text)
                session_id = session.session_id
            # Turns for the same session are queued, never interleaved
            async with self.sessions.lock(session_id):
                return await self._run_turn(session_id, request.user_id, text)
        except AssistantError as e:
            logger.warning("Turn failed [%s]: %s", e.kind.value, e)
            return ErrorResponse(kind=e.kind.value, message=str(e), session_id=request.session_id)
        except Exception as e:
            logger.exception("Unexpected error while processing turn")
            return ErrorResponse(
                kind=ErrorKind.INTERNAL.value,
                message=f"Failed to process user query: {e}",
                session_id=request.session_id,
            )

    async def process_text(
        self, user_id: str, text: str, session_id: Optional[str] = None
    ) -> BoundaryResponse:
        return await self.handle(
            TurnRequest(utterance_text=text, user_id=user_id, session_id=session_id)
        )

    async def end_session(
        self, session_id: Optional[str], user_id: Optional[str] = None
    ) -> SessionEndResponse:
        """Persist the session durably, then evict it; failures keep it cached."""
        if not session_id:
            return SessionEndResponse(success=False, message="No session id supplied")
        async with self.sessions.lock(session_id):
            try:
                await self.sessions.end(session_id, user_id)
            except AssistantError as e:
                return SessionEndResponse(success=False, message=str(e))
        return SessionEndResponse(success=True)

    async def shutdown(self) -> None:
        await self.sessions.shutdown()

    # ---------------------------------------------------------------------
    # Turn pipeline
    # ---------------------------------------------------------------------
    async def _transcribe(self, request: TurnRequest) -> str:
        if request.audio_content:
            if self.transcriber is None:
                raise TranscriptionError("No transcription service configured for audio input")
            try:
                text = await self.transcriber.transcribe(request.audio_content, request.language_hint)
            except AssistantError:
                raise
            except Exception as e:
                raise TranscriptionError("Speech recognition failed", cause=e) from e
            text = (text or "").strip()
            if not text:
                raise TranscriptionError("No speech detected in audio")
            return text

        if request.utterance_text is not None:
            text = request.utterance_text.strip()
            if not text:
                raise TranscriptionError("Empty text provided")
            return text

        raise TranscriptionError("Neither audio nor text supplied")

    async def _run_turn(self, session_id: str, user_id: str, text: str) -> TurnResponse:
        session = await self.sessions.get_or_create(session_id, user_id, text)
        await self.sessions.append(session.session_id, Speaker.USER, text)

        history = self.sessions.recent_history(session)
        intent = await self.intent_classifier.classify(text, history)
        logger.info("Detected intent for session %s: %s", session.session_id, intent.value)

        if intent == Intent.ADD:
            reply = await self.add_flow.handle(session, text, history)
        elif intent == Intent.FETCH:
            result = await self.retrieval.retrieve(text, session.user_id)
            logger.info("Fetch answered from %s path (%d rows)", result.source, result.total_items)
            reply = result.summary
        else:
            reply = await self.responder.respond(history, text)

        await self.sessions.append(session.session_id, Speaker.BOT, reply)
        return TurnResponse(response_text=reply, session_id=session.session_id)

    # ---------------------------------------------------------------------
    # Loading logs
    # ---------------------------------------------------------------------
    async def load_conversation_log(self, log_path: str, user_id: str) -> str:
        """
        Seed a new session from a JSONL conversation log.

        Each line holds {"role": "user"|"assistant"|"bot", "content": ...};
        invalid lines are skipped. Returns the new session id.
        """
        turns = read_log(log_path)
        seed = next((text for speaker, text in turns if speaker == Speaker.USER), "")
        session = await self.sessions.get_or_create(None, user_id, seed)
        for speaker, text in turns:
            await self.sessions.append(session.session_id, speaker, text)
        logger.info("Loaded %d messages from %s into session %s", len(turns), log_path, session.session_id)
        return session.session_id

    # ---------------------------------------------------------------------
    # Display helpers (CLI)
    # ---------------------------------------------------------------------
    def display_session(self, session_id: str) -> None:
        """Show the session's add-flow state and recent turns."""
        try:
            session: Session = self.sessions.get(session_id)
        except SessionNotFoundError:
            console.print(f"[yellow]Session {session_id} is not active.[/yellow]")
            return

        console.print(f"\n[bold cyan]Session {session.display_name}[/bold cyan] ({session.session_id})")
        table = Table(show_header=False, box=None)
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Add flow", session.add_flow.value)
        if session.pending_draft:
            table.add_row(
                "Pending draft",
                f"{session.pending_draft.vendor} ₹{session.pending_draft.amount} "
                f"({len(session.pending_draft.items)} items)",
            )
        if session.last_committed_id:
            table.add_row("Last saved", session.last_committed_id)
        table.add_row("Turns", str(len(session.history)))
        console.print(table)

        for turn in session.history[-5:]:
            style = "green" if turn.speaker == Speaker.USER else "blue"
            console.print(f"  [{style}]{turn.speaker.value}[/{style}]: {turn.text[:200]}")
