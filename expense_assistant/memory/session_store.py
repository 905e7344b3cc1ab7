"""
Session Store

Keyed cache of live conversation sessions. Sessions live in memory while the
chat is active and are written to the document store (collection `chats`)
when the caller ends them. The store is constructed once and handed to every
component that needs it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from ..errors import PersistenceError, SessionNotFoundError
from ..schema.core_schema import Session
from ..schema.labels import Speaker
from ..storage.document_store import DocumentStore, new_id
from .history import HistoryRenderer, append_turn

logger = logging.getLogger(__name__)

CHATS_COLLECTION = "chats"
DISPLAY_NAME_MAX = 40


def make_display_name(seed_utterance: str) -> str:
    """Short chat title from the first utterance."""
    text = " ".join((seed_utterance or "").split())
    if not text:
        return "New chat"
    if len(text) <= DISPLAY_NAME_MAX:
        return text
    cut = text[:DISPLAY_NAME_MAX].rsplit(" ", 1)[0]
    return f"{cut}…"


class SessionStore:
    """Cache of active sessions with an explicit lifecycle (open → … → shutdown)"""

    def __init__(
        self,
        document_store: DocumentStore,
        history_window: int = 8,
        history_token_budget: int = 1000,
        use_tokenizer: bool = True,
    ) -> None:
        """
        Args:
            document_store: Durable storage used when a session ends.
            history_window: Default number of turns rendered as classifier context.
            history_token_budget: Max tokens of rendered history.
            use_tokenizer: Whether to use tiktoken for accurate token counting.
        """
        self.document_store = document_store
        self.history_window = history_window
        self.renderer = HistoryRenderer(token_budget=history_token_budget, use_tokenizer=use_tokenizer)

        self._sessions: Dict[str, Session] = {}
        self._turn_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> "SessionStore":
        self._open = True
        return self

    @property
    def is_open(self) -> bool:
        return self._open

    async def shutdown(self) -> None:
        """Flush every cached session to durable storage."""
        failed: List[str] = []
        for session_id in list(self._sessions):
            try:
                await self.end(session_id)
            except PersistenceError as e:
                logger.error("Could not flush session %s: %s", session_id, e)
                failed.append(session_id)
        self._open = False
        if failed:
            raise PersistenceError(f"Failed to persist sessions: {', '.join(failed)}")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def get_or_create(
        self,
        session_id: Optional[str],
        user_id: str,
        seed_utterance: str = "",
    ) -> Session:
        """
        Return the cached session, or allocate one.

        An id that is not cached is first looked up among ended chats so the
        conversation can resume; otherwise a new session is created under it.
        Ids owned by another user raise SessionNotFoundError.
        """
        async with self._lock:
            if session_id and session_id in self._sessions:
                session = self._sessions[session_id]
                if session.user_id != user_id:
                    logger.warning("User %s asked for session %s owned by another user", user_id, session_id)
                    raise SessionNotFoundError(session_id)
                session.last_active_at = datetime.now()
                return session

            session = None
            if session_id:
                record = await self.document_store.get(CHATS_COLLECTION, session_id)
                if record:
                    # Ended chats are only resumed by their owner, never reused
                    if record.get("userId") != user_id:
                        logger.warning("User %s asked for ended chat %s owned by another user", user_id, session_id)
                        raise SessionNotFoundError(session_id)
                    session = Session.from_record(record)
                    session.last_active_at = datetime.now()
                    logger.info("Resumed session %s from durable storage", session_id)

            if session is None:
                now = datetime.now()
                session = Session(
                    session_id=session_id or new_id(),
                    user_id=user_id,
                    display_name=make_display_name(seed_utterance),
                    started_at=now,
                    last_active_at=now,
                )
                logger.info("Created session %s for user %s", session.session_id, user_id)

            self._sessions[session.session_id] = session
            return session

    def get(self, session_id: str, user_id: Optional[str] = None) -> Session:
        """Cached session; with `user_id`, only if that user owns it."""
        session = self._sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFoundError(session_id)
        return session

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def append(self, session_id: str, speaker: Speaker, text: str) -> Session:
        """Append a turn; fails with NotFound if the session is no longer cached."""
        session = self.get(session_id)
        append_turn(session, speaker, text)
        return session

    def recent_history(self, session: Session, n: Optional[int] = None) -> str:
        """Last n turns as classifier context, or the "no history" sentinel."""
        return self.renderer.render(session.history, n or self.history_window)

    async def end(self, session_id: str, user_id: Optional[str] = None) -> Session:
        """
        Persist the full session, then evict it.

        The cache entry is kept when the durable write fails so the caller
        can retry. With `user_id`, only the owner may end the session.
        """
        session = self.get(session_id, user_id)
        try:
            await self.document_store.set(CHATS_COLLECTION, session_id, session.to_record())
        except Exception as e:
            logger.error("Saving chat %s failed: %s", session_id, e)
            raise PersistenceError(f"Could not save chat {session_id}", cause=e) from e

        async with self._lock:
            self._sessions.pop(session_id, None)
        logger.info("Chat %s saved and evicted from cache", session_id)
        return session

    # ------------------------------------------------------------------
    # Per-session serialisation
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Queue turns for the same session; other sessions are unaffected."""
        lock = self._turn_locks.setdefault(session_id, asyncio.Lock())
        # Holders and waiters; the lock is dropped only when nobody needs it
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                self._turn_locks.pop(session_id, None)
