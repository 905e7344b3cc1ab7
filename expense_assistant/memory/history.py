"""
History Log

Append-only turn sequence inside a session, plus the rendering used as
classifier context. Pure data handling; no external calls.
"""

from typing import List

import tiktoken

from ..schema.core_schema import Session, Turn
from ..schema.labels import NO_HISTORY, Speaker


class HistoryRenderer:
    """Renders recent turns as `User: …` / `Bot: …` lines within a token budget"""

    def __init__(self, token_budget: int = 1000, use_tokenizer: bool = True) -> None:
        self.token_budget = token_budget
        self.use_tokenizer = use_tokenizer
        self._tokenizer = None
        if self.use_tokenizer:
            try:
                self._tokenizer = tiktoken.get_encoding("cl100k_base")
            except Exception:
                # Offline / missing BPE files
                self.use_tokenizer = False

    def count_tokens(self, text: str) -> int:
        if self._tokenizer is not None:
            return len(self._tokenizer.encode(text))
        # Fallback: approximate 1 token = 4 characters
        return len(text) // 4

    def render(self, turns: List[Turn], n: int) -> str:
        """
        Render the last n turns, oldest first.

        Lines are dropped from the oldest end until the text fits the token
        budget; the newest line is always kept.
        """
        if not turns or n <= 0:
            return NO_HISTORY

        lines = [format_turn(t) for t in turns[-n:]]
        while len(lines) > 1 and self.count_tokens("\n".join(lines)) > self.token_budget:
            lines.pop(0)
        return "\n".join(lines)


def format_turn(turn: Turn) -> str:
    label = "User" if turn.speaker == Speaker.USER else "Bot"
    return f"{label}: {turn.text}"


def append_turn(session: Session, speaker: Speaker, text: str) -> Turn:
    """Append a new immutable turn and return it."""
    turn = Turn(speaker=Speaker(speaker), text=text)
    session.history.append(turn)
    session.last_active_at = turn.timestamp
    return turn
