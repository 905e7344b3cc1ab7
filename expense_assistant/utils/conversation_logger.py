"""
JSONL conversation log.

One object per line: {"role", "content", "timestamp", "session_id", "metadata"?}.
Replies are written with role "assistant"; "bot" is accepted when reading so
exported chats load as well.
"""

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..schema.labels import Speaker

logger = logging.getLogger(__name__)

ROLE_BY_SPEAKER = {Speaker.USER: "user", Speaker.BOT: "assistant"}


def speaker_for_role(role: Any) -> Speaker:
    return Speaker.USER if str(role or "user").strip().lower() == "user" else Speaker.BOT


class ConversationLogger:
    """Appends each session turn to a JSONL file as it happens."""

    def __init__(self, log_path: str):
        self.log_path = log_path
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    def log_turn(
        self,
        speaker: Speaker,
        text: str,
        session_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "role": ROLE_BY_SPEAKER[Speaker(speaker)],
            "content": text,
            "timestamp": datetime.now().isoformat(),
            "session_id": session_id,
        }
        if metadata:
            entry["metadata"] = metadata
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def log_exchange(self, user_text: str, bot_text: str, session_id: str) -> None:
        """Log one user utterance and the reply it got."""
        self.log_turn(Speaker.USER, user_text, session_id)
        self.log_turn(Speaker.BOT, bot_text, session_id)


def read_log(log_path: str) -> List[Tuple[Speaker, str]]:
    """(speaker, text) pairs in file order; blank and invalid lines are skipped."""
    turns: List[Tuple[Speaker, str]] = []
    with open(log_path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipped invalid JSONL entry on line %d of %s", line_no, log_path)
                continue
            if not isinstance(entry, dict) or not entry.get("content"):
                continue
            turns.append((speaker_for_role(entry.get("role")), str(entry["content"])))
    return turns
