"""
Intent Classifier

Maps (latest utterance, recent history) to add / fetch / convo with a single
text-generation call. Anything other than the three labels is treated as
small talk.
"""

import logging

from ..schema.labels import Intent
from .llm_client import TextGenerator

logger = logging.getLogger(__name__)

INTENT_PROMPT = """You are an intent classifier. Your job is to look at the latest message in a chat and classify it into one of three categories: "add", "fetch", or "convo".

- If the latest message is "yes" or "no", look at the context to decide. For example:
  + If the previous bot message was asking for confirmation to save an expense, return "add"
  + If it was casual conversation, return "convo"
- Return "add" if the message is trying to log or record something, like "I bought groceries", "Add this expense", or "I got fuel".
- Return "fetch" if the message is asking to view or retrieve information, like "Show me my receipts", "How much did I spend last month", or "Find grocery bills".
- Return "convo" if the message is just small talk or general conversation, like "hi", "hello", "thank you", "how are you", "good morning", "sorry", or similar.

Only return one word: "add", "fetch", or "convo".

Context:
{context}

Latest message:
"{text}"

Intent:"""


def parse_intent(raw: str) -> Intent:
    label = (raw or "").strip().lower().strip("\"'`.!* \n")
    try:
        return Intent(label)
    except ValueError:
        return Intent.CONVO


class IntentClassifier:
    """Single-call intent detection"""

    def __init__(self, llm: TextGenerator) -> None:
        self.llm = llm

    async def classify(self, utterance: str, recent_history_text: str) -> Intent:
        """Transport failures propagate as ClassificationError."""
        prompt = INTENT_PROMPT.format(context=recent_history_text, text=utterance)
        raw = await self.llm.generate([prompt])
        intent = parse_intent(raw)
        logger.debug("Intent for %r: %s (raw=%r)", utterance, intent.value, raw)
        return intent
