"""
Conversational Responder

Free-form replies for small talk. The prompt fixes the output format the
client renders; the model's text is returned as-is.
"""

from ..schema.labels import NO_HISTORY
from .llm_client import TextGenerator

CONVO_PROMPT = """You are a helpful assistant focused on conversations not involving receipts or database updates. Respond naturally to greetings, common questions, or chit-chat.

---
Contextual chat begins:
{history}

User: {utterance}

Output Rules: (to be directly rendered to html)
- Use clear, user-friendly language.
- Use "\\n" for newlines instead of actual line breaks (so developers can split lines in React).
- Use **bold**, _italics_, and bullet points or numbered lists where appropriate.
- Avoid HTML unless explicitly asked.
- Do not wrap responses in code blocks like triple backticks.
- Avoid emojis unless asked.
- Keep answers concise, unless the user asks for detailed explanations.
"""


class ConversationalResponder:
    def __init__(self, llm: TextGenerator) -> None:
        self.llm = llm

    async def respond(self, history: str, utterance: str) -> str:
        prompt = CONVO_PROMPT.format(history=history or NO_HISTORY, utterance=utterance)
        return await self.llm.generate([prompt])
