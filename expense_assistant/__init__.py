"""
Conversational expense assistant.

This package exposes a clean public API while the actual implementation
is organized into subpackages:

- expense_assistant.schema:   Pydantic models and closed label enums
- expense_assistant.memory:   Session store & history log
- expense_assistant.chatbot:  LLM clients, intent routing, add flow, retrieval, orchestrator
- expense_assistant.storage:  Document store contract + in-memory implementation
"""

# Core schemas
from .schema.core_schema import (
    CommittedExpense,
    ExpenseDraft,
    QueryDescriptor,
    Session,
    ShapedRow,
    Turn,
    TurnRequest,
    TurnResponse,
    SessionEndResponse,
    ErrorResponse,
)
from .schema.labels import AddFlowState, Intent, QueryIntent

# Configuration & errors
from .config import Settings, load_settings
from .errors import AssistantError, ErrorKind

# Core classes
from .chatbot.llm_client import LLMClient, EmbeddingClient
from .memory.session_store import SessionStore
from .storage.document_store import InMemoryDocumentStore
from .chatbot.chat_assistant import ChatAssistant

__all__ = [
    "CommittedExpense",
    "ExpenseDraft",
    "QueryDescriptor",
    "Session",
    "ShapedRow",
    "Turn",
    "TurnRequest",
    "TurnResponse",
    "SessionEndResponse",
    "ErrorResponse",
    "AddFlowState",
    "Intent",
    "QueryIntent",
    "Settings",
    "load_settings",
    "AssistantError",
    "ErrorKind",
    "LLMClient",
    "EmbeddingClient",
    "SessionStore",
    "InMemoryDocumentStore",
    "ChatAssistant",
]
