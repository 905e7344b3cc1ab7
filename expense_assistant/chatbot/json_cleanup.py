"""
Cleanup for JSON answers from the model.

Gemini often wraps JSON in ```json fences or adds a sentence after the
closing brace. These helpers never raise; parsing is left to the caller.
"""

import re

_FENCE_OPEN = re.compile(r"^\s*```(?:json)?[ \t]*\r?\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\r?\n?```[\s]*$")
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ``` / ```json fence, or pull out the first fenced block."""
    if not text:
        return ""
    stripped = text.strip()
    if not stripped.startswith("```"):
        block = _FENCED_BLOCK.search(stripped)
        if block:
            return block.group(1).strip()
        return stripped
    stripped = _FENCE_OPEN.sub("", stripped, count=1)
    stripped = _FENCE_CLOSE.sub("", stripped)
    return stripped.strip()


def truncate_after_last_brace(text: str) -> str:
    end = text.rfind("}")
    return text[: end + 1] if end != -1 else text


def clean_json_text(text: str) -> str:
    return truncate_after_last_brace(strip_code_fence(text))
