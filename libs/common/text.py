"""Text helpers shared by retrieval, memory and prompt assembly."""

import re

TURKISH_DIACRITICS = str.maketrans({
    "ç": "c", "ğ": "g", "ı": "i", "ö": "o", "ş": "s", "ü": "u",
    "Ç": "c", "Ğ": "g", "İ": "i", "Ö": "o", "Ş": "s", "Ü": "u",
})

CHARS_PER_TOKEN = 4

_WHITESPACE = re.compile(r"\s+")
_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")


def normalize_for_matching(text: str) -> str:
    """Fold Turkish diacritics and case, collapse whitespace.

    Diacritics are mapped before lowercasing so that dotted capital I
    does not leave a combining mark behind.
    """
    if not text or not isinstance(text, str):
        return ""
    folded = text.translate(TURKISH_DIACRITICS).lower()
    return _WHITESPACE.sub(" ", folded).strip()


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence from a model reply."""
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return -(-len(text) // CHARS_PER_TOKEN)


def trim_to_token_budget(text: str, max_tokens: int) -> str:
    """Hard-truncate text to roughly ``max_tokens`` tokens (4 chars per token)."""
    if not text:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text
    return text[: max_tokens * CHARS_PER_TOKEN]
