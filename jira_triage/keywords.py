"""
Keyword extraction for similar-ticket search.

Keywords are taken from the ticket summary in their original order, with
no frequency ranking, and escaped for embedding in a JQL string literal.
"""

from typing import Optional


DEFAULT_MIN_KEYWORD_LENGTH = 3
DEFAULT_MAX_KEYWORDS = 5


def escape_jql_text(text: str) -> str:
    """
    Escape backslashes and double quotes for a JQL string literal.

    Backslashes go first so the escapes added for quotes are not doubled.
    """
    return text.replace("\\", "\\\\").replace('"', '\\"')


def extract_keywords(
    text: Optional[str],
    min_len: int = DEFAULT_MIN_KEYWORD_LENGTH,
    max_count: int = DEFAULT_MAX_KEYWORDS,
) -> list[str]:
    """
    Derive a bounded, escaped keyword list from free text.

    Args:
        text: Source text, usually an issue summary.
        min_len: Tokens must be strictly longer than this.
        max_count: Maximum number of keywords to return.

    Returns:
        Up to ``max_count`` escaped tokens in original order and case.
        Empty when no token qualifies.
    """
    if not text or max_count <= 0:
        return []

    keywords = [token for token in text.split() if len(token) > min_len]
    return [escape_jql_text(token) for token in keywords[:max_count]]


def build_text_query(keywords: list[str]) -> str:
    """Join keywords into the body of a JQL ``text ~ "..."`` clause."""
    return " ".join(keywords)
