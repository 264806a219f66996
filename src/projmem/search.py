"""
Full-text search over decisions.

Queries are reduced to plain word terms before they reach the engine, so
user input can never carry engine query syntax. Matching is OR over the
terms with prefix matching; the engine ranks by relevance and ties fall
back to recency.
"""

import logging
import re
from typing import Any

from projmem.schema import Decision
from projmem.store.base import StorageBackend
from projmem.validation import TRUNCATION_MARKER, sanitize_text

logger = logging.getLogger(__name__)

MAX_QUERY_TERMS = 32
MAX_QUERY_LENGTH = 1000

# Letters and digits only; underscores and punctuation split terms the way
# both engines' tokenizers do
_TERM_RE = re.compile(r"[^\W_]+")


def extract_terms(query: Any) -> list[str]:
    """
    Split a raw query into lower-cased, de-duplicated search terms.

    Returns an empty list for empty, whitespace-only, or punctuation-only input.
    """
    text = sanitize_text(query, MAX_QUERY_LENGTH).removesuffix(TRUNCATION_MARKER).lower()
    terms: list[str] = []
    for term in _TERM_RE.findall(text):
        if term not in terms:
            terms.append(term)
        if len(terms) == MAX_QUERY_TERMS:
            break
    return terms


class DecisionSearch:
    """Ranked decision lookup backed by the storage profile's text index."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend

    def search(self, conn: Any, query: Any, limit: int = 20) -> list[Decision]:
        """
        Find decisions whose text or rationale matches any query term.

        Args:
            conn: Pooled connection
            query: Raw query text
            limit: Maximum number of results

        Returns:
            Decisions ordered by relevance desc, createdAt desc, id desc
        """
        terms = extract_terms(query)
        if not terms:
            return []

        matches = self.backend.search_decisions(conn, terms, limit)
        logger.debug("Search for %d term(s) matched %d decision(s)", len(terms), len(matches))
        return [decision for decision, _score in matches]

    def rebuild(self, conn: Any) -> None:
        """Rebuild the search index from the decisions table."""
        self.backend.rebuild_search_index(conn)
        logger.info("Rebuilt decision search index")
