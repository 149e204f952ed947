"""
Keyword-overlap similarity between a query ticket and past tickets.

Scoring is pure; ``SimilarTicketFinder`` wraps it with the Jira search
that produces the candidate set.
"""

import logging
from typing import Optional, Sequence

from .keywords import build_text_query, extract_keywords
from .models import SimilarTicketCandidate, Ticket, adf_to_text


logger = logging.getLogger(__name__)


SIMILARITY_SCORE_MULTIPLIER = 100
DEFAULT_TOP_N = 3
DESCRIPTION_TRUNCATE_LENGTH = 200

SEARCH_FIELDS = [
    "summary",
    "description",
    "resolution",
    "resolutiondate",
    "created",
    "assignee",
    "status",
]


def score_similarity(keywords: Sequence[str], summary: str, description: str) -> int:
    """
    Score a candidate by the share of keywords it contains.

    A keyword counts once when it appears (case-insensitive substring) in
    either the summary or the description.

    Returns:
        round(matches / len(keywords) * 100), or 0 when there are no keywords.
    """
    if not keywords:
        return 0

    summary_lower = (summary or "").lower()
    description_lower = (description or "").lower()

    matches = 0
    for keyword in keywords:
        term = keyword.lower()
        if term in summary_lower or term in description_lower:
            matches += 1

    return round(matches / len(keywords) * SIMILARITY_SCORE_MULTIPLIER)


def candidate_from_issue(
    issue: dict,
    keywords: Sequence[str],
    truncate: int = DESCRIPTION_TRUNCATE_LENGTH,
) -> SimilarTicketCandidate:
    """Build a scored candidate from a raw Jira search hit."""
    fields = issue.get("fields") or {}
    summary = fields.get("summary") or ""
    description = adf_to_text(fields.get("description"))
    resolution = fields.get("resolution") or {}
    assignee = fields.get("assignee") or {}
    status = fields.get("status") or {}

    return SimilarTicketCandidate(
        key=issue.get("key", ""),
        summary=summary,
        description_excerpt=description[:truncate],
        resolution=resolution.get("name") or "Resolved",
        resolution_date=fields.get("resolutiondate") or fields.get("created") or "",
        assignee=assignee.get("displayName") or "Unknown",
        status=status.get("name") or "Done",
        similarity_score=score_similarity(keywords, summary, description),
    )


def rank_candidates(
    candidates: Sequence[SimilarTicketCandidate],
    limit: int = DEFAULT_TOP_N,
) -> list[SimilarTicketCandidate]:
    """
    Sort by score descending and keep the top ``limit``.

    ``sorted`` is stable, so equal scores keep the search result order.
    """
    ranked = sorted(candidates, key=lambda c: c.similarity_score, reverse=True)
    return ranked[:limit]


class SimilarTicketFinder:
    """
    Finds resolved tickets in the same project that share summary keywords.

    Uses the Jira text search to narrow candidates, then ranks them with
    ``score_similarity``.
    """

    def __init__(
        self,
        client,
        min_keyword_length: int = 3,
        max_keywords: int = 5,
        search_limit: int = 10,
        top_n: int = DEFAULT_TOP_N,
        truncate: int = DESCRIPTION_TRUNCATE_LENGTH,
    ):
        """
        Initialize the finder.

        Args:
            client: JiraClient (or anything with ``search_issues``).
            min_keyword_length: Tokens must be strictly longer than this.
            max_keywords: Maximum keywords taken from the summary.
            search_limit: Maximum search hits to score.
            top_n: Number of candidates to keep.
            truncate: Description excerpt length.
        """
        self._client = client
        self._min_keyword_length = min_keyword_length
        self._max_keywords = max_keywords
        self._search_limit = search_limit
        self._top_n = top_n
        self._truncate = truncate

    def keywords_for(self, ticket: Ticket) -> list[str]:
        return extract_keywords(ticket.summary, self._min_keyword_length, self._max_keywords)

    def build_jql(self, project_key: str, keywords: Sequence[str]) -> str:
        return (
            f'project = {project_key} AND statusCategory = Done '
            f'AND text ~ "{build_text_query(list(keywords))}" '
            f'ORDER BY resolutiondate DESC'
        )

    def find(
        self,
        ticket: Ticket,
        keywords: Optional[Sequence[str]] = None,
    ) -> list[SimilarTicketCandidate]:
        """
        Find the most similar resolved tickets.

        Args:
            ticket: The query ticket. Its project key scopes the search.
            keywords: Precomputed keywords; derived from the summary if omitted.

        Returns:
            Up to ``top_n`` candidates, best first. Empty without issuing a
            search when the summary yields no keywords.
        """
        if keywords is None:
            keywords = self.keywords_for(ticket)

        if not keywords:
            logger.info(f"No usable keywords in summary of {ticket.key}, skipping similarity search")
            return []

        jql = self.build_jql(ticket.project_key, keywords)
        logger.debug(f"Similarity search JQL: {jql}")

        issues = self._client.search_issues(
            jql,
            max_results=self._search_limit,
            fields=SEARCH_FIELDS,
        )

        candidates = [
            candidate_from_issue(issue, keywords, self._truncate)
            for issue in issues
            if issue.get("key") != ticket.key
        ]
        ranked = rank_candidates(candidates, self._top_n)

        logger.info(
            f"Similarity search for {ticket.key}: {len(issues)} hits, "
            f"{len(ranked)} kept"
        )
        return ranked
