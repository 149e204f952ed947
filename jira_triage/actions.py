"""
Agent-facing triage actions.

Each action takes an untyped payload and invocation context (as delivered
by an automation or chat agent), validates them into explicit input
models at the boundary, and returns a structured result.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel

from .config import TriageConfig
from .errors import ValidationError
from .keywords import build_text_query
from .models import (
    AssigneeSuggestion,
    SimilarTicketsResult,
    Ticket,
    TicketAnalysis,
    TicketContext,
)
from .similarity import SimilarTicketFinder
from .workload import JiraWorkloadLookup, rank_agents


logger = logging.getLogger(__name__)


class ActionContext(BaseModel):
    """Who invoked the action."""

    account_id: str

    model_config = {"frozen": True}


class IssueInput(BaseModel):
    issue_key: str

    model_config = {"frozen": True}


class SuggestAssigneeInput(BaseModel):
    issue_key: str
    category: str

    model_config = {"frozen": True}


def _require_string(payload: dict, name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid input: {name} is required and must be a string")
    return value.strip()


def parse_payload(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid input: payload object is required")
    return payload


def parse_context(context: Any) -> ActionContext:
    """
    Validate the invocation context.

    Raises:
        ValidationError: If the context is not an object or has no account id.
    """
    if isinstance(context, ActionContext):
        return context
    if not isinstance(context, dict):
        raise ValidationError("Invalid context: context object is required")

    account_id = context.get("accountId")
    if not isinstance(account_id, str) or not account_id.strip():
        raise ValidationError("Invalid context: accountId is required")
    return ActionContext(account_id=account_id.strip())


_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_jira_timestamp(value: str) -> Optional[datetime]:
    """
    Parse a Jira timestamp such as ``2024-01-15T10:30:00.000+0000``.

    Returns None for empty or unparsable values.
    """
    if not value:
        return None
    normalized = _COMPACT_OFFSET.sub(r"\1:\2", value.strip().replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.debug(f"Unparsable timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TriageActions:
    """
    Analyze, assignee-suggestion and similar-ticket actions.

    All reads go through the injected Jira client; nothing is written.
    """

    def __init__(
        self,
        client,
        config: Optional[TriageConfig] = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        """
        Initialize the actions.

        Args:
            client: JiraClient used for all reads.
            config: Keyword, similarity and workload tuning.
            now: Clock used for ticket age, injectable for tests.
        """
        self._client = client
        self._config = config or TriageConfig()
        self._now = now
        self._finder = SimilarTicketFinder(
            client,
            min_keyword_length=self._config.min_keyword_length,
            max_keywords=self._config.max_search_keywords,
            search_limit=self._config.similar_search_limit,
            top_n=self._config.max_similar_tickets,
            truncate=self._config.description_truncate_length,
        )

    def analyze_ticket_classification(self, payload: Any, context: Any) -> TicketAnalysis:
        """
        Fetch a ticket and structure it for classification.

        Raises:
            ValidationError: Missing issueKey or invalid context.
            NotFoundError: The issue does not exist.
        """
        ctx = parse_context(context)
        request = IssueInput(issue_key=_require_string(parse_payload(payload), "issueKey"))
        logger.info(f"Analyze ticket {request.issue_key} invoked by {ctx.account_id}")

        ticket = self._client.get_issue(request.issue_key)

        created = parse_jira_timestamp(ticket.created_at)
        age_hours = 0
        if created is not None:
            age_hours = max(0, int((self._now() - created).total_seconds() // 3600))

        result = TicketAnalysis(
            issue_key=ticket.key,
            summary=ticket.summary,
            description=ticket.description,
            reporter=ticket.reporter_name,
            reporter_email=ticket.reporter_email,
            created=ticket.created_at or self._now().isoformat(),
            current_priority=ticket.priority,
            current_status=ticket.status,
            labels=ticket.labels,
            context=TicketContext(
                has_description=bool(ticket.description),
                description_length=len(ticket.description),
                summary_length=len(ticket.summary),
                age_hours=age_hours,
            ),
        )

        logger.info(
            f"Analyzed {ticket.key}: summary={ticket.summary[:50]!r}, "
            f"description_length={result.context.description_length}"
        )
        return result

    def rank_project_agents(self, project_key: str):
        """Rank the project's assignable users by open-ticket count."""
        agents = self._client.get_assignable_users(
            project_key, max_results=self._config.assignable_users_limit
        )
        lookup = JiraWorkloadLookup(
            self._client, project_key, max_results=self._config.workload_max_results
        )
        return rank_agents(agents, lookup, max_workers=self._config.workload_max_workers)

    def suggest_ticket_assignee(self, payload: Any, context: Any) -> AssigneeSuggestion:
        """
        Rank assignable users by workload and recommend the least loaded.

        Raises:
            ValidationError: Missing issueKey/category or invalid context.
            NotFoundError: The issue does not exist.
        """
        ctx = parse_context(context)
        data = parse_payload(payload)
        request = SuggestAssigneeInput(
            issue_key=_require_string(data, "issueKey"),
            category=_require_string(data, "category"),
        )
        logger.info(
            f"Suggest assignee for {request.issue_key} ({request.category}) "
            f"invoked by {ctx.account_id}"
        )

        ticket = self._client.get_issue(request.issue_key, fields=["project"])
        ranking = self.rank_project_agents(ticket.project_key)

        recommended = ranking.recommendation.display_name if ranking.recommendation else "None"
        logger.info(
            f"Ranked {ranking.total_agents} agent(s) for {request.issue_key}, "
            f"recommended: {recommended}"
        )

        return AssigneeSuggestion(
            issue_key=request.issue_key,
            category=request.category,
            project_key=ticket.project_key,
            available_agents=ranking.agents,
            total_agents=ranking.total_agents,
            recommendation=ranking.recommendation,
        )

    def find_similar_for_ticket(self, ticket: Ticket):
        """Return (keywords, ranked candidates) for an already fetched ticket."""
        keywords = self._finder.keywords_for(ticket)
        return keywords, self._finder.find(ticket, keywords)

    def find_similar_tickets(self, payload: Any, context: Any) -> SimilarTicketsResult:
        """
        Find resolved tickets sharing summary keywords with the given one.

        Raises:
            ValidationError: Missing issueKey or invalid context.
            NotFoundError: The issue does not exist.
        """
        ctx = parse_context(context)
        request = IssueInput(issue_key=_require_string(parse_payload(payload), "issueKey"))
        logger.info(f"Find similar tickets for {request.issue_key} invoked by {ctx.account_id}")

        ticket = self._client.get_issue(request.issue_key)
        keywords, similar = self.find_similar_for_ticket(ticket)

        result = SimilarTicketsResult(
            issue_key=request.issue_key,
            summary=ticket.summary,
            description=ticket.description[: self._config.description_truncate_length],
            project_key=ticket.project_key,
            similar_tickets=tuple(similar),
            total_found=len(similar),
            search_keywords=build_text_query(keywords),
        )

        logger.info(
            f"Found {result.total_found} similar ticket(s) for {request.issue_key} "
            f"using keywords {result.search_keywords!r}"
        )
        return result
