"""
Triage orchestration and write-back.

``TriageService`` runs the full flow for one issue: classify through the
fallback chain, then rank assignees and search similar tickets in
parallel, then (optionally) write priority, assignee, labels and a
comment back to Jira.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from .actions import TriageActions
from .classifier import ClassificationChain, to_priority_id
from .config import TriageConfig
from .errors import TriageError, UpstreamUnavailableError, ValidationError
from .models import (
    ApplyResult,
    Classification,
    SimilarTicketCandidate,
    Ticket,
    TriageResult,
    WorkloadRanking,
)
from .settings import SettingsStore


logger = logging.getLogger(__name__)


TRIAGED_LABEL = "ai-triaged"
UNCATEGORIZED = "Uncategorized"
GENERAL = "General"


def slugify(text: str) -> str:
    """Lowercase and replace whitespace runs with hyphens."""
    return re.sub(r"\s+", "-", text.strip().lower())


def classification_labels(classification: Classification) -> list[str]:
    """
    Labels describing a classification.

    Placeholder values (Uncategorized / General) produce no label.
    """
    labels = []
    if classification.category and classification.category != UNCATEGORIZED:
        labels.append(f"ai-category:{slugify(classification.category)}")
    if classification.sub_category and classification.sub_category != GENERAL:
        labels.append(f"ai-subcategory:{slugify(classification.sub_category)}")
    return labels


def merge_labels(existing: tuple[str, ...], new: list[str]) -> list[str]:
    """Existing labels first, then new ones, without duplicates."""
    return list(dict.fromkeys([*existing, *new]))


def build_triage_comment(result: TriageResult, assigned: bool) -> str:
    c = result.classification
    lines = [
        "AI Triage Complete",
        "",
        f"- Category: {c.category} / {c.sub_category}",
        f"- Priority: {c.priority} ({c.urgency})",
        f"- Confidence: {c.confidence:.0f}%",
        f"- Source: {c.source}",
    ]
    if c.reasoning:
        lines.append(f"- Reasoning: {c.reasoning}")

    recommendation = result.ranking.recommendation
    if assigned and recommendation:
        lines.append(f"- Assigned to: {recommendation.display_name} ({recommendation.reasoning})")

    if result.similar_tickets:
        lines.append("")
        lines.append("Similar resolved tickets:")
        lines.extend(
            f"- {t.key}: {t.summary} ({t.similarity_score}% match, {t.resolution})"
            for t in result.similar_tickets
        )
    return "\n".join(lines)


class TriageService:
    """
    End-to-end triage for single issues.

    Classification failures never raise (see ``ClassificationChain``);
    the assignee and similar-ticket branches degrade to empty results
    independently of each other.
    """

    def __init__(
        self,
        client,
        chain: ClassificationChain,
        config: Optional[TriageConfig] = None,
        settings: Optional[SettingsStore] = None,
    ):
        """
        Initialize the service.

        Args:
            client: JiraClient used for reads and writes.
            chain: Classification fallback chain.
            config: Keyword, similarity and workload tuning.
            settings: Settings store holding the auto-triage flag.
        """
        self._client = client
        self._chain = chain
        self._config = config or TriageConfig()
        self._settings = settings
        self._actions = TriageActions(client, self._config)

    @property
    def actions(self) -> TriageActions:
        return self._actions

    def _require_issue_key(self, issue_key: Any) -> str:
        if not isinstance(issue_key, str) or not issue_key.strip():
            raise ValidationError("Invalid input: issueKey is required and must be a string")
        return issue_key.strip()

    def classify(self, issue_key: str) -> Classification:
        ticket = self._client.get_issue(self._require_issue_key(issue_key))
        return self._chain.classify(ticket)

    def _rank_workload(self, ticket: Ticket) -> WorkloadRanking:
        try:
            return self._actions.rank_project_agents(ticket.project_key)
        except Exception as e:
            logger.warning(f"Assignee ranking failed for {ticket.key}, continuing without: {e}")
            return WorkloadRanking()

    def _find_similar(self, ticket: Ticket) -> list[SimilarTicketCandidate]:
        try:
            _, similar = self._actions.find_similar_for_ticket(ticket)
            return similar
        except Exception as e:
            logger.warning(f"Similar ticket search failed for {ticket.key}, continuing without: {e}")
            return []

    def triage_ticket(self, ticket: Ticket) -> TriageResult:
        """Triage an already fetched ticket."""
        classification = self._chain.classify(ticket)

        with ThreadPoolExecutor(max_workers=2) as executor:
            ranking_future = executor.submit(self._rank_workload, ticket)
            similar_future = executor.submit(self._find_similar, ticket)
            ranking = ranking_future.result()
            similar = similar_future.result()

        result = TriageResult(
            issue_key=ticket.key,
            project_key=ticket.project_key,
            classification=classification,
            ranking=ranking,
            similar_tickets=tuple(similar),
        )

        recommended = ranking.recommendation.display_name if ranking.recommendation else "None"
        logger.info(
            f"Triaged {ticket.key}: {classification.category} / {classification.sub_category}, "
            f"priority={classification.priority}, source={classification.source}, "
            f"assignee={recommended}, similar={len(similar)}"
        )
        return result

    def run_triage(self, issue_key: str) -> TriageResult:
        """
        Fetch and triage an issue without writing anything back.

        Raises:
            ValidationError: Empty issue key.
            NotFoundError: The issue does not exist.
        """
        ticket = self._client.get_issue(self._require_issue_key(issue_key))
        return self.triage_ticket(ticket)

    def build_update_fields(
        self,
        result: TriageResult,
        existing_labels: tuple[str, ...] = (),
        assign: bool = True,
    ) -> dict:
        """Jira fields carrying priority, labels and (optionally) the assignee."""
        labels = merge_labels(
            existing_labels,
            classification_labels(result.classification) + [TRIAGED_LABEL],
        )
        fields: dict[str, Any] = {
            "priority": {"id": to_priority_id(result.classification.priority)},
            "labels": labels,
        }
        if assign and result.ranking.recommendation:
            fields["assignee"] = {"accountId": result.ranking.recommendation.account_id}
        return fields

    def apply_result(
        self,
        result: TriageResult,
        existing_labels: Optional[tuple[str, ...]] = None,
        assign: bool = True,
        comment: bool = True,
    ) -> ApplyResult:
        """
        Write a triage result back to Jira.

        If the update fails with an assignee set (for example the user lost
        the assign permission), it is retried once without the assignee.
        Comment failures are logged and do not fail the operation.

        Raises:
            UpstreamUnavailableError: If the field update fails.
            NotFoundError: If the issue no longer exists.
        """
        if existing_labels is None:
            existing_labels = self._client.get_issue(result.issue_key, fields=["labels"]).labels

        fields = self.build_update_fields(result, existing_labels, assign=assign)
        assigned = "assignee" in fields

        try:
            self._client.update_issue(result.issue_key, fields)
        except UpstreamUnavailableError as e:
            if not assigned:
                raise
            logger.warning(f"Update of {result.issue_key} failed with assignee, retrying without: {e}")
            del fields["assignee"]
            assigned = False
            self._client.update_issue(result.issue_key, fields)

        commented = False
        if comment:
            try:
                self._client.add_comment(result.issue_key, build_triage_comment(result, assigned))
                commented = True
            except TriageError as e:
                logger.warning(f"Failed to add triage comment to {result.issue_key}: {e}")

        return ApplyResult(
            issue_key=result.issue_key,
            updated=True,
            assigned=assigned,
            commented=commented,
            labels=tuple(fields["labels"]),
            priority_id=fields["priority"]["id"],
            message="Triage result applied successfully",
        )

    def add_label(self, issue_key: str, label: str) -> bool:
        """
        Add a label unless already present.

        Returns:
            True if the label was added, False if it already existed.
        """
        issue_key = self._require_issue_key(issue_key)
        if not isinstance(label, str) or not label.strip():
            raise ValidationError("Invalid input: label is required and must be a string")

        ticket = self._client.get_issue(issue_key, fields=["labels"])
        if label in ticket.labels:
            logger.info(f"Label {label!r} already on {issue_key}")
            return False

        self._client.update_issue(issue_key, {"labels": [*ticket.labels, label]})
        logger.info(f"Label {label!r} added to {issue_key}")
        return True

    def change_assignee(self, issue_key: str, account_id: str) -> None:
        issue_key = self._require_issue_key(issue_key)
        if not isinstance(account_id, str) or not account_id.strip():
            raise ValidationError("Invalid input: accountId is required")
        self._client.assign_issue(issue_key, account_id.strip())

    @staticmethod
    def _event_issue_key(event: Any) -> Optional[str]:
        issue = event.get("issue") if isinstance(event, dict) else None
        key = issue.get("key") if isinstance(issue, dict) else None
        return key if isinstance(key, str) and key.strip() else None

    def handle_issue_created(self, event: dict) -> Optional[ApplyResult]:
        """
        Auto-triage a newly created issue.

        Skips when auto-triage is disabled, the event has no issue key, or
        the issue is already assigned. Never raises, so issue creation is
        never blocked by a triage failure.

        Returns:
            The apply result, or None when skipped or failed.
        """
        issue_key = self._event_issue_key(event)
        logger.info(f"Issue created event received for {issue_key}")

        try:
            if self._settings is not None and not self._settings.is_auto_triage_enabled():
                logger.info("Auto-triage is disabled, skipping")
                return None

            if not issue_key:
                logger.error("Issue created event without issue key")
                return None

            ticket = self._client.get_issue(issue_key)
            if ticket.is_assigned:
                logger.info(f"{issue_key} is already assigned, skipping auto-triage")
                return None

            result = self.triage_ticket(ticket)
            applied = self.apply_result(result, existing_labels=ticket.labels)
            logger.info(
                f"Auto-triage completed for {issue_key}: "
                f"assigned={applied.assigned}, commented={applied.commented}"
            )
            return applied
        except Exception as e:
            logger.error(f"Auto-triage failed for {issue_key}: {e}")
            return None
