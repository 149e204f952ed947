"""
Data models for the Jira Triage Assistant.

Uses Pydantic for robust data validation and serialization.
Snapshots fetched from Jira are immutable; results are built fresh
per request and never persisted.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


PriorityLabel = Literal["Highest", "High", "Medium", "Low", "Lowest"]
UrgencyLabel = Literal["Urgent", "Normal"]
ClassificationSource = Literal["llm", "keyword-fallback", "default"]

PRIORITY_LABELS: tuple[str, ...] = ("Highest", "High", "Medium", "Low", "Lowest")
URGENCY_LABELS: tuple[str, ...] = ("Urgent", "Normal")


def adf_to_text(node: Any) -> str:
    """
    Flatten an Atlassian Document Format node into plain text.

    Jira REST v3 returns rich-text fields (description, comments) as ADF
    documents. Plain strings are returned unchanged.
    """
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(adf_to_text(child) for child in node)
    if not isinstance(node, dict):
        return str(node)

    node_type = node.get("type")
    if node_type == "text":
        return node.get("text", "")
    if node_type == "hardBreak":
        return "\n"

    text = adf_to_text(node.get("content", []))
    if node_type in ("paragraph", "heading", "listItem", "codeBlock", "blockquote"):
        text += "\n"
    return text.strip() if node_type == "doc" else text


class Ticket(BaseModel):
    """
    Immutable snapshot of a Jira issue.

    Attributes:
        key: Issue key (e.g. "HELP-123")
        summary: One-line issue summary
        description: Plain-text description
        reporter_name: Display name of the reporter
        reporter_email: Email of the reporter (may be hidden by Jira privacy)
        created_at: ISO-8601 creation timestamp as returned by Jira
        priority: Current priority name
        status: Current status name
        labels: Current labels
        project_key: Key of the owning project
        assignee_id: Account id of the assignee, if any
        assignee_name: Display name of the assignee, if any
    """

    key: str = Field(..., description="Issue key")
    summary: str = Field(default="", description="Issue summary")
    description: str = Field(default="", description="Plain-text description")
    reporter_name: str = Field(default="Unknown", description="Reporter display name")
    reporter_email: str = Field(default="", description="Reporter email")
    created_at: str = Field(default="", description="Creation timestamp")
    priority: str = Field(default="None", description="Current priority name")
    status: str = Field(default="Unknown", description="Current status name")
    labels: tuple[str, ...] = Field(default=(), description="Current labels")
    project_key: str = Field(default="", description="Owning project key")
    assignee_id: Optional[str] = Field(default=None, description="Assignee account id")
    assignee_name: Optional[str] = Field(default=None, description="Assignee display name")

    model_config = {"frozen": True}

    @classmethod
    def from_jira(cls, issue: dict) -> "Ticket":
        """Build a snapshot from a raw Jira REST v3 issue payload."""
        fields = issue.get("fields") or {}
        reporter = fields.get("reporter") or {}
        assignee = fields.get("assignee") or {}
        priority = fields.get("priority") or {}
        status = fields.get("status") or {}
        project = fields.get("project") or {}

        return cls(
            key=issue.get("key", ""),
            summary=fields.get("summary") or "",
            description=adf_to_text(fields.get("description")),
            reporter_name=reporter.get("displayName") or "Unknown",
            reporter_email=reporter.get("emailAddress") or "",
            created_at=fields.get("created") or "",
            priority=priority.get("name") or "None",
            status=status.get("name") or "Unknown",
            labels=tuple(fields.get("labels") or ()),
            project_key=project.get("key") or "",
            assignee_id=assignee.get("accountId"),
            assignee_name=assignee.get("displayName"),
        )

    @property
    def is_assigned(self) -> bool:
        """Check if the issue already has an assignee."""
        return bool(self.assignee_id)


class Classification(BaseModel):
    """
    Result of the classification fallback chain.

    ``source`` tells callers which stage produced the result so they can
    branch on it instead of catching exceptions.
    """

    category: str = Field(..., description="Top-level category")
    sub_category: str = Field(..., description="Sub-category within the category")
    priority: PriorityLabel = Field(default="Medium")
    urgency: UrgencyLabel = Field(default="Normal")
    confidence: float = Field(default=0, ge=0, le=100, description="Confidence (0-100)")
    reasoning: str = Field(default="", description="Explanation for the classification")
    tags: tuple[str, ...] = Field(default=())
    source: ClassificationSource = Field(..., description="Stage that produced the result")

    model_config = {"frozen": True}


class Agent(BaseModel):
    """An assignable Jira user together with their open-ticket count."""

    account_id: str = Field(..., description="Jira account id")
    display_name: str = Field(default="", description="Display name")
    email: str = Field(default="", description="Email address")
    current_load: int = Field(default=0, ge=0, description="Open tickets in the project")
    active: bool = Field(default=True, description="Whether the account is active")

    model_config = {"frozen": True}

    @classmethod
    def from_jira(cls, user: dict) -> "Agent":
        """Build an agent from a raw Jira user payload."""
        return cls(
            account_id=user.get("accountId", ""),
            display_name=user.get("displayName") or "",
            email=user.get("emailAddress") or "",
            # Jira omits the flag for some account types; treat missing as active
            active=user.get("active") is not False,
        )


class AssigneeRecommendation(BaseModel):
    """The lowest-workload agent with a human-readable reason."""

    account_id: str
    display_name: str
    current_load: int = Field(ge=0)
    reasoning: str

    model_config = {"frozen": True}


class WorkloadRanking(BaseModel):
    """Agents sorted by ascending workload plus the resulting recommendation."""

    agents: tuple[Agent, ...] = Field(default=())
    recommendation: Optional[AssigneeRecommendation] = None

    model_config = {"frozen": True}

    @property
    def total_agents(self) -> int:
        return len(self.agents)


class SimilarTicketCandidate(BaseModel):
    """A resolved ticket scored against the query ticket."""

    key: str
    summary: str = ""
    description_excerpt: str = ""
    resolution: str = "Resolved"
    resolution_date: str = ""
    assignee: str = "Unknown"
    status: str = "Done"
    similarity_score: int = Field(default=0, ge=0, le=100)

    model_config = {"frozen": True}


class LLMCallCounts(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0


class FallbackUsage(BaseModel):
    total: int = 0
    reasons: dict[str, int] = Field(default_factory=dict)


class ConfidenceScores(BaseModel):
    sum: float = 0.0
    count: int = 0


class MetricsSnapshot(BaseModel):
    """Process-wide classification counters."""

    llm_calls: LLMCallCounts = Field(default_factory=LLMCallCounts)
    fallback_usage: FallbackUsage = Field(default_factory=FallbackUsage)
    confidence_scores: ConfidenceScores = Field(default_factory=ConfidenceScores)
    last_reset: str = Field(default="", description="ISO-8601 timestamp of the last reset")


class TicketContext(BaseModel):
    """Derived facts about a ticket that help downstream analysis."""

    has_description: bool
    description_length: int
    summary_length: int
    age_hours: int


class TicketAnalysis(BaseModel):
    """Structured ticket data prepared for classification."""

    issue_key: str
    summary: str
    description: str
    reporter: str
    reporter_email: str
    created: str
    current_priority: str
    current_status: str
    labels: tuple[str, ...] = ()
    context: TicketContext


class AssigneeSuggestion(BaseModel):
    """Output of the assignee suggestion action."""

    issue_key: str
    category: str
    project_key: str
    available_agents: tuple[Agent, ...] = ()
    total_agents: int = 0
    recommendation: Optional[AssigneeRecommendation] = None


class SimilarTicketsResult(BaseModel):
    """Output of the similar ticket search action."""

    issue_key: str
    summary: str
    description: str
    project_key: str
    similar_tickets: tuple[SimilarTicketCandidate, ...] = ()
    total_found: int = 0
    search_keywords: str = ""


class TriageResult(BaseModel):
    """Everything the triage flow produces for one ticket."""

    issue_key: str
    project_key: str
    classification: Classification
    ranking: WorkloadRanking = Field(default_factory=WorkloadRanking)
    similar_tickets: tuple[SimilarTicketCandidate, ...] = ()


class ApplyResult(BaseModel):
    """Outcome of writing a triage result back to Jira."""

    issue_key: str
    updated: bool = False
    assigned: bool = False
    commented: bool = False
    labels: tuple[str, ...] = ()
    priority_id: Optional[str] = None
    message: str = ""
