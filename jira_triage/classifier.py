"""
Ticket classifier for the Jira Triage Assistant.

Classification runs as a fallback chain:

1. LLM: an OpenAI-compatible chat model returns a JSON classification
2. Keyword heuristic: a static keyword table picks category and priority
3. Static default: "Uncategorized / General", left for manual triage

The first stage that succeeds wins. The result carries its ``source`` so
callers never need exception handling to learn which stage answered.
"""

import json
import logging
import re
from typing import Optional

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)
from pydantic import BaseModel, Field, ValidationError, field_validator
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import LLMConfig
from .metrics import MetricsTracker
from .models import (
    Classification,
    PriorityLabel,
    Ticket,
    UrgencyLabel,
)


logger = logging.getLogger(__name__)


# Fallback reasons recorded in the metrics tracker
REASON_TIMEOUT = "timeout"
REASON_NETWORK = "network-error"
REASON_LLM_ERROR = "llm-error"
REASON_EMPTY = "empty-response"
REASON_INVALID_JSON = "invalid-json"
REASON_INVALID_RESPONSE = "invalid-response"
REASON_UNAVAILABLE = "llm-unavailable"


class ClassificationError(Exception):
    """Error during LLM classification, tagged with a fallback reason."""

    def __init__(self, message: str, reason: str = REASON_LLM_ERROR):
        super().__init__(message)
        self.reason = reason


class LLMClassificationResponse(BaseModel):
    """Structured output schema expected from the LLM."""

    category: str = Field(min_length=1, description="Top-level category name")
    sub_category: str = Field(
        min_length=1,
        alias="subCategory",
        description="Sub-category within the category",
    )
    priority: PriorityLabel = Field(description="Highest|High|Medium|Low|Lowest")
    urgency: UrgencyLabel = Field(description="Urgent|Normal")
    confidence: float = Field(ge=0, le=100, description="Confidence score from 0 to 100")
    reasoning: str = Field(description="Brief explanation of the classification")
    tags: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @field_validator("priority", "urgency", mode="before")
    @classmethod
    def normalize_label(cls, v):
        """Accept labels in any case ("high", "URGENT")."""
        if isinstance(v, str):
            return v.strip().capitalize()
        return v


# Priority ids of a default Jira Cloud instance
PRIORITY_IDS: dict[str, str] = {
    "Highest": "1",
    "High": "2",
    "Medium": "3",
    "Low": "4",
    "Lowest": "5",
}
DEFAULT_PRIORITY = "Medium"


def to_priority_id(label: Optional[str]) -> str:
    """
    Map an internal priority label to a Jira priority id.

    Unknown labels map to Medium.
    """
    return PRIORITY_IDS.get(label or "", PRIORITY_IDS[DEFAULT_PRIORITY])


SYSTEM_PROMPT = """You are an expert Jira ticket triage assistant responsible for classifying incoming support tickets.

## Categories and Subcategories:
1. Network Issues
   - Connectivity, VPN, Wi-Fi, DNS, Firewall
2. Hardware Issues
   - Desktop, Laptop, Printer, Monitor, Peripherals
3. Software Issues
   - Application Error, Installation, License, Performance
4. Account & Access
   - Password Reset, Permissions, New Account, Account Locked
5. Email & Communication
   - Email Access, Distribution List, Calendar, Teams/Slack
6. Security
   - Malware, Phishing, Data Breach, Security Policy
7. Data & Storage
   - File Recovery, Backup, Storage Space, Database
8. Other
   - General Inquiry, Documentation, Training

## Priority Guidelines:
- Highest: System down, security breach, data loss
- High: Major functionality broken, multiple users affected
- Medium: Single user issue, workaround available
- Low: Minor issue, cosmetic problem
- Lowest: Enhancement request, documentation

## Urgency Guidelines:
- Urgent: Immediate action required, business critical
- Normal: Standard processing time acceptable

## Confidence Scoring:
- 90-100: Perfect match, no ambiguity
- 70-89: Good match, minor interpretation needed
- 50-69: Reasonable guess, multiple categories possible
- below 50: Uncertain, using best effort

Respond ONLY with valid JSON in this exact format (no markdown, no code blocks):
{
  "category": "category name",
  "subCategory": "subcategory name",
  "priority": "Highest|High|Medium|Low|Lowest",
  "urgency": "Urgent|Normal",
  "confidence": 85,
  "reasoning": "Brief explanation of classification",
  "tags": ["tag1", "tag2"]
}"""


PROMPT_FIELD_LIMIT = 500


def sanitize_for_prompt(value: Optional[str], limit: int = PROMPT_FIELD_LIMIT) -> str:
    """Escape quote-like characters and truncate user-supplied text."""
    if not value:
        return ""
    return re.sub(r'([\\"`])', r"\\\1", value)[:limit]


def build_user_prompt(ticket: Ticket) -> str:
    """
    Build the user prompt for classification.

    Args:
        ticket: The ticket to classify.

    Returns:
        Formatted prompt string.
    """
    return f"""## TICKET TO CLASSIFY:

- Key: {sanitize_for_prompt(ticket.key)}
- Summary: {sanitize_for_prompt(ticket.summary)}
- Description: {sanitize_for_prompt(ticket.description) or 'No description provided'}
- Reporter: {sanitize_for_prompt(ticket.reporter_name)}
- Created: {sanitize_for_prompt(ticket.created_at)}

Analyze this ticket and respond with the JSON classification."""


_CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences models sometimes wrap JSON in."""
    return _CODE_FENCE.sub("", text).strip()


def parse_llm_response(text: Optional[str]) -> LLMClassificationResponse:
    """
    Parse and validate the raw model output.

    Raises:
        ClassificationError: With reason ``empty-response``,
            ``invalid-json`` or ``invalid-response``.
    """
    if not text or not text.strip():
        raise ClassificationError("LLM returned no content", REASON_EMPTY)

    cleaned = strip_code_fences(text)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"LLM response was not valid JSON: {e}", REASON_INVALID_JSON) from e

    if not isinstance(data, dict):
        raise ClassificationError(
            f"LLM response was {type(data).__name__}, expected an object",
            REASON_INVALID_RESPONSE,
        )

    try:
        return LLMClassificationResponse.model_validate(data)
    except ValidationError as e:
        raise ClassificationError(
            f"LLM response failed validation: {e.error_count()} error(s)",
            REASON_INVALID_RESPONSE,
        ) from e


def _reason_for(error: Exception) -> str:
    """Map an OpenAI client exception to a fallback reason."""
    # APITimeoutError subclasses APIConnectionError, so check it first
    if isinstance(error, APITimeoutError):
        return REASON_TIMEOUT
    if isinstance(error, APIConnectionError):
        return REASON_NETWORK
    return REASON_LLM_ERROR


class LLMClassifier:
    """
    LLM-based classifier for Jira tickets.

    Transient transport failures (connection errors, rate limits, 5xx) are
    retried with exponential backoff; anything else fails immediately.
    """

    RETRYABLE_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)

    def __init__(self, config: LLMConfig, client: Optional[OpenAI] = None):
        """
        Initialize the classifier.

        Args:
            config: LLM configuration.
            client: Preconfigured OpenAI client (built from config if omitted).
        """
        self._config = config

        if client is None:
            client_kwargs = {
                "api_key": config.api_key,
                "timeout": config.request_timeout,
                # tenacity owns retries
                "max_retries": 0,
            }
            if config.api_base_url:
                client_kwargs["base_url"] = config.api_base_url
            client = OpenAI(**client_kwargs)

        self._client = client
        self._retrying = Retrying(
            stop=stop_after_attempt(max(1, config.max_retries)),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type(self.RETRYABLE_ERRORS),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying LLM call after error: {retry_state.outcome.exception()}"
            ),
        )

        logger.info(f"Initialized LLM classifier with model: {config.model}")

    def _complete(self, prompt: str) -> str:
        response = self._retrying(
            self._client.chat.completions.create,
            model=self._config.model,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        )

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(f"LLM token usage: {usage}")

        if not response.choices:
            raise ClassificationError("LLM returned no choices", REASON_EMPTY)
        return response.choices[0].message.content or ""

    def classify(self, ticket: Ticket) -> Classification:
        """
        Classify a single ticket.

        Returns:
            Classification with ``source="llm"``.

        Raises:
            ClassificationError: Tagged with the fallback reason.
        """
        logger.debug(f"Classifying {ticket.key} with LLM")

        try:
            text = self._complete(build_user_prompt(ticket))
        except OpenAIError as e:
            raise ClassificationError(f"LLM call failed for {ticket.key}: {e}", _reason_for(e)) from e

        parsed = parse_llm_response(text)

        result = Classification(
            category=parsed.category,
            sub_category=parsed.sub_category,
            priority=parsed.priority,
            urgency=parsed.urgency,
            confidence=parsed.confidence,
            reasoning=parsed.reasoning,
            tags=tuple(parsed.tags),
            source="llm",
        )

        logger.debug(
            f"Classified {ticket.key}: {result.category} / {result.sub_category} "
            f"(priority: {result.priority}, confidence: {result.confidence:.0f})"
        )
        return result


class KeywordClassifier:
    """
    Rule-based classifier used when the LLM is unavailable.

    Matches a static keyword table against summary and description
    (case-insensitive substring). The first matching rule wins, so more
    specific rules come first.
    """

    CONFIDENCE = 40

    FALLBACK_CATEGORY = "Other"
    FALLBACK_SUB_CATEGORY = "General Inquiry"

    # (keywords, category, sub-category)
    RULES: list[tuple[tuple[str, ...], str, str]] = [
        (("phishing", "suspicious email", "scam"), "Security", "Phishing"),
        (("malware", "virus", "ransomware", "trojan"), "Security", "Malware"),
        (("data breach", "breach", "leaked", "compromised"), "Security", "Data Breach"),
        (("password", "reset my", "forgot"), "Account & Access", "Password Reset"),
        (("locked out", "account locked", "locked"), "Account & Access", "Account Locked"),
        (("permission", "access denied", "unauthorized", "403"), "Account & Access", "Permissions"),
        (("new account", "onboarding", "new hire"), "Account & Access", "New Account"),
        (("vpn",), "Network Issues", "VPN"),
        (("wifi", "wi-fi", "wireless"), "Network Issues", "Wi-Fi"),
        (("dns",), "Network Issues", "DNS"),
        (("firewall", "port blocked"), "Network Issues", "Firewall"),
        (("network", "internet", "connection", "ethernet"), "Network Issues", "Connectivity"),
        (("printer", "printing", "print "), "Hardware Issues", "Printer"),
        (("monitor", "external display"), "Hardware Issues", "Monitor"),
        (("laptop", "notebook", "battery"), "Hardware Issues", "Laptop"),
        (("desktop", "workstation"), "Hardware Issues", "Desktop"),
        (("keyboard", "mouse", "headset", "webcam", "dock"), "Hardware Issues", "Peripherals"),
        (("outlook", "email", "mailbox", "inbox"), "Email & Communication", "Email Access"),
        (("distribution list", "mailing list"), "Email & Communication", "Distribution List"),
        (("calendar", "meeting invite"), "Email & Communication", "Calendar"),
        (("teams", "slack", "zoom"), "Email & Communication", "Teams/Slack"),
        (("license", "licence", "subscription"), "Software Issues", "License"),
        (("install", "setup", "upgrade"), "Software Issues", "Installation"),
        (("slow", "freez", "performance", "hangs"), "Software Issues", "Performance"),
        (("crash", "error", "exception", "bug"), "Software Issues", "Application Error"),
        (("backup", "restore"), "Data & Storage", "Backup"),
        (("deleted", "recover", "lost file"), "Data & Storage", "File Recovery"),
        (("disk space", "storage", "quota"), "Data & Storage", "Storage Space"),
        (("database", "sql"), "Data & Storage", "Database"),
        (("documentation", "how to", "how do i"), "Other", "Documentation"),
        (("training",), "Other", "Training"),
    ]

    # Whole-word tokens that escalate priority
    HIGH_PRIORITY_TERMS = ("urgent", "critical", "down", "outage", "asap", "emergency", "immediately")
    LOW_PRIORITY_TERMS = ("enhancement", "feature request", "cosmetic", "typo", "nice to have")

    def __init__(self):
        self._high_pattern = re.compile(
            r"\b(" + "|".join(re.escape(t) for t in self.HIGH_PRIORITY_TERMS) + r")\b"
        )
        self._low_pattern = re.compile(
            r"\b(" + "|".join(re.escape(t) for t in self.LOW_PRIORITY_TERMS) + r")\b"
        )

    def _match_rule(self, text: str) -> Optional[tuple[str, str, str]]:
        for keywords, category, sub_category in self.RULES:
            for keyword in keywords:
                if keyword in text:
                    return keyword, category, sub_category
        return None

    def classify(self, ticket: Ticket) -> Classification:
        """
        Classify by keyword lookup. Always returns a best-effort guess.

        Returns:
            Classification with ``source="keyword-fallback"``.
        """
        text = f"{ticket.summary} {ticket.description}".lower()

        match = self._match_rule(text)
        if match:
            keyword, category, sub_category = match
            reasoning = f"Keyword match on '{keyword.strip()}'"
            tags = [keyword.strip()]
        else:
            category, sub_category = self.FALLBACK_CATEGORY, self.FALLBACK_SUB_CATEGORY
            reasoning = "No category keywords matched"
            tags = []

        priority: str = "Medium"
        urgency: str = "Normal"
        escalation = self._high_pattern.search(text)
        if escalation:
            priority, urgency = "High", "Urgent"
            reasoning += f"; escalated by '{escalation.group(1)}'"
        elif self._low_pattern.search(text):
            priority = "Low"

        return Classification(
            category=category,
            sub_category=sub_category,
            priority=priority,
            urgency=urgency,
            confidence=self.CONFIDENCE,
            reasoning=reasoning,
            tags=tuple(tags),
            source="keyword-fallback",
        )


DEFAULT_CLASSIFICATION = Classification(
    category="Uncategorized",
    sub_category="General",
    priority="Medium",
    urgency="Normal",
    confidence=0,
    reasoning="manual triage required",
    tags=(),
    source="default",
)


class ClassificationChain:
    """
    Orchestrates LLM → keyword heuristic → static default.

    Never raises for classification failures. Every transition out of the
    LLM stage is recorded in the metrics tracker with its reason.
    """

    def __init__(
        self,
        metrics: MetricsTracker,
        llm_classifier: Optional[LLMClassifier] = None,
        keyword_classifier: Optional[KeywordClassifier] = None,
        keyword_fallback_enabled: bool = True,
    ):
        """
        Initialize the chain.

        Args:
            metrics: Tracker receiving success/failure/fallback counts.
            llm_classifier: LLM stage; None when no LLM is configured.
            keyword_classifier: Heuristic stage (a default one if omitted).
            keyword_fallback_enabled: False skips straight to the default.
        """
        self._metrics = metrics
        self._llm = llm_classifier
        self._keywords = keyword_classifier or KeywordClassifier()
        self._keyword_fallback_enabled = keyword_fallback_enabled

    def _try_llm(self, ticket: Ticket) -> tuple[Optional[Classification], Optional[str]]:
        if self._llm is None:
            return None, REASON_UNAVAILABLE

        try:
            result = self._llm.classify(ticket)
        except ClassificationError as e:
            logger.warning(f"LLM classification failed for {ticket.key} ({e.reason}): {e}")
            return None, e.reason
        except Exception as e:
            logger.error(f"Unexpected LLM classification error for {ticket.key}: {e}")
            return None, REASON_LLM_ERROR

        return result, None

    def classify(self, ticket: Ticket) -> Classification:
        """
        Classify a ticket through the fallback chain.

        Returns:
            Classification whose ``source`` names the stage that answered.
        """
        result, reason = self._try_llm(ticket)
        if result is not None:
            self._metrics.track_success(result.confidence)
            return result

        self._metrics.track_failure()
        self._metrics.track_fallback(reason)

        if self._keyword_fallback_enabled:
            try:
                result = self._keywords.classify(ticket)
                logger.info(
                    f"Keyword fallback for {ticket.key} ({reason}): "
                    f"{result.category} / {result.sub_category}"
                )
                return result
            except Exception as e:
                logger.error(f"Keyword classification failed for {ticket.key}: {e}")

        logger.info(f"Using default classification for {ticket.key} ({reason})")
        return DEFAULT_CLASSIFICATION
