"""
Unit tests for the ticket classifier.

Tests cover:
- LLM response schema and parsing
- Prompt building and sanitizing
- LLM classifier with mocked OpenAI client
- Keyword heuristic
- Fallback chain and metrics recording
"""

import json

import httpx
import pytest
from unittest.mock import MagicMock, Mock, patch
from openai import APIConnectionError, APITimeoutError, AuthenticationError

from jira_triage.classifier import (
    DEFAULT_CLASSIFICATION,
    PRIORITY_IDS,
    SYSTEM_PROMPT,
    ClassificationChain,
    ClassificationError,
    KeywordClassifier,
    LLMClassificationResponse,
    LLMClassifier,
    build_user_prompt,
    parse_llm_response,
    sanitize_for_prompt,
    strip_code_fences,
    to_priority_id,
)
from jira_triage.config import LLMConfig
from jira_triage.metrics import MetricsTracker
from jira_triage.models import PRIORITY_LABELS, Classification, Ticket


# =============================================================================
# Fixtures
# =============================================================================

VALID_RESPONSE = {
    "category": "Network Issues",
    "subCategory": "VPN",
    "priority": "High",
    "urgency": "Urgent",
    "confidence": 85,
    "reasoning": "User cannot reach the VPN gateway.",
    "tags": ["vpn", "remote"],
}


@pytest.fixture
def sample_ticket() -> Ticket:
    """Create a sample ticket for testing."""
    return Ticket(
        key="HELP-42",
        summary="Cannot connect to VPN from home",
        description="The VPN client says the gateway is unreachable.",
        reporter_name="Jane Doe",
        created_at="2024-01-15T10:30:00.000+0000",
        project_key="HELP",
    )


@pytest.fixture
def llm_config() -> LLMConfig:
    """LLM config with a single attempt so tests never back off."""
    return LLMConfig(
        api_key="test-api-key",
        model="gpt-4o-mini",
        temperature=0.3,
        max_tokens=500,
        max_retries=1,
    )


def completion(content) -> Mock:
    """Build a chat completion response with one choice."""
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage = None
    return response


@pytest.fixture
def openai_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create.return_value = completion(json.dumps(VALID_RESPONSE))
    return client


@pytest.fixture
def classifier(llm_config: LLMConfig, openai_client: MagicMock) -> LLMClassifier:
    """Create a classifier with a mocked OpenAI client."""
    return LLMClassifier(llm_config, client=openai_client)


@pytest.fixture
def metrics() -> MetricsTracker:
    return MetricsTracker()


def connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


def timeout_error() -> APITimeoutError:
    return APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


# =============================================================================
# LLMClassificationResponse Tests
# =============================================================================

class TestLLMClassificationResponse:
    """Tests for the LLM response schema."""

    def test_valid_response(self):
        """Test valid classification response."""
        response = LLMClassificationResponse.model_validate(VALID_RESPONSE)
        assert response.category == "Network Issues"
        assert response.sub_category == "VPN"
        assert response.confidence == 85
        assert response.tags == ["vpn", "remote"]

    def test_tags_optional(self):
        """Test tags default to an empty list."""
        data = {k: v for k, v in VALID_RESPONSE.items() if k != "tags"}
        assert LLMClassificationResponse.model_validate(data).tags == []

    def test_labels_case_insensitive(self):
        """Test priority and urgency accept any case."""
        response = LLMClassificationResponse.model_validate(
            {**VALID_RESPONSE, "priority": "HIGH", "urgency": "normal"}
        )
        assert response.priority == "High"
        assert response.urgency == "Normal"

    def test_confidence_bounds(self):
        """Test confidence must be between 0 and 100."""
        with pytest.raises(ValueError):
            LLMClassificationResponse.model_validate({**VALID_RESPONSE, "confidence": 101})
        with pytest.raises(ValueError):
            LLMClassificationResponse.model_validate({**VALID_RESPONSE, "confidence": -1})

    def test_unknown_priority_rejected(self):
        """Test priority must be one of the five labels."""
        with pytest.raises(ValueError):
            LLMClassificationResponse.model_validate({**VALID_RESPONSE, "priority": "Critical"})


# =============================================================================
# Parsing Tests
# =============================================================================

class TestParseLLMResponse:
    """Tests for parse_llm_response and strip_code_fences."""

    def test_plain_json(self):
        """Test bare JSON parses."""
        parsed = parse_llm_response(json.dumps(VALID_RESPONSE))
        assert parsed.category == "Network Issues"

    def test_code_fenced_json(self):
        """Test JSON wrapped in a markdown fence parses."""
        text = f"```json\n{json.dumps(VALID_RESPONSE)}\n```"
        assert parse_llm_response(text).sub_category == "VPN"

    def test_strip_code_fences(self):
        """Test fences with and without a language tag are removed."""
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('```JSON {"a": 1}```') == '{"a": 1}'

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty(self, text):
        """Test empty output is reported as empty-response."""
        with pytest.raises(ClassificationError) as exc_info:
            parse_llm_response(text)
        assert exc_info.value.reason == "empty-response"

    def test_invalid_json(self):
        """Test non-JSON output is reported as invalid-json."""
        with pytest.raises(ClassificationError) as exc_info:
            parse_llm_response("I think this is a VPN problem.")
        assert exc_info.value.reason == "invalid-json"

    def test_missing_keys(self):
        """Test missing required keys are reported as invalid-response."""
        with pytest.raises(ClassificationError) as exc_info:
            parse_llm_response(json.dumps({"category": "Network Issues"}))
        assert exc_info.value.reason == "invalid-response"

    def test_non_object(self):
        """Test a JSON array is reported as invalid-response."""
        with pytest.raises(ClassificationError) as exc_info:
            parse_llm_response("[1, 2, 3]")
        assert exc_info.value.reason == "invalid-response"


# =============================================================================
# Prompt Tests
# =============================================================================

class TestBuildUserPrompt:
    """Tests for the user prompt builder."""

    def test_prompt_contains_ticket_info(self, sample_ticket: Ticket):
        """Test prompt includes ticket details."""
        prompt = build_user_prompt(sample_ticket)

        assert sample_ticket.key in prompt
        assert sample_ticket.summary in prompt
        assert sample_ticket.description in prompt
        assert sample_ticket.reporter_name in prompt

    def test_missing_description(self):
        """Test an empty description is called out."""
        prompt = build_user_prompt(Ticket(key="HELP-1", summary="Printer"))
        assert "No description provided" in prompt

    def test_system_prompt_lists_categories(self):
        """Test the system prompt names the categories and JSON format."""
        assert "Network Issues" in SYSTEM_PROMPT
        assert "Account & Access" in SYSTEM_PROMPT
        assert '"subCategory"' in SYSTEM_PROMPT


class TestSanitizeForPrompt:
    """Tests for sanitize_for_prompt."""

    def test_escapes_quote_like_characters(self):
        """Test backslash, double quote and backtick are escaped."""
        assert sanitize_for_prompt('say "hi" `now` \\o/') == 'say \\"hi\\" \\`now\\` \\\\o/'

    def test_truncates(self):
        """Test text is cut to 500 characters."""
        assert len(sanitize_for_prompt("x" * 2000)) == 500

    def test_empty(self):
        """Test None becomes an empty string."""
        assert sanitize_for_prompt(None) == ""


# =============================================================================
# Priority Mapping Tests
# =============================================================================

class TestToPriorityId:
    """Tests for to_priority_id."""

    @pytest.mark.parametrize("label,expected", [
        ("Highest", "1"),
        ("High", "2"),
        ("Medium", "3"),
        ("Low", "4"),
        ("Lowest", "5"),
    ])
    def test_known_labels(self, label, expected):
        """Test each label maps to its Jira id."""
        assert to_priority_id(label) == expected

    def test_mapping_is_injective(self):
        """Test no two labels share an id."""
        ids = [to_priority_id(label) for label in PRIORITY_LABELS]
        assert len(set(ids)) == len(PRIORITY_LABELS) == len(PRIORITY_IDS)

    @pytest.mark.parametrize("label", ["Critical", "", None])
    def test_unknown_maps_to_medium(self, label):
        """Test unknown labels fall back to Medium's id."""
        assert to_priority_id(label) == "3"


# =============================================================================
# LLMClassifier Tests
# =============================================================================

class TestLLMClassifier:
    """Tests for LLMClassifier with a mocked OpenAI client."""

    def test_builds_openai_client_from_config(self, llm_config: LLMConfig):
        """Test the OpenAI client is created with retries disabled."""
        with patch("jira_triage.classifier.OpenAI") as mock_openai:
            LLMClassifier(llm_config)

        kwargs = mock_openai.call_args.kwargs
        assert kwargs["api_key"] == "test-api-key"
        assert kwargs["max_retries"] == 0
        assert kwargs["timeout"] == llm_config.request_timeout
        assert "base_url" not in kwargs

    def test_custom_base_url(self):
        """Test an OpenAI-compatible endpoint can be configured."""
        config = LLMConfig(api_key="k", api_base_url="http://localhost:11434/v1")
        with patch("jira_triage.classifier.OpenAI") as mock_openai:
            LLMClassifier(config)
        assert mock_openai.call_args.kwargs["base_url"] == "http://localhost:11434/v1"

    def test_successful_classification(self, classifier, openai_client, sample_ticket):
        """Test a valid response becomes an llm-sourced classification."""
        result = classifier.classify(sample_ticket)

        assert result.source == "llm"
        assert result.category == "Network Issues"
        assert result.sub_category == "VPN"
        assert result.priority == "High"
        assert result.urgency == "Urgent"
        assert result.confidence == 85
        assert result.tags == ("vpn", "remote")

    def test_request_parameters(self, classifier, openai_client, sample_ticket):
        """Test model, temperature and max tokens come from config."""
        classifier.classify(sample_ticket)

        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 500
        assert kwargs["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert "HELP-42" in kwargs["messages"][1]["content"]

    def test_network_error(self, classifier, openai_client, sample_ticket):
        """Test connection failures carry the network-error reason."""
        openai_client.chat.completions.create.side_effect = connection_error()

        with pytest.raises(ClassificationError) as exc_info:
            classifier.classify(sample_ticket)
        assert exc_info.value.reason == "network-error"

    def test_timeout(self, classifier, openai_client, sample_ticket):
        """Test timeouts carry the timeout reason."""
        openai_client.chat.completions.create.side_effect = timeout_error()

        with pytest.raises(ClassificationError) as exc_info:
            classifier.classify(sample_ticket)
        assert exc_info.value.reason == "timeout"

    def test_status_error(self, classifier, openai_client, sample_ticket):
        """Test non-OK API responses carry the llm-error reason."""
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        openai_client.chat.completions.create.side_effect = AuthenticationError(
            "bad key",
            response=httpx.Response(401, request=request),
            body=None,
        )

        with pytest.raises(ClassificationError) as exc_info:
            classifier.classify(sample_ticket)
        assert exc_info.value.reason == "llm-error"
        assert openai_client.chat.completions.create.call_count == 1

    def test_no_choices(self, classifier, openai_client, sample_ticket):
        """Test a response without choices is an empty response."""
        response = completion("")
        response.choices = []
        openai_client.chat.completions.create.return_value = response

        with pytest.raises(ClassificationError) as exc_info:
            classifier.classify(sample_ticket)
        assert exc_info.value.reason == "empty-response"

    def test_null_content(self, classifier, openai_client, sample_ticket):
        """Test a null message content is an empty response."""
        openai_client.chat.completions.create.return_value = completion(None)

        with pytest.raises(ClassificationError) as exc_info:
            classifier.classify(sample_ticket)
        assert exc_info.value.reason == "empty-response"

    def test_retries_connection_errors(self, openai_client, sample_ticket):
        """Test transient errors are retried up to max_retries attempts."""
        config = LLMConfig(api_key="k", max_retries=2)
        classifier = LLMClassifier(config, client=openai_client)
        openai_client.chat.completions.create.side_effect = [
            connection_error(),
            completion(json.dumps(VALID_RESPONSE)),
        ]

        with patch("tenacity.nap.time.sleep"):
            result = classifier.classify(sample_ticket)

        assert result.source == "llm"
        assert openai_client.chat.completions.create.call_count == 2


# =============================================================================
# KeywordClassifier Tests
# =============================================================================

class TestKeywordClassifier:
    """Tests for the keyword heuristic."""

    @pytest.fixture
    def heuristic(self) -> KeywordClassifier:
        return KeywordClassifier()

    def test_vpn(self, heuristic: KeywordClassifier, sample_ticket: Ticket):
        """Test a VPN ticket lands in Network Issues / VPN."""
        result = heuristic.classify(sample_ticket)

        assert result.source == "keyword-fallback"
        assert result.category == "Network Issues"
        assert result.sub_category == "VPN"
        assert result.confidence == 40
        assert result.priority == "Medium"
        assert result.urgency == "Normal"

    def test_password_beats_email(self, heuristic: KeywordClassifier):
        """Test the first matching rule wins."""
        ticket = Ticket(key="T-1", summary="Forgot email password")
        result = heuristic.classify(ticket)
        assert (result.category, result.sub_category) == ("Account & Access", "Password Reset")

    def test_case_insensitive(self, heuristic: KeywordClassifier):
        """Test keywords match regardless of case."""
        result = heuristic.classify(Ticket(key="T-2", summary="PRINTER OUT OF TONER"))
        assert result.category == "Hardware Issues"
        assert result.sub_category == "Printer"

    def test_matches_description(self, heuristic: KeywordClassifier):
        """Test the description is searched too."""
        ticket = Ticket(key="T-3", summary="Help", description="I clicked a phishing link")
        assert heuristic.classify(ticket).category == "Security"

    @pytest.mark.parametrize("word", ["urgent", "critical", "down", "outage", "asap"])
    def test_escalation(self, heuristic: KeywordClassifier, word):
        """Test escalation words raise priority and urgency."""
        ticket = Ticket(key="T-4", summary=f"Email server {word}")
        result = heuristic.classify(ticket)
        assert result.priority == "High"
        assert result.urgency == "Urgent"

    def test_escalation_is_whole_word(self, heuristic: KeywordClassifier):
        """Test words merely containing an escalation token do not escalate."""
        ticket = Ticket(key="T-5", summary="Software download slow")
        assert heuristic.classify(ticket).priority == "Medium"

    def test_low_priority(self, heuristic: KeywordClassifier):
        """Test cosmetic requests get Low priority."""
        ticket = Ticket(key="T-6", summary="Typo in the documentation page")
        result = heuristic.classify(ticket)
        assert result.priority == "Low"
        assert result.urgency == "Normal"

    def test_unmatched(self, heuristic: KeywordClassifier):
        """Test unmatched tickets fall back to Other / General Inquiry."""
        result = heuristic.classify(Ticket(key="T-7", summary="Question about lunch"))
        assert result.category == "Other"
        assert result.sub_category == "General Inquiry"
        assert result.confidence == 40


# =============================================================================
# ClassificationChain Tests
# =============================================================================

class TestClassificationChain:
    """Tests for the LLM → keyword → default chain."""

    def test_llm_success(self, classifier, metrics, sample_ticket):
        """Test an LLM answer is returned and counted as a success."""
        chain = ClassificationChain(metrics, llm_classifier=classifier)

        result = chain.classify(sample_ticket)

        assert result.source == "llm"
        snapshot = metrics.get_metrics()
        assert snapshot.llm_calls.successful == 1
        assert snapshot.confidence_scores.sum == 85
        assert snapshot.fallback_usage.total == 0

    def test_network_error_falls_back_to_keywords(self, classifier, openai_client, metrics, sample_ticket):
        """Test a network error yields a keyword result and a recorded reason."""
        openai_client.chat.completions.create.side_effect = connection_error()
        chain = ClassificationChain(metrics, llm_classifier=classifier)

        result = chain.classify(sample_ticket)

        assert result.source == "keyword-fallback"
        assert result.sub_category == "VPN"
        snapshot = metrics.get_metrics()
        assert snapshot.llm_calls.failed == 1
        assert snapshot.fallback_usage.reasons == {"network-error": 1}

    def test_invalid_json_reason(self, classifier, openai_client, metrics, sample_ticket):
        """Test unparsable output is recorded as invalid-json."""
        openai_client.chat.completions.create.return_value = completion("not json")
        chain = ClassificationChain(metrics, llm_classifier=classifier)

        assert chain.classify(sample_ticket).source == "keyword-fallback"
        assert metrics.get_metrics().fallback_usage.reasons == {"invalid-json": 1}

    def test_unexpected_llm_exception(self, metrics, sample_ticket):
        """Test any LLM exception is downgraded with the llm-error reason."""
        llm = Mock()
        llm.classify.side_effect = RuntimeError("boom")
        chain = ClassificationChain(metrics, llm_classifier=llm)

        assert chain.classify(sample_ticket).source == "keyword-fallback"
        assert metrics.get_metrics().fallback_usage.reasons == {"llm-error": 1}

    def test_no_llm_configured(self, metrics, sample_ticket):
        """Test a missing LLM goes straight to the heuristic."""
        chain = ClassificationChain(metrics)

        result = chain.classify(sample_ticket)

        assert result.source == "keyword-fallback"
        assert metrics.get_metrics().fallback_usage.reasons == {"llm-unavailable": 1}

    def test_both_stages_fail(self, metrics, sample_ticket):
        """Test the static default when LLM and heuristic both fail."""
        llm = Mock()
        llm.classify.side_effect = ClassificationError("down", "timeout")
        keywords = Mock()
        keywords.classify.side_effect = RuntimeError("broken table")
        chain = ClassificationChain(metrics, llm_classifier=llm, keyword_classifier=keywords)

        result = chain.classify(sample_ticket)

        assert result.source == "default"
        assert result.confidence == 0
        assert result.category == "Uncategorized"
        assert result.sub_category == "General"
        assert result.priority == "Medium"
        assert result.urgency == "Normal"
        assert result.reasoning == "manual triage required"

    def test_heuristic_disabled(self, metrics, sample_ticket):
        """Test disabling the heuristic yields the static default."""
        chain = ClassificationChain(metrics, keyword_fallback_enabled=False)
        assert chain.classify(sample_ticket) == DEFAULT_CLASSIFICATION

    def test_never_raises(self, metrics):
        """Test the chain tolerates an almost empty ticket."""
        chain = ClassificationChain(metrics)
        result = chain.classify(Ticket(key="T-0"))
        assert isinstance(result, Classification)
