"""
Configuration module for the Jira Triage Assistant.

Handles all configuration through environment variables with secure defaults.
Never stores sensitive data directly in code.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class JiraConfig:
    """Configuration for the Jira Cloud REST API."""

    base_url: str = field(
        default_factory=lambda: os.getenv("JIRA_BASE_URL", "")
    )
    email: str = field(
        default_factory=lambda: os.getenv("JIRA_EMAIL", "")
    )
    api_token: str = field(
        default_factory=lambda: os.getenv("JIRA_API_TOKEN", "")
    )

    # Request timeout in seconds
    request_timeout: int = field(
        default_factory=lambda: int(os.getenv("JIRA_REQUEST_TIMEOUT", "30"))
    )


@dataclass(frozen=True)
class LLMConfig:
    """Configuration for LLM API (OpenAI compatible)."""

    api_key: str = field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY", "")
    )
    api_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_API_BASE", None)
    )
    model: str = field(
        default_factory=lambda: os.getenv("LLM_MODEL", "gpt-4o-mini")
    )
    temperature: float = field(
        default_factory=lambda: float(os.getenv("LLM_TEMPERATURE", "0.3"))
    )
    max_tokens: int = field(
        default_factory=lambda: int(os.getenv("LLM_MAX_TOKENS", "500"))
    )
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("LLM_MAX_RETRIES", "3"))
    )
    # Per-attempt timeout in seconds; timed-out attempts are retried up to max_retries times
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("LLM_REQUEST_TIMEOUT", "30"))
    )

    @property
    def is_configured(self) -> bool:
        """Check if an API key is available."""
        return bool(self.api_key)


@dataclass(frozen=True)
class TriageConfig:
    """Tuning knobs for keyword search, similarity and workload ranking."""

    # Keyword extraction (tokens must be strictly longer than this)
    min_keyword_length: int = field(
        default_factory=lambda: int(os.getenv("MIN_KEYWORD_LENGTH", "3"))
    )
    max_search_keywords: int = field(
        default_factory=lambda: int(os.getenv("MAX_SEARCH_KEYWORDS", "5"))
    )

    # Similar ticket search
    max_similar_tickets: int = field(
        default_factory=lambda: int(os.getenv("MAX_SIMILAR_TICKETS", "3"))
    )
    similar_search_limit: int = field(
        default_factory=lambda: int(os.getenv("SIMILAR_SEARCH_LIMIT", "10"))
    )
    description_truncate_length: int = field(
        default_factory=lambda: int(os.getenv("DESCRIPTION_TRUNCATE_LENGTH", "200"))
    )

    # Workload ranking
    assignable_users_limit: int = field(
        default_factory=lambda: int(os.getenv("ASSIGNABLE_USERS_LIMIT", "50"))
    )
    workload_max_results: int = field(
        default_factory=lambda: int(os.getenv("WORKLOAD_MAX_RESULTS", "100"))
    )
    workload_max_workers: int = field(
        default_factory=lambda: int(os.getenv("WORKLOAD_MAX_WORKERS", "4"))
    )

    # Classification fallback chain
    keyword_fallback_enabled: bool = field(
        default_factory=lambda: _env_bool("KEYWORD_FALLBACK_ENABLED", "true")
    )

    # Metrics summary interval in seconds
    metrics_log_interval: float = field(
        default_factory=lambda: float(os.getenv("METRICS_LOG_INTERVAL", "3600"))
    )

    # Key-value settings file (auto-triage toggle)
    settings_path: Path = field(
        default_factory=lambda: Path(os.getenv("SETTINGS_PATH", "./triage_settings.yaml"))
    )


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration aggregating all config sections."""

    jira: JiraConfig = field(default_factory=JiraConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    triage: TriageConfig = field(default_factory=TriageConfig)

    # Logging level
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        The LLM key is optional: without it every classification goes
        through the keyword heuristic.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        # Validate Jira connection
        if not self.jira.base_url:
            errors.append("JIRA_BASE_URL is required")
        if not self.jira.email:
            errors.append("JIRA_EMAIL is required")
        if not self.jira.api_token:
            errors.append("JIRA_API_TOKEN is required")
        if self.jira.request_timeout <= 0:
            errors.append("JIRA_REQUEST_TIMEOUT must be positive")

        # Validate LLM tuning
        if not 0.0 <= self.llm.temperature <= 2.0:
            errors.append("LLM_TEMPERATURE must be between 0 and 2")
        if self.llm.max_retries < 1:
            errors.append("LLM_MAX_RETRIES must be at least 1")

        # Validate triage tuning
        if self.triage.max_search_keywords < 1:
            errors.append("MAX_SEARCH_KEYWORDS must be at least 1")
        if self.triage.max_similar_tickets < 1:
            errors.append("MAX_SIMILAR_TICKETS must be at least 1")
        if self.triage.workload_max_workers < 1:
            errors.append("WORKLOAD_MAX_WORKERS must be at least 1")

        return errors


def get_config() -> AppConfig:
    """
    Get application configuration.

    Returns:
        AppConfig instance with all settings loaded from environment.
    """
    return AppConfig()
