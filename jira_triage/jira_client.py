"""
Jira REST API v3 client for the Jira Triage Assistant.

Responsible for every call to the ticket store:
- issue fetch, search and count
- issue update, assignment and comments
- assignable user lookup
"""

import logging
from typing import Any, Optional

import httpx

from .config import JiraConfig
from .errors import (
    MalformedUpstreamResponseError,
    NotFoundError,
    UpstreamUnavailableError,
)
from .models import Agent, Ticket


logger = logging.getLogger(__name__)


ISSUE_FIELDS = [
    "summary",
    "description",
    "reporter",
    "assignee",
    "created",
    "priority",
    "status",
    "labels",
    "project",
]


def _error_detail(response: httpx.Response) -> str:
    """Extract Jira's error messages from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]

    if not isinstance(data, dict):
        return str(data)[:200]

    messages = list(data.get("errorMessages") or [])
    messages.extend(f"{k}: {v}" for k, v in (data.get("errors") or {}).items())
    return "; ".join(messages) or f"HTTP {response.status_code}"


def comment_body(text: str) -> dict:
    """Wrap plain text (one paragraph per line) in an ADF document."""
    paragraphs = [
        {"type": "paragraph", "content": [{"type": "text", "text": line}]}
        if line else {"type": "paragraph", "content": []}
        for line in text.split("\n")
    ]
    return {"type": "doc", "version": 1, "content": paragraphs}


class JiraClient:
    """
    Client for the Jira Cloud REST API v3.

    Authenticates with an account email and API token (basic auth).
    Must be used as a context manager so the HTTP connection pool is
    closed deterministically.
    """

    def __init__(self, config: JiraConfig):
        """
        Initialize the Jira client.

        Args:
            config: Jira configuration with base URL and credentials.
        """
        self._config = config
        self._client: Optional[httpx.Client] = None

    def __enter__(self) -> "JiraClient":
        """Context manager entry."""
        self._client = httpx.Client(
            base_url=self._config.base_url.rstrip("/"),
            auth=(self._config.email, self._config.api_token),
            timeout=self._config.request_timeout,
            headers={"Accept": "application/json"},
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        if self._client:
            self._client.close()
            self._client = None

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[Any] = None,
        not_found: Optional[str] = None,
    ) -> Any:
        """
        Perform a request and return the decoded JSON body (None for 204).

        Raises:
            NotFoundError: On 404 when ``not_found`` describes the resource.
            UpstreamUnavailableError: On transport errors and non-OK status.
            MalformedUpstreamResponseError: If the body is not JSON.
        """
        if not self._client:
            raise RuntimeError("Client must be used within a context manager")

        try:
            response = self._client.request(method, path, params=params, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            if status == 404 and not_found:
                raise NotFoundError(f"{not_found} not found: {detail}") from e
            logger.error(f"Jira {method} {path} failed with HTTP {status}: {detail}")
            raise UpstreamUnavailableError(f"HTTP {status}: {detail}", status_code=status) from e
        except httpx.RequestError as e:
            logger.error(f"Request error calling Jira {method} {path}: {e}")
            raise UpstreamUnavailableError(f"Request failed: {str(e)}") from e

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise MalformedUpstreamResponseError(
                f"Jira {method} {path} returned non-JSON body"
            ) from e

    def get_issue(self, issue_key: str, fields: Optional[list[str]] = None) -> Ticket:
        """
        Fetch a single issue.

        Args:
            issue_key: Issue key (e.g. "HELP-123") or id.
            fields: Fields to retrieve (defaults to the triage fields).

        Returns:
            Immutable Ticket snapshot.

        Raises:
            NotFoundError: If the issue does not exist or is not visible.
        """
        logger.debug(f"Fetching issue {issue_key}")
        data = self._request(
            "GET",
            f"/rest/api/3/issue/{issue_key}",
            params={"fields": ",".join(fields or ISSUE_FIELDS)},
            not_found=f"Issue {issue_key}",
        )
        if not isinstance(data, dict):
            raise MalformedUpstreamResponseError(f"Unexpected payload for issue {issue_key}")
        return Ticket.from_jira(data)

    def search_issues(
        self,
        jql: str,
        max_results: int = 50,
        fields: Optional[list[str]] = None,
        next_page_token: Optional[str] = None,
    ) -> list[dict]:
        """
        Search issues with JQL.

        Uses the enhanced search endpoint, which pages with
        ``nextPageToken`` rather than ``startAt``.

        Args:
            jql: JQL query.
            max_results: Page size.
            fields: Fields to return (defaults to summary only).
            next_page_token: Token from a previous page, if any.

        Returns:
            Raw issue payloads in the order Jira returned them.
        """
        payload = {
            "jql": jql,
            "maxResults": max_results,
            "fields": fields or ["summary"],
        }
        if next_page_token:
            payload["nextPageToken"] = next_page_token
        data = self._request("POST", "/rest/api/3/search/jql", json=payload)
        issues = (data or {}).get("issues") or []
        logger.debug(f"JQL search returned {len(issues)} issue(s): {jql}")
        return issues

    def search_tickets(
        self,
        jql: str,
        max_results: int = 50,
        next_page_token: Optional[str] = None,
    ) -> list[Ticket]:
        """Search issues with JQL and return Ticket snapshots."""
        issues = self.search_issues(
            jql, max_results=max_results, fields=ISSUE_FIELDS, next_page_token=next_page_token
        )
        return [Ticket.from_jira(issue) for issue in issues]

    def count_issues(self, jql: str, max_results: int = 100) -> int:
        """Count issues matching JQL, capped at ``max_results``."""
        return len(self.search_issues(jql, max_results=max_results, fields=["key"]))

    def update_issue(self, issue_key: str, fields: dict) -> None:
        """Update issue fields."""
        logger.info(f"Updating {issue_key}: {sorted(fields)}")
        self._request(
            "PUT",
            f"/rest/api/3/issue/{issue_key}",
            json={"fields": fields},
            not_found=f"Issue {issue_key}",
        )

    def assign_issue(self, issue_key: str, account_id: str) -> None:
        """Assign an issue to a user."""
        logger.info(f"Assigning {issue_key} to {account_id}")
        self._request(
            "PUT",
            f"/rest/api/3/issue/{issue_key}/assignee",
            json={"accountId": account_id},
            not_found=f"Issue {issue_key}",
        )

    def add_comment(self, issue_key: str, text: str) -> None:
        """Add a plain-text comment to an issue."""
        logger.info(f"Adding comment to {issue_key}")
        self._request(
            "POST",
            f"/rest/api/3/issue/{issue_key}/comment",
            json={"body": comment_body(text)},
            not_found=f"Issue {issue_key}",
        )

    def get_assignable_users(self, project_key: str, max_results: int = 50) -> list[Agent]:
        """
        List users who can be assigned issues in a project.

        Raises:
            NotFoundError: If the project does not exist.
        """
        data = self._request(
            "GET",
            "/rest/api/3/user/assignable/search",
            params={"project": project_key, "maxResults": max_results},
            not_found=f"Project {project_key}",
        )
        users = data if isinstance(data, list) else []
        logger.debug(f"Found {len(users)} assignable user(s) in {project_key}")
        return [Agent.from_jira(user) for user in users]
