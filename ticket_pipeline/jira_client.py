"""JIRA API client for ingestion."""

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

import requests
import structlog
from requests.auth import HTTPBasicAuth

from .config import TrackerConfig
from .errors import ExternalServiceError
from .models import SyncOptions

logger = structlog.get_logger()

RETRYABLE_STATUS = {429, 502, 503, 504}


class JiraClient:
    """JIRA API client with authentication, retries and back-off."""

    def __init__(
        self,
        config: TrackerConfig,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize JIRA client."""
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.session = requests.Session()
        self.session.auth = HTTPBasicAuth(config.username, config.api_token)
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make HTTP request to JIRA API with bounded retries."""
        url = f"{self.base_url}/rest/api/{self.config.api_version}/{endpoint.lstrip('/')}"
        last_error: ExternalServiceError | None = None

        for attempt in range(self.max_retries):
            wait_time = self.retry_delay * 2**attempt
            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params,
                    timeout=self.config.timeout_seconds,
                )
            except requests.exceptions.RequestException as e:
                last_error = ExternalServiceError(f"Request to JIRA failed: {e}", retryable=True)
                logger.warning(
                    "Request failed, retrying",
                    error=str(e),
                    attempt=attempt + 1,
                    wait_time=wait_time,
                )
            else:
                if response.ok:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        logger.error(
                            "JIRA returned a non-JSON body",
                            status_code=response.status_code,
                            content_type=response.headers.get("Content-Type"),
                            url=url,
                        )
                        raise ExternalServiceError(
                            f"Invalid JSON in JIRA response: {e}", status_code=response.status_code
                        ) from e

                status = response.status_code
                if status == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    wait_time = max(wait_time, retry_after or 0)
                    last_error = ExternalServiceError(
                        "JIRA API rate limit exceeded", status_code=429, retryable=True, retry_after=retry_after
                    )
                    logger.warning("Rate limited, waiting", retry_after=wait_time, attempt=attempt + 1)
                elif status in RETRYABLE_STATUS or status >= 500:
                    last_error = ExternalServiceError(
                        f"JIRA server error: {status}", status_code=status, retryable=True
                    )
                    logger.warning("JIRA server error, retrying", status_code=status, attempt=attempt + 1)
                else:
                    logger.error(
                        "JIRA API request failed",
                        status_code=status,
                        response_text=response.text[:500],
                        url=url,
                    )
                    raise ExternalServiceError(_describe_status(status, response.text), status_code=status)

            if attempt < self.max_retries - 1:
                self._sleep(wait_time)

        if last_error is None:
            raise ExternalServiceError(f"No request made to JIRA: max_retries is {self.max_retries}")
        raise ExternalServiceError(
            f"Request failed after {self.max_retries} attempts: {last_error}",
            status_code=last_error.status_code,
            retryable=False,
            retry_after=last_error.retry_after,
        ) from last_error

    def get_fields(self) -> list[dict[str, Any]]:
        """Get the full field catalog, including custom fields."""
        logger.info("Fetching JIRA field catalog")
        data = self._make_request("GET", "field")
        return data if isinstance(data, list) else []

    def get_projects(self) -> list[dict[str, Any]]:
        """Get all projects visible to the configured account."""
        logger.info("Fetching visible JIRA projects")
        data = self._make_request("GET", "project")
        if not isinstance(data, list):
            return []
        return [
            {"key": p["key"], "name": p.get("name", p["key"]), "id": p.get("id")}
            for p in data
            if isinstance(p, dict) and p.get("key")
        ]

    def test_connection(self) -> dict[str, Any]:
        """Return the authenticated user, raising on bad credentials."""
        return self._make_request("GET", "myself")

    def search_page(
        self,
        jql: str,
        start_at: int = 0,
        max_results: int = 100,
        fields: list[str] | None = None,
    ) -> dict[str, Any]:
        """Fetch one page of search results."""
        logger.debug("Searching JIRA issues", jql=jql, start_at=start_at, max_results=max_results)

        data = self._make_request(
            "POST",
            "search",
            data={
                "jql": jql,
                "startAt": start_at,
                "maxResults": max_results,
                "fields": fields or ["*all"],
            },
        )

        return {
            "issues": data.get("issues", []),
            "total": data.get("total", 0),
            "startAt": data.get("startAt", start_at),
        }


def build_jql(project_key: str, options: SyncOptions, default_excluded_types: list[str] | None = None) -> str:
    """Build the search query for one project."""
    parts = [f'project = "{project_key}"']

    if options.updated_since:
        parts.append(f'updated >= "{_jql_date(options.updated_since)}"')

    if options.custom_jql:
        parts.append(f"({options.custom_jql})")

    excluded_types = options.excluded_types
    if excluded_types is None:
        excluded_types = default_excluded_types if default_excluded_types is not None else ["Sub-task"]
    if excluded_types:
        quoted = ", ".join(f'"{t}"' for t in excluded_types)
        parts.append(f"issuetype NOT IN ({quoted})")

    return " AND ".join(parts)


def _jql_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None


def _describe_status(status: int, text: str) -> str:
    if status == 401:
        return "Authentication failed. Check the JIRA username and API token."
    if status == 403:
        return "Permission denied. The JIRA account may not have access to this resource."
    if status == 404:
        return "Resource not found on JIRA."
    if status == 400:
        return f"Invalid request to JIRA API: {text[:200]}"
    return f"JIRA API error: {status}"
