"""Jira REST client: issue history pages, JQL searches and sprint lookups."""

import logging
import time
from datetime import datetime
from typing import Iterable, Optional

import requests

from sprint_engine.config import EngineSettings
from sprint_engine.dates import parse_number, parse_optional_timestamp
from sprint_engine.errors import ChangelogError, TransportFailure, UnknownSprintError
from sprint_engine.models import Ticket

logger = logging.getLogger(__name__)

SEARCH_JQL_API = "/rest/api/3/search/jql"
CHANGELOG_API = "/rest/api/3/issue/{key}/changelog"
SPRINT_API = "/rest/agile/1.0/sprint/{id}"
BOARD_SPRINTS_API = "/rest/agile/1.0/board/{id}/sprint"

UNASSIGNED = "Non assigné"
RETRYABLE_STATUS = {429, 500, 502, 503, 504}
BASE_BACKOFF_SECONDS = 0.2


def _quote(value) -> str:
    return '"' + str(value).replace('"', '\\"') + '"'


class JqlBuilder:
    """Composes a JQL query from AND-ed clauses.

    Example:
        JqlBuilder().project("SAG").sprint_equals(42).order_by("Rank ASC").build()
    """

    def __init__(self):
        self._clauses = []
        self._order_by = None

    def project(self, key: str) -> "JqlBuilder":
        self._clauses.append(f"project = {key}")
        return self

    def sprint_equals(self, sprint_id) -> "JqlBuilder":
        self._clauses.append(f"sprint = {sprint_id}")
        return self

    def issuetype_in(self, types: Iterable[str]) -> "JqlBuilder":
        types = list(types)
        if types:
            self._clauses.append(f"issuetype IN ({', '.join(_quote(t) for t in types)})")
        return self

    def status_in(self, statuses: Iterable[str]) -> "JqlBuilder":
        statuses = list(statuses)
        if statuses:
            self._clauses.append(f"status IN ({', '.join(_quote(s) for s in statuses)})")
        return self

    def assignee_not_in_or_empty(self, accounts: Iterable[str]) -> "JqlBuilder":
        accounts = list(accounts)
        if accounts:
            self._clauses.append(f"(assignee NOT IN ({', '.join(accounts)}) OR assignee IS EMPTY)")
        return self

    def updated_between(self, start: datetime, end_exclusive: datetime) -> "JqlBuilder":
        fmt = "%Y-%m-%d %H:%M"
        self._clauses.append(
            f'updated >= "{start.strftime(fmt)}" AND updated < "{end_exclusive.strftime(fmt)}"'
        )
        return self

    def raw(self, clause: str) -> "JqlBuilder":
        self._clauses.append(clause)
        return self

    def order_by(self, clause: str) -> "JqlBuilder":
        self._order_by = clause
        return self

    def build(self) -> str:
        jql = " AND ".join(self._clauses)
        if self._order_by:
            jql = f"{jql} ORDER BY {self._order_by}".strip()
        return jql


class JiraHistoryGateway:
    """Authenticated access to the Jira endpoints the engine needs.

    Requests answered with 429 or a 5xx status, and connection errors, are
    retried with the server's Retry-After delay or an exponential backoff.
    """

    def __init__(self, server: str, email: str, token: str, settings: EngineSettings = None,
                 session: requests.Session = None, sleep=time.sleep):
        self.server = server.rstrip("/")
        self.settings = settings or EngineSettings()
        self.session = session or requests.Session()
        self.session.auth = (email, token)
        self.session.headers.update({"Accept": "application/json"})
        self._sleep = sleep

    def _backoff(self, attempt: int, response=None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return max(0.0, float(retry_after))
                except ValueError:
                    pass
        return BASE_BACKOFF_SECONDS * (2 ** attempt)

    def _request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Send a request and return its JSON body.

        Raises:
            TransportFailure: on a non-retryable error status, or once every
                attempt has failed
        """
        url = f"{self.server}{endpoint}"
        attempts = max(1, self.settings.max_attempts)
        last_error = None

        for attempt in range(attempts):
            try:
                response = self.session.request(
                    method, url, timeout=self.settings.request_timeout, **kwargs
                )
            except requests.exceptions.RequestException as e:
                last_error = TransportFailure(f"Failed to connect to Jira: {e}")
                logger.warning(f"{method} {endpoint} attempt {attempt + 1}/{attempts} failed: {e}")
                if attempt + 1 < attempts:
                    self._sleep(self._backoff(attempt))
                continue

            if response.status_code in RETRYABLE_STATUS:
                last_error = TransportFailure(
                    f"Jira API error: {response.status_code}", response.status_code
                )
                logger.warning(
                    f"{method} {endpoint} returned {response.status_code} "
                    f"(attempt {attempt + 1}/{attempts})"
                )
                if attempt + 1 < attempts:
                    self._sleep(self._backoff(attempt, response))
                continue

            if response.status_code >= 400:
                raise TransportFailure(f"Jira API error: {response.status_code}", response.status_code)

            try:
                return response.json()
            except ValueError as e:
                raise TransportFailure(f"Invalid JSON from Jira for {endpoint}") from e

        raise last_error

    def fetch_changelog_page(self, issue_key: str, offset: int, page_size: int) -> tuple:
        """Fetch one page of an issue's history.

        Returns:
            (list of raw history entries, total entry count)
        """
        data = self._request(
            "GET", CHANGELOG_API.format(key=issue_key),
            params={"startAt": offset, "maxResults": page_size},
        )
        if not isinstance(data, dict) or not isinstance(data.get("values") or [], list):
            raise ChangelogError(issue_key, f"unexpected changelog page: {data!r}")
        return data.get("values") or [], data.get("total", 0)

    def search_issues(self, jql: str, page_token: Optional[str] = None, fields: list = None) -> dict:
        """Run one page of a JQL search."""
        body = {
            "jql": jql,
            "maxResults": self.settings.search_page_size,
            "fields": fields or self.ticket_fields(),
        }
        if page_token:
            body["nextPageToken"] = page_token
        return self._request("POST", SEARCH_JQL_API, json=body)

    def search_tickets(self, jql: str) -> list:
        """Run a JQL search across every page and decode the issues."""
        logger.info(f"Executing JQL: {jql}")
        tickets = []
        page_token = None

        while True:
            data = self.search_issues(jql, page_token)
            tickets.extend(self.parse_ticket(issue) for issue in data.get("issues", []))
            page_token = data.get("nextPageToken")
            if data.get("isLast", True) or not page_token:
                break

        logger.info(f"JQL returned {len(tickets)} tickets")
        return tickets

    def get_sprint(self, sprint_id) -> dict:
        """Fetch a sprint's raw agile payload.

        Raises:
            UnknownSprintError: if Jira has no such sprint
        """
        try:
            return self._request("GET", SPRINT_API.format(id=sprint_id))
        except TransportFailure as e:
            if e.status_code == 404:
                raise UnknownSprintError(sprint_id) from e
            raise

    def get_board_sprints(self, board_id, state: str = "active") -> list:
        data = self._request(
            "GET", BOARD_SPRINTS_API.format(id=board_id),
            params={"state": state, "maxResults": 50},
        )
        return data.get("values", [])

    def get_all_board_sprints(self, board_id, states: str = "closed,active,future") -> list:
        """Every sprint of a board in the given states, across all pages."""
        sprints = []
        start_at = 0
        page_size = self.settings.search_page_size

        while True:
            data = self._request(
                "GET", BOARD_SPRINTS_API.format(id=board_id),
                params={"state": states, "startAt": start_at, "maxResults": page_size},
            )
            values = data.get("values", [])
            sprints.extend(values)
            if data.get("isLast", len(values) < page_size) or not values:
                break
            start_at += len(values)

        logger.info(f"Board {board_id} has {len(sprints)} sprints")
        return sprints

    def ticket_fields(self) -> list:
        s = self.settings
        return [
            "summary", "issuetype", "assignee", "status", "created",
            s.story_points_field, s.progress_field, s.sprint_field,
        ]

    def parse_ticket(self, issue: dict) -> Ticket:
        """Decode a search result issue into a Ticket."""
        s = self.settings
        fields = issue.get("fields") or {}
        assignee = fields.get("assignee") or {}

        sprint_ids = set()
        for sprint in fields.get(s.sprint_field) or []:
            if isinstance(sprint, dict):
                if sprint.get("id") is not None:
                    sprint_ids.add(str(sprint["id"]))
            else:
                sprint_ids.add(str(sprint))

        created = parse_optional_timestamp(fields.get("created"), s.tz)

        return Ticket(
            key=issue["key"],
            summary=fields.get("summary") or "",
            issue_type=(fields.get("issuetype") or {}).get("name"),
            assignee=assignee.get("displayName") or UNASSIGNED,
            status=(fields.get("status") or {}).get("name"),
            story_points=parse_number(fields.get(s.story_points_field)),
            progress=parse_number(fields.get(s.progress_field)),
            sprint_ids=sprint_ids,
            created=created.astimezone(s.tz).date() if created else None,
            url=f"{self.server}/browse/{issue['key']}",
        )
