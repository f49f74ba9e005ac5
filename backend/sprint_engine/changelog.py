"""Rebuild an issue's changelog from paginated Jira history pages."""

import logging
from typing import Iterable

from sprint_engine.dates import parse_jira_timestamp
from sprint_engine.errors import ChangelogError, MalformedTimestamp, TransportFailure
from sprint_engine.models import (
    IssueChangelog,
    ProgressChange,
    SprintMembershipChange,
    StatusChange,
)

logger = logging.getLogger(__name__)

STATUS_FIELD = "status"
PROGRESS_FIELD = "avancement"
SPRINT_FIELD = "sprint"


def decode_history_entry(entry: dict, tz) -> list:
    """Decode one raw history entry into typed change events.

    Fields other than status, progress and sprint are dropped.

    Raises:
        MalformedTimestamp: if the entry's creation timestamp is unreadable.
    """
    raw_created = entry.get("created")
    created = parse_jira_timestamp(raw_created, tz)

    events = []
    for item in entry.get("items") or []:
        field_name = (item.get("field") or "").lower()
        if field_name == STATUS_FIELD:
            events.append(StatusChange(
                created, raw_created, item.get("fromString"), item.get("toString")
            ))
        elif field_name == PROGRESS_FIELD:
            events.append(ProgressChange(
                created, raw_created, item.get("fromString"), item.get("toString")
            ))
        elif field_name == SPRINT_FIELD:
            # Sprint changes carry ids in from/to, names in fromString/toString
            events.append(SprintMembershipChange(
                created, raw_created, item.get("from"), item.get("to")
            ))
    return events


class ChangelogReconstructor:
    """Turns raw history pages into an IssueChangelog.

    Status changes go into a time-indexed timeline, progress changes are
    de-duplicated by raw timestamp (the later page wins) and sprint
    membership changes are kept as an append-only log.
    """

    def __init__(self, gateway=None, tz=None, page_size: int = 100, limiter=None):
        self.gateway = gateway
        self.tz = tz
        self.page_size = page_size
        self.limiter = limiter

    def build(self, issue_key: str, pages: Iterable[list]) -> IssueChangelog:
        """Reconstruct a changelog from already-fetched pages.

        Args:
            issue_key: Issue the pages belong to (used in error messages)
            pages: History pages in fetch order, each a list of raw entries

        Returns:
            IssueChangelog with progress events sorted by time

        Raises:
            ChangelogError: if any entry cannot be decoded
        """
        progress_by_ts = {}
        status_events = []
        membership_events = []

        for page in pages:
            for entry in page:
                try:
                    events = decode_history_entry(entry, self.tz)
                except MalformedTimestamp as e:
                    raise ChangelogError(issue_key, str(e)) from e
                except (AttributeError, TypeError) as e:
                    raise ChangelogError(issue_key, f"unreadable history entry {entry!r}") from e

                for event in events:
                    if isinstance(event, StatusChange):
                        status_events.append(event)
                    elif isinstance(event, ProgressChange):
                        progress_by_ts[event.raw_timestamp] = event
                    else:
                        membership_events.append(event)

        progress_events = sorted(progress_by_ts.values(), key=lambda e: e.timestamp)
        return IssueChangelog(issue_key, progress_events, status_events, membership_events)

    def iter_pages(self, issue_key: str):
        """Yield raw history pages until the declared total is reached."""
        fetched = 0
        while True:
            if self.limiter is not None:
                self.limiter.acquire()
            items, total = self.gateway.fetch_changelog_page(issue_key, fetched, self.page_size)
            if not items:
                break
            fetched += len(items)
            yield items
            if fetched >= (total or 0):
                break

    def load(self, issue_key: str) -> IssueChangelog:
        """Fetch every history page of an issue and rebuild its changelog.

        Raises:
            ChangelogError: on a page that cannot be decoded
            TransportFailure: when the gateway gives up on a page
        """
        if self.gateway is None:
            raise ChangelogError(issue_key, "no history gateway configured")

        try:
            changelog = self.build(issue_key, self.iter_pages(issue_key))
        except TransportFailure:
            logger.warning(f"Changelog fetch failed for {issue_key}")
            raise

        logger.debug(f"Rebuilt changelog for {issue_key}: {changelog!r}")
        return changelog
