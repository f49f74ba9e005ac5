"""Sprint membership classification: committed, added and removed tickets."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from sprint_engine.config import DEFAULT_WIP_STATUSES
from sprint_engine.dates import parse_number, round2, start_of_day
from sprint_engine.models import IssueChangelog, SprintWindow, Ticket

logger = logging.getLogger(__name__)


@dataclass
class SprintCommitBuckets:
    committed: list = field(default_factory=list)
    added: list = field(default_factory=list)
    removed: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "committedAtStart": [t.to_dict() for t in self.committed],
            "addedDuring": [t.to_dict() for t in self.added],
            "removedDuring": [t.to_dict() for t in self.removed],
        }


def points_done_before_sprint(changelog: IssueChangelog, story_points: float,
                              sprint_start: datetime,
                              wip_statuses=DEFAULT_WIP_STATUSES) -> float:
    """Story points already delivered when the sprint started.

    Only counts when the ticket was in a work-in-progress (or later) status
    at sprint start; the highest progress reached strictly before the start
    is then applied to the story points.
    """
    status = changelog.status_at(sprint_start)
    if status is None or status.upper() not in wip_statuses:
        return 0.0

    max_progress = 0.0
    for event in changelog.progress_events:
        if event.timestamp >= sprint_start:
            continue
        value = parse_number(event.to_value)
        if value is not None and value > max_progress:
            max_progress = value

    max_progress = min(max_progress, 100.0)
    return round2(story_points * (max_progress / 100.0))


@dataclass
class _MembershipChange:
    when: datetime
    from_contains: bool
    to_contains: bool


class SprintMembershipClassifier:
    """Classifies tickets against one sprint using their sprint-field history."""

    def __init__(self, wip_statuses=DEFAULT_WIP_STATUSES):
        self.wip_statuses = frozenset(s.upper() for s in wip_statuses)

    def classify(self, tickets: Iterable[Ticket], window: SprintWindow,
                 changelog_for: Callable[[str], Optional[IssueChangelog]]) -> SprintCommitBuckets:
        """Sort tickets into committed / added / removed buckets.

        Args:
            tickets: Candidate tickets
            window: Sprint being analysed (start and end must be set)
            changelog_for: Returns a ticket's changelog, or None when it
                could not be loaded (the ticket is then classified from
                its current fields only)

        Returns:
            SprintCommitBuckets; a ticket is in at most one of committed and
            added, and may also be in removed
        """
        buckets = SprintCommitBuckets()
        sprint_id = str(window.id)

        for ticket in tickets:
            changelog = changelog_for(ticket.key)
            if changelog is None:
                logger.warning(f"No changelog for {ticket.key}, classifying from current fields")
                changelog = IssueChangelog.empty(ticket.key)

            self.annotate(ticket, changelog, window)

            changes = self._relevant_changes(changelog, sprint_id)
            if not changes:
                self._fallback(ticket, sprint_id, window, buckets)
                continue

            in_sprint_at_start = False
            first_add = None
            first_remove = None

            for change in changes:
                if change.when > window.end:
                    break

                if change.when <= window.start:
                    in_sprint_at_start = change.to_contains
                else:
                    if not change.from_contains and change.to_contains and first_add is None:
                        first_add = change.when
                    if change.from_contains and not change.to_contains and first_remove is None:
                        first_remove = change.when

            if in_sprint_at_start:
                buckets.committed.append(ticket)
            elif first_add is not None:
                buckets.added.append(ticket)
            else:
                self._fallback(ticket, sprint_id, window, buckets)

            if first_remove is not None:
                buckets.removed.append(ticket)

        logger.info(
            f"Sprint {sprint_id}: {len(buckets.committed)} committed, "
            f"{len(buckets.added)} added, {len(buckets.removed)} removed"
        )
        return buckets

    def annotate(self, ticket: Ticket, changelog: IssueChangelog, window: SprintWindow):
        """Fill the ticket's pre-sprint points and its status at sprint end."""
        if ticket.story_points is None:
            ticket.story_points = 0.0
        ticket.points_done_before_sprint = points_done_before_sprint(
            changelog, ticket.story_points, window.start, self.wip_statuses
        )
        if changelog.has_status_history:
            ticket.status = changelog.status_at(window.end)

    @staticmethod
    def _relevant_changes(changelog: IssueChangelog, sprint_id: str) -> list:
        changes = []
        for event in changelog.membership_events:
            from_contains = event.from_contains(sprint_id)
            to_contains = event.to_contains(sprint_id)
            # Skips both "unrelated" and "still in the sprint" transitions
            if from_contains == to_contains:
                continue
            changes.append(_MembershipChange(event.timestamp, from_contains, to_contains))

        changes.sort(key=lambda c: c.when)
        return changes

    @staticmethod
    def _fallback(ticket: Ticket, sprint_id: str, window: SprintWindow,
                  buckets: SprintCommitBuckets):
        """Classify from current sprint ids and creation date."""
        if sprint_id not in {str(s) for s in ticket.sprint_ids}:
            return
        if ticket.created is not None:
            created = start_of_day(ticket.created, window.start.tzinfo)
            if created > window.start:
                buckets.added.append(ticket)
                return
        buckets.committed.append(ticket)
