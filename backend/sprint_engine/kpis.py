"""Sprint KPIs computed from commitment buckets."""

from collections import defaultdict
from typing import Iterable

from sprint_engine.classifier import SprintCommitBuckets
from sprint_engine.config import DEFAULT_DONE_STATUSES
from sprint_engine.dates import round2


def _percentage(part: int, whole: int) -> float:
    return 100.0 * part / whole if whole > 0 else 0


class KpiAggregator:
    """Reduces classification buckets to counts, rates and points."""

    def __init__(self, done_statuses=DEFAULT_DONE_STATUSES):
        self.done_statuses = frozenset(s.upper() for s in done_statuses)

    def is_done(self, ticket) -> bool:
        return ticket.status is not None and ticket.status.upper() in self.done_statuses

    @staticmethod
    def by_type(tickets: Iterable) -> dict:
        """Count and story points per issue type."""
        counters = defaultdict(lambda: {"count": 0, "points": 0.0})
        for ticket in tickets:
            entry = counters[ticket.issue_type or "UNKNOWN"]
            entry["count"] += 1
            entry["points"] = round2(entry["points"] + ticket.points)
        return dict(counters)

    def compute(self, buckets: SprintCommitBuckets, flagged_before_sprint: Iterable = ()) -> dict:
        """Summarise one sprint's commitment.

        Args:
            buckets: Committed / added / removed tickets
            flagged_before_sprint: Tickets left out of the sprint because
                their development was finished before it started

        Returns:
            Dict of counts, percentages, points and per-type breakdowns
        """
        committed = buckets.committed
        added = buckets.added
        removed = buckets.removed
        delivered = committed + added

        committed_total = len(committed)
        added_total = len(added)
        total = committed_total + added_total

        committed_done = sum(1 for t in committed if self.is_done(t))
        done_all = sum(1 for t in delivered if self.is_done(t))

        return {
            "totalTickets": total,
            "committed": committed_total,
            "committedAndDone": committed_done,
            "added": added_total,
            "removed": len(removed),
            "doneAll": done_all,
            "doneBeforeSprint": len(list(flagged_before_sprint)),
            "commitmentCompletionRate": _percentage(committed_done, committed_total),
            "additionRate": _percentage(added_total, total),
            "committedNotDoneRate": _percentage(committed_total - committed_done, committed_total),
            "completionRate": _percentage(done_all, total),
            "pointsCommitted": round2(sum(t.remaining_points for t in committed)),
            "pointsAdded": round2(sum(t.remaining_points for t in added)),
            "pointsRemoved": round2(sum(t.remaining_points for t in removed)),
            "byTypeCommitted": self.by_type(committed),
            "byTypeAdded": self.by_type(added),
            "byTypeAll": self.by_type(delivered),
        }
