"""Domain models for changelogs, tickets, sprints, capacity and burnup."""

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Union

from sprint_engine.dates import parse_optional_timestamp


# =============================================================================
# Change events
# =============================================================================

@dataclass(frozen=True)
class StatusChange:
    timestamp: datetime
    raw_timestamp: str
    from_value: Optional[str]
    to_value: Optional[str]


@dataclass(frozen=True)
class ProgressChange:
    timestamp: datetime
    raw_timestamp: str
    from_value: Optional[str]
    to_value: Optional[str]


@dataclass(frozen=True)
class SprintMembershipChange:
    timestamp: datetime
    raw_timestamp: str
    from_value: Optional[str]
    to_value: Optional[str]

    def from_contains(self, sprint_id: str) -> bool:
        return sprint_list_contains(self.from_value, sprint_id)

    def to_contains(self, sprint_id: str) -> bool:
        return sprint_list_contains(self.to_value, sprint_id)


ChangeEvent = Union[StatusChange, ProgressChange, SprintMembershipChange]


def sprint_list_contains(raw: Optional[str], sprint_id: str) -> bool:
    """Check whether a sprint field value references ``sprint_id``.

    Jira stores the sprint field either as a bare id ("55") or as a list
    ("[12, 55]" or "12, 55").
    """
    if raw is None or sprint_id is None:
        return False
    sprint_id = str(sprint_id)
    value = raw.strip()
    if value == sprint_id:
        return True
    value = "".join(ch for ch in value if ch not in "[] \t\r\n")
    if not value:
        return False
    return sprint_id in value.split(",")


# =============================================================================
# Issue changelog
# =============================================================================

class IssueChangelog:
    """Reconstructed, time-ordered change history of one issue.

    Built once by the ChangelogReconstructor and never mutated afterwards.
    """

    def __init__(self, issue_key: str, progress_events=(), status_events=(),
                 membership_events=()):
        self.issue_key = issue_key
        self.progress_events = tuple(progress_events)
        self.status_events = tuple(sorted(status_events, key=lambda e: e.timestamp))
        self.membership_events = tuple(membership_events)
        self._status_times = [e.timestamp for e in self.status_events]

    @classmethod
    def empty(cls, issue_key: str) -> "IssueChangelog":
        return cls(issue_key)

    @property
    def has_status_history(self) -> bool:
        return bool(self.status_events)

    def status_at(self, moment: datetime) -> Optional[str]:
        """Last status set at or before ``moment``."""
        index = bisect_right(self._status_times, moment)
        return self.status_events[index - 1].to_value if index else None

    def status_before(self, moment: datetime) -> Optional[str]:
        """Last status set strictly before ``moment``."""
        index = bisect_left(self._status_times, moment)
        return self.status_events[index - 1].to_value if index else None

    def __eq__(self, other):
        if not isinstance(other, IssueChangelog):
            return NotImplemented
        return (
            self.issue_key == other.issue_key
            and self.progress_events == other.progress_events
            and self.status_events == other.status_events
            and self.membership_events == other.membership_events
        )

    def __repr__(self):
        return (
            f"IssueChangelog({self.issue_key!r}, progress={len(self.progress_events)}, "
            f"status={len(self.status_events)}, sprint={len(self.membership_events)})"
        )


# =============================================================================
# Tickets and sprints
# =============================================================================

@dataclass(eq=False)
class Ticket:
    key: str
    summary: str = ""
    issue_type: Optional[str] = None
    assignee: Optional[str] = None
    status: Optional[str] = None
    story_points: Optional[float] = None
    progress: Optional[float] = None
    sprint_ids: set = field(default_factory=set)
    created: Optional[date] = None
    url: Optional[str] = None
    points_done_before_sprint: float = 0.0
    done_before_sprint: bool = False

    @property
    def points(self) -> float:
        return self.story_points if self.story_points is not None else 0.0

    @property
    def remaining_points(self) -> float:
        return max(0.0, self.points - (self.points_done_before_sprint or 0.0))

    def __eq__(self, other):
        return isinstance(other, Ticket) and other.key == self.key

    def __hash__(self):
        return hash(self.key)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "summary": self.summary,
            "issueType": self.issue_type,
            "assignee": self.assignee,
            "status": self.status,
            "storyPoints": self.story_points,
            "progress": self.progress,
            "sprintIds": sorted(self.sprint_ids),
            "created": self.created.isoformat() if self.created else None,
            "url": self.url,
            "pointsDoneBeforeSprint": self.points_done_before_sprint,
            "remainingPoints": self.remaining_points,
            "doneBeforeSprint": self.done_before_sprint,
        }


SPRINT_STATES = ("future", "active", "closed")


@dataclass
class SprintWindow:
    id: str
    state: str
    start: Optional[datetime]
    end: Optional[datetime]
    completed: Optional[datetime] = None
    board_id: Optional[int] = None
    name: str = ""

    @classmethod
    def from_jira(cls, data: dict, tz, now: datetime = None) -> "SprintWindow":
        """Build a window from a Jira agile sprint payload.

        End date resolution: a closed sprint ends at its completion date, an
        active sprint whose nominal end is already past ends now, anything
        else ends at its nominal end date.
        """
        state = (data.get("state") or "").lower()
        start = parse_optional_timestamp(data.get("startDate"), tz)
        end = parse_optional_timestamp(data.get("endDate"), tz)
        completed = parse_optional_timestamp(data.get("completeDate"), tz)
        now = now or datetime.now(tz)

        return cls(
            id=str(data.get("id")),
            name=data.get("name", ""),
            state=state,
            start=start.astimezone(tz) if start else None,
            end=resolve_end_date(state, end, completed, now, tz),
            completed=completed.astimezone(tz) if completed else None,
            board_id=data.get("originBoardId"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "startDate": self.start.isoformat() if self.start else None,
            "endDate": self.end.isoformat() if self.end else None,
            "completeDate": self.completed.isoformat() if self.completed else None,
            "originBoardId": self.board_id,
        }


def resolve_end_date(state: str, end: Optional[datetime], completed: Optional[datetime],
                     now: datetime, tz) -> Optional[datetime]:
    state = (state or "").lower()
    if state == "closed" and completed is not None:
        return completed.astimezone(tz)
    if state == "active" and end is not None:
        if end.astimezone(tz).date() < now.astimezone(tz).date():
            return now.astimezone(tz)
    return end.astimezone(tz) if end else None


# =============================================================================
# Team calendar
# =============================================================================

@dataclass
class Developer:
    id: str
    first_name: str
    last_name: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class AbsenceEvent:
    developer_id: str
    first_day: date
    last_day: date
    morning: bool = False
    afternoon: bool = False
    label: str = ""

    @property
    def is_half_day(self) -> bool:
        """Morning-only or afternoon-only; both flags mean a full day."""
        return self.morning != self.afternoon

    def covers(self, day: date) -> bool:
        return self.first_day <= day <= self.last_day


@dataclass(frozen=True)
class CapacityDay:
    day: date
    load: float


# =============================================================================
# Burnup
# =============================================================================

@dataclass(frozen=True)
class BurnupPoint:
    day: date
    done: float
    capacity: float
    capacity_jh: float
    velocity: float

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "done": self.done,
            "capacity": self.capacity,
            "capacityJH": self.capacity_jh,
            "velocity": self.velocity,
        }


@dataclass
class BurnupSeries:
    points: list
    total_story_points: float
    selected_velocity: float
    total_done: float = 0.0

    @property
    def total_jh(self) -> float:
        """Cumulative person-days of the last point."""
        return self.points[-1].capacity_jh if self.points else 0.0

    def reported_velocity(self, today: date) -> float:
        """Velocity of the latest point dated on or before ``today``.

        Falls back to the last point when every point is in the future.
        """
        if not self.points:
            return 0.0
        past = [p for p in self.points if p.day <= today]
        return (past[-1] if past else self.points[-1]).velocity

    def to_dict(self, today: date) -> dict:
        return {
            "points": [p.to_dict() for p in self.points],
            "totalStoryPoints": self.total_story_points,
            "totalJH": self.total_jh,
            "velocity": self.reported_velocity(today),
            "selectedVelocity": self.selected_velocity,
            "totalDone": self.total_done,
        }
