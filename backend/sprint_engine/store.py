"""In-memory sprint, availability and team calendar stores."""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from sprint_engine.dates import round2
from sprint_engine.errors import InvalidAvailabilityError, UnknownSprintError
from sprint_engine.models import AbsenceEvent, Developer, SprintWindow

logger = logging.getLogger(__name__)


@dataclass
class SprintRecord:
    window: SprintWindow
    velocity: Optional[float] = None
    start_velocity: Optional[float] = None
    start_override: Optional[datetime] = None
    end_override: Optional[datetime] = None


class InMemorySprintStore:
    """Sprint windows with their observed and start velocities.

    Thread-safe; velocity reads and writes happen from request threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records = {}

    def save_sprint(self, window: SprintWindow) -> SprintWindow:
        """Insert or update a sprint window, keeping any persisted velocities."""
        with self._lock:
            record = self._records.get(str(window.id))
            if record is None:
                self._records[str(window.id)] = SprintRecord(window)
            else:
                record.window = window
        return window

    def get_sprint(self, sprint_id) -> Optional[SprintWindow]:
        with self._lock:
            record = self._records.get(str(sprint_id))
            return record.window if record else None

    def _record(self, sprint_id) -> SprintRecord:
        record = self._records.get(str(sprint_id))
        if record is None:
            raise UnknownSprintError(sprint_id)
        return record

    def override_dates(self, sprint_id, start: datetime = None, end: datetime = None):
        """Pin a sprint's start and/or end, taking precedence over Jira's dates."""
        with self._lock:
            record = self._record(sprint_id)
            record.start_override = start
            record.end_override = end

    def get_date_overrides(self, sprint_id) -> tuple:
        """Return (start, end) overrides of a sprint; None where not pinned."""
        with self._lock:
            record = self._records.get(str(sprint_id))
            if record is None:
                return None, None
            return record.start_override, record.end_override

    def get_velocity(self, sprint_id) -> Optional[float]:
        with self._lock:
            return self._record(sprint_id).velocity

    def get_start_velocity(self, sprint_id) -> Optional[float]:
        with self._lock:
            return self._record(sprint_id).start_velocity

    def set_observed_velocity(self, sprint_id, velocity: float):
        with self._lock:
            self._record(sprint_id).velocity = velocity
        logger.info(f"Sprint {sprint_id}: observed velocity {velocity}")

    def set_start_velocity(self, sprint_id, velocity: float):
        with self._lock:
            self._record(sprint_id).start_velocity = velocity

    def average_velocity(self, board_id, lookback: int, states: Iterable[str]) -> Optional[float]:
        """Mean observed velocity of the most recent sprints of a board.

        Args:
            board_id: Board whose sprints are averaged
            lookback: Number of most recent sprints (by start date) to use
            states: Sprint states to include

        Returns:
            Rounded mean, or None when no sprint has an observed velocity
        """
        states = {s.lower() for s in states}
        with self._lock:
            candidates = [
                r for r in self._records.values()
                if r.window.board_id == board_id
                and (r.window.state or "").lower() in states
                and r.velocity is not None
                and r.window.start is not None
            ]
        candidates.sort(key=lambda r: r.window.start, reverse=True)
        recent = [r.velocity for r in candidates[:lookback]]
        if not recent:
            return None
        return round2(sum(recent) / len(recent))

    def get_or_average_start_velocity(self, board_id, lookback: int, states: Iterable[str],
                                      sprint_id) -> Optional[float]:
        """Persisted start velocity of a sprint, else the board average."""
        try:
            stored = self.get_start_velocity(sprint_id)
        except UnknownSprintError:
            stored = None
        if stored is not None:
            return stored
        return self.average_velocity(board_id, lookback, states)

    def find_active_sprint(self, board_id) -> Optional[SprintWindow]:
        with self._lock:
            for record in self._records.values():
                if record.window.board_id == board_id and record.window.state == "active":
                    return record.window
        return None


class InMemoryAvailabilityStore:
    """Per-sprint developer availability, as a percentage."""

    def __init__(self):
        self._lock = threading.Lock()
        self._percents = {}

    def get_percent(self, sprint_id, developer_id) -> int:
        with self._lock:
            return self._percents.get((str(sprint_id), str(developer_id)), 100)

    def get_factor(self, sprint_id, developer_id) -> float:
        """Availability as a factor in [0, 1] (1.0 when nothing is set)."""
        return self.get_percent(sprint_id, developer_id) / 100.0

    def set_percent(self, sprint_id, developer_id, percent) -> int:
        """Store a developer's availability for a sprint.

        Raises:
            InvalidAvailabilityError: if percent is not a number in 0..100
        """
        if isinstance(percent, bool) or not isinstance(percent, (int, float)):
            raise InvalidAvailabilityError(f"Availability must be a number, got {percent!r}")
        if percent < 0 or percent > 100:
            raise InvalidAvailabilityError(f"Availability must be between 0 and 100, got {percent}")

        with self._lock:
            self._percents[(str(sprint_id), str(developer_id))] = percent
        logger.info(f"Availability of developer {developer_id} for sprint {sprint_id} set to {percent}%")
        return percent

    def list_for_sprint(self, sprint_id) -> dict:
        sprint_id = str(sprint_id)
        with self._lock:
            return {dev: pct for (sid, dev), pct in self._percents.items() if sid == sprint_id}


def _parse_day(value) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class TeamCalendar:
    """Developers, public holidays and absences of the team."""

    def __init__(self, developers: Iterable[Developer] = (), holidays: Iterable[date] = (),
                 absences: Iterable[AbsenceEvent] = ()):
        self.developers = list(developers)
        self.holidays = sorted(set(holidays))
        self.absences = list(absences)

    @classmethod
    def from_config(cls, config: dict) -> "TeamCalendar":
        """Build the calendar from the ``team`` section of the engine config.

        Args:
            config: Dict with optional ``developers``, ``holidays`` and
                ``absences`` lists

        Returns:
            TeamCalendar
        """
        developers = [
            Developer(
                id=str(d["id"]),
                first_name=d.get("firstName", ""),
                last_name=d.get("lastName", ""),
                start_date=_parse_day(d.get("startDate")),
                end_date=_parse_day(d.get("endDate")),
            )
            for d in config.get("developers", [])
        ]
        holidays = [date.fromisoformat(h) for h in config.get("holidays", [])]
        absences = []
        for a in config.get("absences", []):
            first = date.fromisoformat(a["startDate"])
            absences.append(AbsenceEvent(
                developer_id=str(a["developerId"]),
                first_day=first,
                last_day=_parse_day(a.get("endDate")) or first,
                morning=bool(a.get("morning", False)),
                afternoon=bool(a.get("afternoon", False)),
                label=a.get("label", ""),
            ))

        logger.info(
            f"Team calendar: {len(developers)} developers, {len(holidays)} holidays, "
            f"{len(absences)} absences"
        )
        return cls(developers, holidays, absences)

    def holidays_between(self, first: date, last: date) -> list:
        return [h for h in self.holidays if first <= h <= last]

    def absences_between(self, first: date, last: date) -> list:
        return [a for a in self.absences if a.first_day <= last and a.last_day >= first]
