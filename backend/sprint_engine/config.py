"""Engine settings: business constants, status sets and Jira field ids.

Every number the capacity and burnup rules depend on lives here so a
deployment can override it from ``config/engine-config.json``.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

# Statuses counting as work in progress (or later) when attributing
# progress made before the sprint started.
DEFAULT_WIP_STATUSES = frozenset({
    "ON GOING",
    "PAIR REVIEW",
    "READY TO DEMO",
    "INTEGRATION PR",
    "DEV TERMINE",
})

# Late-stage statuses: a ticket already here before the sprint started is
# flagged instead of being counted in the sprint.
DEFAULT_LATE_STAGE_STATUSES = frozenset({
    "DEV TERMINE",
    "INTEGRATION PR",
    "PAIR REVIEW",
    "READY TO DEMO",
})

# Terminal statuses used by KPIs and by the carryover computation.
DEFAULT_DONE_STATUSES = frozenset({
    "TACHE TECHNIQUE TESTEE",
    "DEV TERMINE",
    "FAIT",
    "LIVRÉ À TESTER",
    "NON TESTABLE",
    "RESOLU",
    "TESTÉ",
    "TESTS UTR",
    "TERMINE",
    "READY TO DEMO",
    "INTEGRATION PR",
})


@dataclass
class EngineSettings:
    """Tunable settings for the sprint analytics engine."""

    timezone: str = "Europe/Paris"

    # Capacity rules
    ramp_up_days: int = 2
    ramp_up_load: float = 0.5
    last_day_load: float = 0.0
    half_day_load: float = 0.5
    daily_overhead: float = 0.6
    excluded_developer_ids: frozenset = frozenset()
    developer_multipliers: dict = field(default_factory=dict)

    # Velocity policy
    fallback_velocity: float = 0.76
    velocity_lookback: int = 5

    # Changelog fetching
    cache_ttl_minutes: int = 120
    max_workers: int = 4
    min_request_interval: float = 0.1
    changelog_page_size: int = 100
    search_page_size: int = 50
    request_timeout: int = 30
    max_attempts: int = 5

    # Status sets (compared upper-cased)
    wip_statuses: frozenset = DEFAULT_WIP_STATUSES
    late_stage_statuses: frozenset = DEFAULT_LATE_STAGE_STATUSES
    done_statuses: frozenset = DEFAULT_DONE_STATUSES

    # Jira custom fields
    story_points_field: str = "customfield_10028"
    progress_field: str = "customfield_10126"
    sprint_field: str = "customfield_10020"

    # Ticket selection
    project_key: Optional[str] = None
    issue_types: tuple = ()
    sprint_statuses: tuple = ()
    in_progress_statuses: tuple = ("A FAIRE", "ON GOING", "PAIR REVIEW", "À FAIRE")
    excluded_assignee_accounts: tuple = ()

    def __post_init__(self):
        self.wip_statuses = frozenset(str(s).upper() for s in self.wip_statuses)
        self.late_stage_statuses = frozenset(str(s).upper() for s in self.late_stage_statuses)
        self.done_statuses = frozenset(str(s).upper() for s in self.done_statuses)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def multiplier_for(self, developer_id) -> float:
        """Capacity multiplier for a developer (1.0 unless configured)."""
        return float(self.developer_multipliers.get(str(developer_id), 1.0))

    @classmethod
    def from_dict(cls, data: dict) -> "EngineSettings":
        """Build settings from a plain dict, ignoring unknown keys."""
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown engine setting: {key}")
                continue
            default = known[key].default
            if isinstance(default, frozenset):
                value = frozenset(str(v) for v in value)
            elif isinstance(default, tuple):
                value = tuple(value)
            elif key == "developer_multipliers":
                value = {str(k): float(v) for k, v in value.items()}
            kwargs[key] = value
        return cls(**kwargs)
