"""Sprint analysis orchestration: window, tickets, classification, burnup, capacity."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Optional

from sprint_engine.burnup import BurnupBuilder
from sprint_engine.capacity import CapacityCalculator, CapacityForecaster
from sprint_engine.changelog import ChangelogReconstructor
from sprint_engine.classifier import SprintMembershipClassifier
from sprint_engine.config import EngineSettings
from sprint_engine.errors import UnknownSprintError
from sprint_engine.fetch import ChangelogCache, ChangelogFetchCoordinator, RateLimiter
from sprint_engine.jira_gateway import JiraHistoryGateway, JqlBuilder
from sprint_engine.kpis import KpiAggregator
from sprint_engine.models import SprintWindow
from sprint_engine.store import InMemoryAvailabilityStore, InMemorySprintStore, TeamCalendar
from sprint_engine.velocity import CLOSED_OR_ACTIVE_STATES, VelocitySelector

logger = logging.getLogger(__name__)


class EngineResources:
    """Objects shared by every request: changelog cache, rate limiter,
    worker pool, stores and the team calendar.

    Created once by the app factory; per-request services borrow them.
    """

    def __init__(self, settings: EngineSettings = None, calendar: TeamCalendar = None):
        self.settings = settings or EngineSettings()
        self.cache = ChangelogCache(timedelta(minutes=self.settings.cache_ttl_minutes))
        self.limiter = RateLimiter(self.settings.min_request_interval)
        self.executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_workers), thread_name_prefix="changelog"
        )
        self.sprint_store = InMemorySprintStore()
        self.availability_store = InMemoryAvailabilityStore()
        self.calendar = calendar or TeamCalendar()

    def close(self):
        self.executor.shutdown(wait=True)


class SprintAnalysisService:
    """Runs sprint analyses for one Jira connection.

    Args:
        gateway: JiraHistoryGateway (or any object with the same methods)
        resources: Shared EngineResources
        now: Optional clock override, returns an aware datetime
    """

    def __init__(self, gateway: JiraHistoryGateway, resources: EngineResources, now=None):
        self.gateway = gateway
        self.resources = resources
        self.settings = resources.settings
        self._now = now

        s = self.settings
        reconstructor = ChangelogReconstructor(
            gateway, s.tz, page_size=s.changelog_page_size, limiter=resources.limiter
        )
        self.coordinator = ChangelogFetchCoordinator(
            reconstructor, resources.cache, executor=resources.executor,
            late_stage_statuses=s.late_stage_statuses,
        )
        self.classifier = SprintMembershipClassifier(s.wip_statuses)
        self.kpis = KpiAggregator(s.done_statuses)
        self.velocity = VelocitySelector(resources.sprint_store, s)
        self.burnup = BurnupBuilder(self.velocity, s)
        self.calculator = CapacityCalculator(s)
        self.forecaster = CapacityForecaster(self.calculator, resources.availability_store, s)

    def now(self) -> datetime:
        return self._now() if self._now else datetime.now(self.settings.tz)

    def today(self) -> date:
        return self.now().astimezone(self.settings.tz).date()

    # =========================================================================
    # Sprint window and tickets
    # =========================================================================

    def _apply_date_overrides(self, window: SprintWindow):
        """Replace Jira dates by pinned ones, expressed in the engine timezone."""
        start, end = self.resources.sprint_store.get_date_overrides(window.id)
        if start is not None:
            window.start = start.astimezone(self.settings.tz)
        if end is not None:
            window.end = end.astimezone(self.settings.tz)

    def sprint_window(self, sprint_id) -> SprintWindow:
        """Fetch the sprint from Jira, record it and apply pinned dates.

        Raises:
            UnknownSprintError: if the sprint has no start or end date
        """
        store = self.resources.sprint_store
        data = self.gateway.get_sprint(sprint_id)
        window = SprintWindow.from_jira(data, self.settings.tz, now=self.now())
        store.save_sprint(window)
        self._apply_date_overrides(window)

        if window.start is None or window.end is None:
            logger.warning(f"Sprint {sprint_id} has no start or end date")
            raise UnknownSprintError(sprint_id)
        return window

    def list_board_sprints(self, board_id) -> list:
        """Every sprint of a board with its stored and start velocities.

        Each sprint is recorded in the store, so board averages see the
        whole history. Sprints without a start date are skipped.
        """
        store = self.resources.sprint_store
        lookback = self.settings.velocity_lookback
        tz = self.settings.tz
        sprints = []

        for data in self.gateway.get_all_board_sprints(board_id):
            window = SprintWindow.from_jira(data, tz, now=self.now())
            if window.start is None:
                logger.info(f"Sprint {window.name} has no start date, skipped")
                continue
            if window.board_id is None:
                window.board_id = board_id
            store.save_sprint(window)
            self._apply_date_overrides(window)

            velocity_start = store.get_or_average_start_velocity(
                window.board_id, lookback, CLOSED_OR_ACTIVE_STATES, window.id
            )
            sprints.append({
                **window.to_dict(),
                "velocity": store.get_velocity(window.id),
                "velocityStart": velocity_start,
            })

        return sprints

    def _base_query(self) -> JqlBuilder:
        s = self.settings
        jql = JqlBuilder()
        if s.project_key:
            jql.project(s.project_key)
        return jql.issuetype_in(s.issue_types).assignee_not_in_or_empty(s.excluded_assignee_accounts)

    def sprint_tickets_query(self, sprint_id) -> str:
        return (
            self._base_query()
            .status_in(self.settings.sprint_statuses)
            .sprint_equals(sprint_id)
            .order_by("status DESC, Rank ASC")
            .build()
        )

    def window_tickets_query(self, window: SprintWindow) -> str:
        return (
            self._base_query()
            .status_in(self.settings.in_progress_statuses)
            .updated_between(window.start, window.end + timedelta(seconds=1))
            .build()
        )

    def sprint_tickets(self, window: SprintWindow) -> tuple:
        """Tickets still in the sprint, minus those finished before it started.

        Returns:
            (kept tickets, flagged tickets)
        """
        tickets = self.gateway.search_tickets(self.sprint_tickets_query(window.id))
        return self.coordinator.filter_excluding_pre_sprint_done(tickets, window.start)

    def collect_tickets(self, window: SprintWindow) -> tuple:
        """Union of tickets updated during the sprint and tickets still in it.

        Returns:
            (tickets sorted by key, flagged tickets)
        """
        in_window = self.gateway.search_tickets(self.window_tickets_query(window))
        still_in, flagged = self.sprint_tickets(window)

        by_key = {}
        for ticket in in_window + still_in:
            by_key.setdefault(ticket.key, ticket)
        tickets = [by_key[key] for key in sorted(by_key)]

        logger.info(
            f"Sprint {window.id}: {len(tickets)} candidate tickets "
            f"({len(in_window)} updated in window, {len(still_in)} still in sprint)"
        )
        return tickets, flagged

    # =========================================================================
    # Analyses
    # =========================================================================

    def analyse_sprint(self, sprint_id) -> dict:
        """Classify the sprint's tickets and compute its KPIs."""
        window = self.sprint_window(sprint_id)
        tickets, flagged = self.collect_tickets(window)
        changelog_for = self.coordinator.changelog_lookup(t.key for t in tickets)

        buckets = self.classifier.classify(tickets, window, changelog_for)
        result = {
            "sprint": window.to_dict(),
            **buckets.to_dict(),
            "doneBeforeSprint": [t.to_dict() for t in flagged],
            "kpis": self.kpis.compute(buckets, flagged),
        }
        return result

    def build_burnup(self, sprint_id) -> dict:
        """Burnup series of a sprint, as a JSON-ready dict."""
        window = self.sprint_window(sprint_id)
        tickets, _ = self.sprint_tickets(window)
        changelog_for = self.coordinator.changelog_lookup(t.key for t in tickets)

        calendar = self.resources.calendar
        first, last = window.start.date(), window.end.date()
        capacity_by_date = self.calculator.team_capacity(
            calendar.developers, first, last,
            calendar.holidays_between(first, last),
            calendar.absences_between(first, last),
        )

        series = self.burnup.build(window, tickets, changelog_for, capacity_by_date)
        return {"sprint": window.to_dict(), **series.to_dict(self.today())}

    def _active_sprint(self, board_id) -> Optional[SprintWindow]:
        active = self.resources.sprint_store.find_active_sprint(board_id)
        if active is not None:
            return active
        sprints = self.gateway.get_board_sprints(board_id, state="active")
        if not sprints:
            return None
        window = SprintWindow.from_jira(sprints[0], self.settings.tz, now=self.now())
        if window.board_id is None:
            window.board_id = board_id
        return self.resources.sprint_store.save_sprint(window)

    def forecast_capacity(self, board_id, next_sprint_id) -> dict:
        """Per-developer capacity of the next sprint, net of carried-over work."""
        next_sprint = self.sprint_window(next_sprint_id)
        if next_sprint.board_id is None:
            next_sprint.board_id = board_id

        active = self._active_sprint(board_id)
        active_tickets = []
        if active is not None and str(active.id) != str(next_sprint.id):
            active_tickets = self.gateway.search_tickets(self.sprint_tickets_query(active.id))
        else:
            logger.info(f"No active sprint on board {board_id}, no carryover")

        velocity = self.velocity.start_velocity_for(next_sprint)
        calendar = self.resources.calendar
        first, last = next_sprint.start.date(), next_sprint.end.date()

        developers = self.forecaster.forecast(
            calendar.developers, next_sprint, velocity,
            calendar.holidays_between(first, last),
            calendar.absences_between(first, last),
            active_tickets,
        )
        return {
            "sprint": next_sprint.to_dict(),
            "activeSprintId": active.id if active else None,
            "velocity": velocity,
            "developers": developers,
        }
