"""Burnup series: cumulative points done against available capacity."""

import logging
from collections import defaultdict
from typing import Callable, Iterable, Optional

from sprint_engine.classifier import points_done_before_sprint
from sprint_engine.config import EngineSettings
from sprint_engine.dates import local_date, parse_number, round2
from sprint_engine.models import BurnupPoint, BurnupSeries, IssueChangelog, SprintWindow, Ticket

logger = logging.getLogger(__name__)


def accumulate_daily_done(daily_done: dict, changelog: IssueChangelog, remaining_points: float,
                          window: SprintWindow):
    """Add one ticket's daily progress, in points, to ``daily_done``.

    Only events inside [start, end] count. When the first of them starts
    from 100 it is a reset artifact and contributes nothing.
    """
    tz = window.start.tzinfo
    points = round2(remaining_points)
    first_in_window = True

    for event in sorted(changelog.progress_events, key=lambda e: e.timestamp):
        if event.timestamp < window.start or event.timestamp > window.end:
            continue

        value_from = parse_number(event.from_value) or 0.0
        value_to = parse_number(event.to_value) or 0.0

        delta = value_to - value_from
        if first_in_window and value_from == 100:
            delta = 0.0
        first_in_window = False

        value = round2(points * (delta / 100.0))
        daily_done[local_date(event.timestamp, tz)] += value


class BurnupBuilder:
    """Builds the daily burnup series of a sprint."""

    def __init__(self, velocity_selector, settings: EngineSettings = None):
        self.velocity_selector = velocity_selector
        self.settings = settings or velocity_selector.settings

    def daily_done(self, tickets: Iterable[Ticket], window: SprintWindow,
                   changelog_for: Callable[[str], Optional[IssueChangelog]]) -> tuple:
        """Compute points done per date and the sprint's total story points.

        Returns:
            (dict of date -> points done, total story points net of the
            progress already made before the sprint)
        """
        daily = defaultdict(float)
        total_points = 0.0
        done_before = 0.0

        for ticket in tickets:
            changelog = changelog_for(ticket.key)
            if changelog is None:
                logger.warning(f"No changelog for {ticket.key}, no progress counted")
                changelog = IssueChangelog.empty(ticket.key)

            if ticket.story_points is None:
                ticket.story_points = 0.0
            before = points_done_before_sprint(
                changelog, ticket.story_points, window.start, self.settings.wip_statuses
            )
            ticket.points_done_before_sprint = before
            done_before += before
            total_points += ticket.story_points

            accumulate_daily_done(daily, changelog, ticket.remaining_points, window)

        return dict(daily), round2(total_points - done_before)

    def adjusted_capacity(self, capacity_by_date: dict) -> list:
        """Apply the daily overhead to every date but the last.

        Returns:
            List of (date, person-days) sorted by date, never negative
        """
        dates = sorted(capacity_by_date)
        adjusted = []
        for index, day in enumerate(dates):
            jh = capacity_by_date.get(day, 0.0)
            if index != len(dates) - 1:
                jh -= self.settings.daily_overhead
            adjusted.append((day, max(0.0, jh)))
        return adjusted

    @staticmethod
    def assemble(daily_done: dict, adjusted_capacity: list, velocity: float) -> list:
        """Turn daily values into cumulative BurnupPoints.

        A day whose net progress is negative (progress moved backwards)
        adds nothing, so every cumulative field is non-decreasing.
        """
        points = []
        cumulative_done = 0.0
        cumulative_jh = 0.0

        for day, jh in adjusted_capacity:
            done = max(0.0, round2(daily_done.get(day, 0.0)))
            cumulative_done = round2(cumulative_done + done)
            cumulative_jh = round2(cumulative_jh + jh)
            capacity = round2(cumulative_jh * velocity)
            velocity_to_date = round2(cumulative_done / cumulative_jh) if cumulative_jh > 0 else 0.0
            points.append(BurnupPoint(day, cumulative_done, capacity, cumulative_jh, velocity_to_date))

        return points

    def build(self, window: SprintWindow, tickets: Iterable[Ticket],
              changelog_for: Callable[[str], Optional[IssueChangelog]],
              capacity_by_date: dict) -> BurnupSeries:
        """Build the burnup series of a sprint.

        Args:
            window: Sprint window (start and end set)
            tickets: Tickets counted in the sprint
            changelog_for: Returns a ticket's changelog or None
            capacity_by_date: Summed developer load per date

        Returns:
            BurnupSeries with one point per capacity date
        """
        daily, total_story_points = self.daily_done(tickets, window, changelog_for)
        adjusted = self.adjusted_capacity(capacity_by_date)

        # Done on dates without capacity still counts towards the observed velocity
        done_total = round2(sum(daily.values()))
        jh_total = round2(sum(jh for _, jh in adjusted))

        velocity = self.velocity_selector.select(window, done_total, jh_total)
        points = self.assemble(daily, adjusted, velocity)

        logger.info(
            f"Burnup for sprint {window.id}: {len(points)} days, done {done_total}, "
            f"JH {jh_total}, velocity {velocity}"
        )
        return BurnupSeries(points, total_story_points, velocity, done_total)
