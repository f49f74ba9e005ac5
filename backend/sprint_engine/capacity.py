"""Developer working capacity and next-sprint capacity forecasts."""

import logging
from collections import defaultdict
from datetime import date
from typing import Iterable

from sprint_engine.config import EngineSettings
from sprint_engine.dates import is_weekend, iter_days, round2
from sprint_engine.models import AbsenceEvent, CapacityDay, Developer, SprintWindow

logger = logging.getLogger(__name__)


class CapacityCalculator:
    """Computes per-day workable load for developers over a date range.

    Rules (all values come from EngineSettings):
    - weekends and holidays are not working days
    - the first ``ramp_up_days`` working days get ``ramp_up_load``
    - the last working day gets ``last_day_load``
    - an absence turns a non-zero load into ``half_day_load`` when it only
      covers a morning or an afternoon, and into 0 otherwise
    - a per-developer multiplier is applied last
    """

    def __init__(self, settings: EngineSettings = None):
        self.settings = settings or EngineSettings()

    def working_days(self, developer: Developer, first: date, last: date,
                     holidays: Iterable[date] = (),
                     absences: Iterable[AbsenceEvent] = ()) -> list:
        """Return the developer's CapacityDay list for [first, last]."""
        s = self.settings
        holiday_set = set(holidays)
        own_absences = [a for a in absences if str(a.developer_id) == str(developer.id)]
        multiplier = s.multiplier_for(developer.id)

        days = [d for d in iter_days(first, last) if not is_weekend(d) and d not in holiday_set]

        result = []
        for index, day in enumerate(days):
            if index < s.ramp_up_days:
                load = s.ramp_up_load
            elif index == len(days) - 1:
                load = s.last_day_load
            else:
                load = 1.0

            for absence in own_absences:
                if not absence.covers(day):
                    continue
                if load != 0 and absence.is_half_day:
                    load = s.half_day_load
                else:
                    load = 0.0

            load = min(1.0, max(0.0, load * multiplier))
            result.append(CapacityDay(day, round2(load)))

        return result

    @staticmethod
    def capacity_points(days: Iterable[CapacityDay], velocity: float) -> float:
        """Capacity in story points: total load times velocity per day."""
        return sum(d.load for d in days) * velocity

    def team_capacity(self, developers: Iterable[Developer], first: date, last: date,
                      holidays: Iterable[date] = (),
                      absences: Iterable[AbsenceEvent] = ()) -> dict:
        """Sum developer loads per date.

        Excluded developers are skipped and each developer's range is
        clipped to their presence dates.

        Returns:
            Dict mapping date to summed load, ordered by date
        """
        holidays = list(holidays)
        absences = list(absences)
        excluded = {str(i) for i in self.settings.excluded_developer_ids}
        by_date = defaultdict(float)

        for developer in developers:
            if str(developer.id) in excluded:
                continue
            dev_first = max(first, developer.start_date) if developer.start_date else first
            dev_last = min(last, developer.end_date) if developer.end_date else last
            if dev_first > dev_last:
                continue

            for capacity_day in self.working_days(developer, dev_first, dev_last, holidays, absences):
                by_date[capacity_day.day] += capacity_day.load

        return dict(sorted(by_date.items()))


class CapacityForecaster:
    """Forecasts each developer's capacity for the next sprint.

    Net capacity = gross capacity x availability - work carried over from
    the board's active sprint.
    """

    def __init__(self, calculator: CapacityCalculator, availability_store, settings: EngineSettings = None):
        self.calculator = calculator
        self.availability_store = availability_store
        self.settings = settings or calculator.settings

    def carryover_points(self, tickets: Iterable) -> float:
        """Points left on unfinished tickets, discounted by their progress."""
        done = self.settings.done_statuses
        total = 0.0
        for ticket in tickets:
            if ticket.story_points is None:
                continue
            if (ticket.status or "").upper() in done:
                continue
            progress = ticket.progress if ticket.progress is not None else 0.0
            total += ticket.story_points * (1.0 - progress / 100.0)
        return total

    def forecast_developer(self, developer: Developer, next_sprint: SprintWindow,
                           velocity: float, holidays, absences, active_tickets) -> dict:
        days = self.calculator.working_days(
            developer, next_sprint.start.date(), next_sprint.end.date(), holidays, absences
        )
        gross = self.calculator.capacity_points(days, velocity)
        factor = self.availability_store.get_factor(next_sprint.id, developer.id)
        new_capacity = gross * factor

        name = developer.display_name.lower()
        own = [
            t for t in active_tickets
            if t.assignee and t.assignee.lower() == name
            and (t.status or "").upper() not in self.settings.done_statuses
        ]
        carryover = self.carryover_points(own)
        net = max(0.0, new_capacity - carryover)

        return {
            "developerId": developer.id,
            "firstName": developer.first_name,
            "lastName": developer.last_name,
            "grossCapacity": round2(gross),
            "availabilityFactor": factor,
            "newSprintCapacity": round2(new_capacity),
            "carryoverPoints": round2(carryover),
            "netCapacity": round2(net),
            "carryoverTicketKeys": [t.key for t in own],
        }

    def forecast(self, developers: Iterable[Developer], next_sprint: SprintWindow,
                 velocity: float, holidays=(), absences=(), active_tickets=()) -> list:
        """Forecast every non-excluded developer, highest net capacity first."""
        holidays = list(holidays)
        absences = list(absences)
        active_tickets = list(active_tickets)
        excluded = {str(i) for i in self.settings.excluded_developer_ids}

        results = [
            self.forecast_developer(dev, next_sprint, velocity, holidays, absences, active_tickets)
            for dev in developers
            if str(dev.id) not in excluded
        ]
        results.sort(key=lambda r: r["netCapacity"], reverse=True)
        logger.info(f"Capacity forecast for sprint {next_sprint.id}: {len(results)} developers")
        return results
