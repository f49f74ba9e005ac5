"""Velocity selection policy for burnup builds and capacity forecasts."""

import logging
from typing import Optional

from sprint_engine.config import EngineSettings
from sprint_engine.dates import round2
from sprint_engine.errors import UnknownSprintError
from sprint_engine.models import SprintWindow

logger = logging.getLogger(__name__)

CLOSED_STATES = ("closed",)
CLOSED_OR_ACTIVE_STATES = ("closed", "active")


class VelocitySelector:
    """Decides which velocity applies to a sprint and persists new values.

    A sprint's own in-progress velocity is never used to judge its own
    capacity: closed sprints record their observed velocity, which feeds
    the averages used by later sprints, and each sprint keeps the estimate
    it was given at its start.
    """

    def __init__(self, store, settings: EngineSettings = None):
        self.store = store
        self.settings = settings or EngineSettings()

    @property
    def fallback(self) -> float:
        return self.settings.fallback_velocity

    def select(self, window: SprintWindow, done_total: float, jh_total: float) -> float:
        """Pick the velocity for a burnup build.

        Args:
            window: Sprint being built
            done_total: Points done over the sprint
            jh_total: Person-days available over the sprint

        Returns:
            Velocity (points per person-day) to convert capacity into points
        """
        state = (window.state or "").lower()

        if state == "closed" and jh_total > 0:
            observed = round2(done_total / jh_total)
            self._persist(self.store.set_observed_velocity, window.id, observed)
            velocity = self._stored_start_velocity(window.id)
            if velocity is None:
                velocity = self.fallback
            logger.info(f"Sprint {window.id} closed: observed velocity {observed}, applying {velocity}")
            return velocity

        if state == "active" and jh_total > 0:
            frozen = self._stored_start_velocity(window.id)
            if frozen is not None:
                return frozen
            velocity = self._average(window.board_id, CLOSED_STATES)
            self._persist(self.store.set_start_velocity, window.id, velocity)
            logger.info(f"Sprint {window.id} active: start velocity {velocity}")
            return velocity

        velocity = self._average(window.board_id, CLOSED_OR_ACTIVE_STATES)
        self._persist(self.store.set_start_velocity, window.id, velocity)
        return velocity

    def start_velocity_for(self, window: SprintWindow) -> float:
        """Velocity used to forecast a sprint that has not been built yet."""
        velocity = self._stored_start_velocity(window.id)
        if velocity is not None:
            return velocity
        return self._average(window.board_id, CLOSED_OR_ACTIVE_STATES)

    def _average(self, board_id, states) -> float:
        average = self.store.average_velocity(board_id, self.settings.velocity_lookback, states)
        if average is None:
            logger.info(f"No velocity history for board {board_id}, using {self.fallback}")
            return self.fallback
        return average

    def _stored_start_velocity(self, sprint_id) -> Optional[float]:
        try:
            return self.store.get_start_velocity(sprint_id)
        except UnknownSprintError:
            logger.warning(f"Sprint {sprint_id} not in store, no persisted start velocity")
            return None

    @staticmethod
    def _persist(setter, sprint_id, value):
        try:
            setter(sprint_id, value)
        except UnknownSprintError:
            logger.warning(f"Sprint {sprint_id} not in store, velocity {value} not persisted")
