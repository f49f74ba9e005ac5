"""Exceptions raised by the sprint analytics engine."""


class SprintEngineError(Exception):
    """Base class for engine errors."""


class TransportFailure(SprintEngineError):
    """A Jira call failed after the gateway's own retries."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedTimestamp(SprintEngineError, ValueError):
    """A date string matched none of the accepted Jira formats."""

    def __init__(self, raw_value):
        super().__init__(f"Unrecognised Jira timestamp: {raw_value!r}")
        self.raw_value = raw_value


class ChangelogError(SprintEngineError):
    """Reconstruction of one issue's changelog failed."""

    def __init__(self, issue_key: str, message: str):
        super().__init__(f"{issue_key}: {message}")
        self.issue_key = issue_key


class UnknownSprintError(SprintEngineError, LookupError):
    """The sprint store has no record for the requested sprint id."""

    def __init__(self, sprint_id):
        super().__init__(f"Unknown sprint: {sprint_id}")
        self.sprint_id = sprint_id


class InvalidAvailabilityError(SprintEngineError, ValueError):
    """An availability percentage outside 0..100."""
