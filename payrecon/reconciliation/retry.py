from datetime import datetime, timedelta


class RetryManager:
    """Backoff schedule for pushing a completion to the downstream collaborator."""

    DEFAULT_SCHEDULE = [30, 300, 1800, 7200]  # 30s, 5m, 30m, 2h

    def __init__(self, schedule: list[int] | None = None, max_attempts: int | None = None):
        self.schedule = schedule or self.DEFAULT_SCHEDULE
        # First attempt plus one retry per schedule step.
        self.max_attempts = max_attempts if max_attempts is not None else len(self.schedule) + 1

    def next_delay(self, retry: int) -> float:
        """Delay in seconds before retry number ``retry`` (0-indexed)."""
        if retry >= len(self.schedule):
            return float(self.schedule[-1])
        return float(self.schedule[retry])

    def has_attempts_remaining(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def next_attempt_at(self, attempts_made: int, now: datetime) -> datetime | None:
        """When to try again after ``attempts_made`` failures. None once exhausted."""
        if not self.has_attempts_remaining(attempts_made):
            return None
        return now + timedelta(seconds=self.next_delay(max(0, attempts_made - 1)))
