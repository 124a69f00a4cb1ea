from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from tenant_billing.models.base import utcnow


@dataclass(slots=True)
class SweeperHealth:
    """What the expiry sweeper reports on ``/health``.

    A sweeper is healthy once a pass has completed and no pass has failed since.
    """

    name: str
    ready: bool = False
    sweeps: int = 0
    last_expired_count: int | None = None
    total_expired: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_duration_seconds: float | None = None

    @property
    def healthy(self) -> bool:
        return self.last_success_at is not None and self.consecutive_failures == 0

    def sweep_started(self) -> None:
        self.last_run_at = utcnow()

    def sweep_finished(self, expired_count: int) -> None:
        finished_at = utcnow()
        self.sweeps += 1
        self.last_expired_count = expired_count
        self.total_expired += expired_count
        self.consecutive_failures = 0
        self.last_error = None
        self.last_success_at = finished_at
        if self.last_run_at is not None:
            self.last_duration_seconds = (finished_at - self.last_run_at).total_seconds()

    def sweep_failed(self, error: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = f"{type(error).__name__}: {error}"

    def payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "ready": self.ready,
            "sweeps": self.sweeps,
            "last_expired_count": self.last_expired_count,
            "total_expired": self.total_expired,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_duration_seconds": self.last_duration_seconds,
        }
