from __future__ import annotations

# Wait-Time Estimator.
#
# estimate = tokens that would be served first * average service minutes
#
# The average comes from the statistics sink (rolling window of recent
# completions), then the department's configured figure, then a default.
# Estimates are advisory: they only read the waiting set and never
# influence ordering.

from dataclasses import dataclass
from datetime import datetime

from .models import Department, DEFAULT_SERVICE_TYPE
from .ordering import DepartmentQueue, QueueEntry
from .store import StatisticsSink


@dataclass
class WaitTimeEstimator:
    statistics: StatisticsSink | None = None
    default_service_minutes: float = 10.0

    def average_service_minutes(self, department: Department) -> float:
        if self.statistics is not None:
            avg = self.statistics.average_service_minutes(department.id)
            if avg is not None:
                return avg
        if department.avg_service_minutes is not None:
            return float(department.avg_service_minutes)
        return self.default_service_minutes

    def tokens_ahead(
        self,
        department: Department,
        queue: DepartmentQueue,
        priority: int,
        now: datetime,
        service_type: str = DEFAULT_SERVICE_TYPE,
    ) -> int:
        """How many waiting tokens a token issued now would have in front of it."""
        prospective = QueueEntry(
            token_number="",
            customer_id="",
            priority=priority,
            service_type=service_type,
            issued_at=now,
        )
        return queue.insertion_index(prospective, department.queue_type, now)

    def estimate(
        self,
        department: Department,
        queue: DepartmentQueue,
        priority: int,
        now: datetime,
        service_type: str = DEFAULT_SERVICE_TYPE,
    ) -> float:
        ahead = self.tokens_ahead(department, queue, priority, now, service_type)
        return round(ahead * self.average_service_minutes(department), 1)

    def estimate_for_position(self, department: Department, position: int) -> float:
        return round(max(0, position - 1) * self.average_service_minutes(department), 1)
