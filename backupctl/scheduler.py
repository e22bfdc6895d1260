"""Cron triggers for job descriptors.

A trigger is ARMED when its definition has a schedule; otherwise it stays
UNARMED and the job only runs when enqueued by hand. Firings are
at-least-once and overlapping runs of the same descriptor are not prevented:
a slow backup can still be running when its next firing enqueues another.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from croniter import croniter

from .models import JobDescriptor, JobHandle, Trigger, TriggerState, utcnow
from .queue import ComputeQueueManager

logger = logging.getLogger(__name__)


def rule_name(job_name: str) -> str:
    return f"run-{job_name}"


def build_trigger(descriptor: JobDescriptor, schedule: Optional[str]) -> Trigger:
    return Trigger(name=rule_name(descriptor.name), job_name=descriptor.name, schedule=schedule)


def next_fire_time(schedule: str, after: datetime) -> datetime:
    return croniter(schedule, after).get_next(datetime)


class TriggerScheduler:
    """Arms cron rules and fires them into the compute queue."""

    def __init__(self, queue_manager: ComputeQueueManager, descriptors: Sequence[JobDescriptor]):
        self.queue_manager = queue_manager
        self.descriptors: Dict[str, JobDescriptor] = {d.name: d for d in descriptors}

    def arm(self, trigger: Trigger) -> Optional[Trigger]:
        """Register the trigger's rule. Returns None for an UNARMED trigger."""
        if trigger.state is TriggerState.UNARMED:
            logger.info("No schedule for %s; not armed", trigger.job_name)
            return None
        self.queue_manager.substrate.put_schedule_rule(trigger, self.queue_manager.queue.name)
        logger.info("Armed %s (%s)", trigger.name, trigger.schedule)
        return trigger

    def fire(self, trigger: Trigger) -> JobHandle:
        """One firing: exactly one enqueue attempt of the bound descriptor."""
        descriptor = self.descriptors[trigger.job_name]
        return self.queue_manager.enqueue(descriptor, run_label=trigger.job_name)

    @staticmethod
    def due(triggers: Iterable[Trigger], after: datetime, now: datetime) -> List[Trigger]:
        """Armed triggers with a firing time in (after, now]."""
        return [
            trigger for trigger in triggers
            if trigger.state is TriggerState.ARMED and next_fire_time(trigger.schedule, after) <= now
        ]

    def run(
        self,
        triggers: Sequence[Trigger],
        poll_interval: float = 30.0,
        should_continue: Callable[[], bool] = lambda: True,
    ) -> None:
        """Fire due triggers until ``should_continue`` returns False."""
        after = utcnow()
        while should_continue():
            time.sleep(poll_interval)
            now = utcnow()
            for trigger in self.due(triggers, after, now):
                try:
                    self.fire(trigger)
                except Exception:
                    # the next firing is a fresh attempt
                    logger.exception("Firing %s failed", trigger.name)
            after = now
