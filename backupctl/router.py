"""Completion routing: job lifecycle events to the notification topic.

Each job descriptor gets one listener. A listener matches Batch job state
change events that reference its descriptor and carry a terminal status;
matched events are normalized and published once. Publishing is
fire-and-forget: a failed publish is logged and dropped.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from .errors import NotificationDeliveryError
from .models import JobDescriptor, JobStatus, LifecycleEvent, ListenerSpec, NotificationEvent
from .substrate import Substrate

logger = logging.getLogger(__name__)


def listener_name(job_name: str) -> str:
    return f"{job_name}-completed"


def build_listener(descriptor: JobDescriptor, topic: str, component: str = "backup") -> ListenerSpec:
    return ListenerSpec(
        name=listener_name(descriptor.name),
        job_definition=descriptor.name,
        topic=topic,
        component=component,
    )


def job_definition_name(ref: str) -> str:
    """Bare descriptor name from a name or a job-definition ARN.

    >>> job_definition_name("arn:aws:batch:eu-west-1:123:job-definition/backup-photos:3")
    'backup-photos'
    """
    if ref.startswith("arn:"):
        ref = ref.rsplit("/", 1)[-1]
        name, _, revision = ref.rpartition(":")
        if name and revision.isdigit():
            ref = name
    return ref


def normalize_event(raw: Dict[str, Any]) -> LifecycleEvent:
    detail = raw.get("detail") or {}
    return LifecycleEvent(
        source=str(raw.get("source", "")),
        detail_type=str(raw.get("detail-type", raw.get("detailType", ""))),
        status=str(detail.get("status", "")),
        job_ref=str(detail.get("jobDefinition", "")),
        job_name=str(detail.get("jobName", "")),
        raw=raw,
    )


def matches(listener: ListenerSpec, event: LifecycleEvent) -> bool:
    return (
        event.source == listener.source
        and event.detail_type == listener.detail_type
        and event.status in {status.value for status in listener.statuses}
        and job_definition_name(event.job_ref) == listener.job_definition
    )


def serialize_event(raw: Dict[str, Any]) -> str:
    return json.dumps(raw, sort_keys=True, default=str)


def to_notification(event: LifecycleEvent, component: str = "backup") -> NotificationEvent:
    status = JobStatus(event.status)
    return NotificationEvent(
        job_name=event.job_name,
        terminal_status=status,
        subject=f"{component} job {event.job_name} {status.value}",
        message=serialize_event(event.raw),
        raw_detail=event.raw,
    )


class CompletionRouter:
    """Installs per-descriptor listeners and republishes terminal events."""

    def __init__(self, substrate: Substrate, topic: str, component: str = "backup"):
        self.substrate = substrate
        self.topic = topic
        self.component = component
        self.listeners: List[ListenerSpec] = []

    def provision_topic(self, email: Optional[str] = None) -> str:
        topic_ref = self.substrate.ensure_topic(self.topic)
        if email:
            self.substrate.subscribe_email(self.topic, email)
            logger.info("Subscribed %s to %s", email, self.topic)
        return topic_ref

    def attach(self, listener: ListenerSpec) -> None:
        self.substrate.put_listener(listener)
        self.listeners.append(listener)
        logger.info("Listening for completion of %s", listener.job_definition)

    def attach_all(self, listeners: Sequence[ListenerSpec]) -> None:
        for listener in listeners:
            self.attach(listener)

    def route(self, raw_event: Dict[str, Any]) -> List[NotificationEvent]:
        """Publish a notification for each listener the event matches."""
        event = normalize_event(raw_event)
        published = []
        for listener in self.listeners:
            if not matches(listener, event):
                continue
            notification = to_notification(event, listener.component)
            try:
                self.substrate.publish(listener.topic, notification.subject, notification.message)
            except NotificationDeliveryError as e:
                logger.error("Dropped notification %r: %s", notification.subject, e)
                continue
            published.append(notification)
        return published
