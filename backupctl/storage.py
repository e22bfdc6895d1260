"""Local substrate persisted in JSON files.

Applied resources, queue entries and published notifications live under a
data directory. Writes are atomic (temp file + rename) and every
read-modify-write runs under an exclusive file lock so several worker
processes can share one directory.
"""

import json
import logging
import os
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import NotificationDeliveryError, ProvisioningError
from .models import (
    ComputePool,
    JobDescriptor,
    JobQueueSpec,
    JobStatus,
    ListenerSpec,
    QueueEntry,
    Trigger,
    utcnow,
)
from .substrate import Substrate

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

RESOURCE_KINDS = (
    "compute_pools",
    "job_queues",
    "job_definitions",
    "buckets",
    "grants",
    "topics",
    "subscriptions",
    "schedule_rules",
    "listeners",
)

EventSink = Callable[[Dict[str, Any]], Any]


class LocalSubstrate(Substrate):
    """File-backed substrate for local runs and tests."""

    def __init__(self, data_dir: str = ".backupctl", account: str = "local", event_sink: Optional[EventSink] = None):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.account = account
        self.event_sink = event_sink
        self.resources_file = self.data_dir / "resources.json"
        self.entries_file = self.data_dir / "entries.json"
        self.notifications_file = self.data_dir / "notifications.json"
        self.locks_dir = self.data_dir / "locks"
        self.locks_dir.mkdir(exist_ok=True)

        # Initialize files if they don't exist
        with self.locked():
            if not self.resources_file.exists():
                self._write_json(self.resources_file, {kind: {} for kind in RESOURCE_KINDS})
            if not self.entries_file.exists():
                self._write_json(self.entries_file, [])
            if not self.notifications_file.exists():
                self._write_json(self.notifications_file, [])

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        with open(file_path, "r") as f:
            return json.load(f)

    @contextmanager
    def locked(self, name: str = "state") -> Iterator[None]:
        """Hold an exclusive, blocking lock for the duration of the block."""
        fd = os.open(str(self.locks_dir / f"{name}.lock"), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    @contextmanager
    def _resources(self) -> Iterator[Dict[str, Dict[str, Any]]]:
        with self.locked():
            resources = self._read_json(self.resources_file)
            yield resources
            self._write_json(self.resources_file, resources)

    def resources(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every applied resource, keyed by kind then name."""
        return self._read_json(self.resources_file)

    def _ref(self, kind: str, name: str) -> str:
        return f"arn:local:batch:{self.account}:{kind}/{name}"

    # Compute

    def ensure_compute_pool(self, pool: ComputePool) -> str:
        with self._resources() as resources:
            resources["compute_pools"][pool.name] = pool.model_dump(mode="json")
        return self._ref("compute-environment", pool.name)

    def ensure_job_queue(self, queue: JobQueueSpec) -> str:
        with self._resources() as resources:
            for order in queue.compute_order:
                if order.pool not in resources["compute_pools"]:
                    raise ProvisioningError(f"Compute pool {order.pool} does not exist")
            resources["job_queues"][queue.name] = queue.model_dump(mode="json")
        return self._ref("job-queue", queue.name)

    def register_job_definition(self, descriptor: JobDescriptor) -> str:
        body = descriptor.model_dump(mode="json")
        with self._resources() as resources:
            current = resources["job_definitions"].get(descriptor.name)
            revision = 1
            if current is not None:
                revision = current["revision"]
                if current["descriptor"] != body:
                    revision += 1
            resources["job_definitions"][descriptor.name] = {"revision": revision, "descriptor": body}
        return f"{self._ref('job-definition', descriptor.name)}:{revision}"

    def job_definition(self, name: str) -> Optional[JobDescriptor]:
        record = self.resources()["job_definitions"].get(name)
        return JobDescriptor(**record["descriptor"]) if record else None

    def job_definition_ref(self, name: str) -> str:
        record = self.resources()["job_definitions"].get(name)
        if record is None:
            return name
        return f"{self._ref('job-definition', name)}:{record['revision']}"

    # Storage

    def create_bucket(self, bucket: str) -> None:
        with self._resources() as resources:
            existing = resources["buckets"].get(bucket)
            if existing is not None and existing["owner"] != self.account:
                raise ProvisioningError(f"Bucket {bucket} already exists under another owner")
            resources["buckets"][bucket] = {"owner": self.account}

    def lookup_bucket(self, bucket: str) -> None:
        if bucket not in self.resources()["buckets"]:
            raise ProvisioningError(f"Bucket {bucket} does not exist")

    def grant_write(self, bucket: str, grantee: str) -> None:
        with self._resources() as resources:
            grantees = resources["grants"].setdefault(bucket, [])
            if grantee not in grantees:
                grantees.append(grantee)

    # Events and notifications

    def ensure_topic(self, topic: str) -> str:
        with self._resources() as resources:
            resources["topics"].setdefault(topic, {"created_at": utcnow().isoformat()})
        return f"arn:local:sns:{self.account}:{topic}"

    def subscribe_email(self, topic: str, email: str) -> None:
        with self._resources() as resources:
            if topic not in resources["topics"]:
                raise ProvisioningError(f"Topic {topic} does not exist")
            emails = resources["subscriptions"].setdefault(topic, [])
            if email not in emails:
                emails.append(email)

    def put_schedule_rule(self, trigger: Trigger, queue: str) -> None:
        with self._resources() as resources:
            if trigger.job_name not in resources["job_definitions"]:
                raise ProvisioningError(f"Job definition {trigger.job_name} does not exist")
            rule = trigger.model_dump(mode="json")
            rule["queue"] = queue
            resources["schedule_rules"][trigger.name] = rule

    def put_listener(self, listener: ListenerSpec) -> None:
        with self._resources() as resources:
            if listener.topic not in resources["topics"]:
                raise ProvisioningError(f"Topic {listener.topic} does not exist")
            resources["listeners"][listener.name] = listener.model_dump(mode="json")

    def listeners(self) -> List[ListenerSpec]:
        return [ListenerSpec(**data) for data in self.resources()["listeners"].values()]

    def schedule_rules(self) -> List[Trigger]:
        return [Trigger(**{k: v for k, v in data.items() if k != "queue"})
                for data in self.resources()["schedule_rules"].values()]

    def publish(self, topic: str, subject: str, message: str) -> None:
        if topic not in self.resources()["topics"]:
            raise NotificationDeliveryError(f"Topic {topic} does not exist")
        with self.locked("notifications"):
            notifications = self._read_json(self.notifications_file)
            notifications.append({
                "topic": topic,
                "subject": subject,
                "message": message,
                "published_at": utcnow().isoformat(),
            })
            self._write_json(self.notifications_file, notifications)

    def get_notifications(self) -> List[Dict[str, Any]]:
        return self._read_json(self.notifications_file)

    # Queue entries

    def submit_job(self, queue: str, job_definition: str, job_name: str) -> str:
        resources = self.resources()
        if queue not in resources["job_queues"]:
            raise ProvisioningError(f"Job queue {queue} does not exist")
        descriptor = self.job_definition(job_definition)
        if descriptor is None:
            raise ProvisioningError(f"Job definition {job_definition} does not exist")

        entry = QueueEntry(
            id=uuid.uuid4().hex,
            job_name=job_name,
            job_definition=job_definition,
            queue=queue,
            status=JobStatus.RUNNABLE,
            vcpus=descriptor.resources.vcpus,
            memory=descriptor.resources.memory,
            command=list(descriptor.command),
            environment={secret.name: secret.locator for secret in descriptor.secrets},
        )
        with self.locked():
            entries = self._read_json(self.entries_file)
            entries.append(entry.model_dump(mode="json"))
            self._write_json(self.entries_file, entries)
        self._emit(entry)
        return entry.id

    def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        for data in self._read_json(self.entries_file):
            if data["id"] == entry_id:
                return QueueEntry(**data)
        return None

    def get_entries(self, status: Optional[JobStatus] = None) -> List[QueueEntry]:
        entries = [QueueEntry(**data) for data in self._read_json(self.entries_file)]
        if status is not None:
            entries = [entry for entry in entries if entry.status == status]
        return entries

    def queue_capacity(self, queue: str) -> int:
        """Aggregate vCPU ceiling of the pools backing a queue."""
        resources = self.resources()
        spec = resources["job_queues"].get(queue)
        if spec is None:
            return 0
        return sum(resources["compute_pools"][order["pool"]]["max_vcpus"] for order in spec["compute_order"])

    def claim_next(self) -> Optional[QueueEntry]:
        """Move the oldest RUNNABLE entry that fits its pool's free capacity to STARTING."""
        with self.locked():
            entries = [QueueEntry(**data) for data in self._read_json(self.entries_file)]
            in_use: Dict[str, float] = {}
            for entry in entries:
                if entry.status in (JobStatus.STARTING, JobStatus.RUNNING):
                    in_use[entry.queue] = in_use.get(entry.queue, 0) + entry.vcpus

            claimed = None
            for entry in entries:
                if entry.status != JobStatus.RUNNABLE:
                    continue
                if in_use.get(entry.queue, 0) + entry.vcpus <= self.queue_capacity(entry.queue):
                    claimed = entry
                    break
            if claimed is None:
                return None

            claimed.status = JobStatus.STARTING
            claimed.updated_at = utcnow()
            self._write_json(self.entries_file, [e.model_dump(mode="json") for e in entries])
        self._emit(claimed)
        return claimed

    def transition(self, entry: QueueEntry, status: JobStatus, **fields: Any) -> QueueEntry:
        """Record a status change and emit the matching lifecycle event."""
        entry.status = status
        entry.updated_at = utcnow()
        for key, value in fields.items():
            setattr(entry, key, value)
        with self.locked():
            entries = self._read_json(self.entries_file)
            for i, data in enumerate(entries):
                if data["id"] == entry.id:
                    entries[i] = entry.model_dump(mode="json")
                    break
            else:
                raise ValueError(f"Queue entry {entry.id} not found")
            self._write_json(self.entries_file, entries)
        self._emit(entry)
        return entry

    def lifecycle_event(self, entry: QueueEntry) -> Dict[str, Any]:
        """Batch-shaped job state change event for an entry."""
        detail: Dict[str, Any] = {
            "jobName": entry.job_name,
            "jobId": entry.id,
            "jobQueue": self._ref("job-queue", entry.queue),
            "status": entry.status.value,
            "jobDefinition": self.job_definition_ref(entry.job_definition),
            "createdAt": entry.created_at.isoformat(),
            "container": {"command": entry.command},
        }
        if entry.status_reason:
            detail["statusReason"] = entry.status_reason
        if entry.exit_code is not None:
            detail["container"]["exitCode"] = entry.exit_code
        return {
            "version": "0",
            "id": uuid.uuid4().hex,
            "detail-type": "Batch Job State Change",
            "source": "aws.batch",
            "account": self.account,
            "time": entry.updated_at.isoformat(),
            "region": "local",
            "resources": [self._ref("job", entry.id)],
            "detail": detail,
        }

    def _emit(self, entry: QueueEntry) -> None:
        if self.event_sink is not None:
            self.event_sink(self.lifecycle_event(entry))

    def get_stats(self) -> Dict[str, int]:
        """Count queue entries by status."""
        stats = {status.value.lower(): 0 for status in JobStatus}
        entries = self._read_json(self.entries_file)
        for entry in entries:
            stats[entry["status"].lower()] += 1
        stats["total"] = len(entries)
        return stats
