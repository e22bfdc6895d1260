"""Data models for backup definitions, derived resources and runtime records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Queue entry lifecycle states, as reported by the compute substrate."""
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    RUNNABLE = "RUNNABLE"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


class TriggerState(str, Enum):
    UNARMED = "UNARMED"
    ARMED = "ARMED"


class SecretRef(BaseModel):
    """Named reference to a secret held by the substrate."""
    model_config = ConfigDict(frozen=True)

    name: str
    locator: str


class BackupDefinition(BaseModel):
    """One configured unit of work."""
    model_config = ConfigDict(frozen=True)

    source_id: str
    destination_url: str
    create_destination_if_missing: bool = False
    storage_class: Optional[str] = None
    secret_refs: Tuple[SecretRef, ...] = ()
    schedule: Optional[str] = None


class ResourceRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    vcpus: float = 1.0
    memory: int = 2048  # MB


class JobDescriptor(BaseModel):
    """Fully resolved, runnable job derived from a BackupDefinition."""
    model_config = ConfigDict(frozen=True)

    name: str
    source_id: str
    destination_url: str
    bucket: str
    command: Tuple[str, ...]
    image: str
    resources: ResourceRequest = Field(default_factory=ResourceRequest)
    secrets: Tuple[SecretRef, ...] = ()
    execution_role: str
    job_role: str
    platform: str = "FARGATE"
    assign_public_ip: bool = True


class Trigger(BaseModel):
    """Cron-bound rule that enqueues one JobDescriptor at each firing."""
    model_config = ConfigDict(frozen=True)

    name: str
    job_name: str
    schedule: Optional[str] = None
    enabled: bool = True

    @property
    def state(self) -> TriggerState:
        if self.schedule and self.enabled:
            return TriggerState.ARMED
        return TriggerState.UNARMED


class ComputePool(BaseModel):
    """Shared bounded compute environment."""
    model_config = ConfigDict(frozen=True)

    name: str
    max_vcpus: int = 256
    platform: str = "FARGATE"
    subnets: Tuple[str, ...] = ()
    security_group_ids: Tuple[str, ...] = ()


class ComputeOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    pool: str
    order: int = 0


class JobQueueSpec(BaseModel):
    """The single queue every job submits into."""
    model_config = ConfigDict(frozen=True)

    name: str
    priority: int = 0
    compute_order: Tuple[ComputeOrder, ...] = ()


class BucketBinding(BaseModel):
    """Write access for the job role on one distinct destination bucket."""
    model_config = ConfigDict(frozen=True)

    bucket: str
    create: bool = False
    grantee: str
    sources: Tuple[str, ...] = ()


class ListenerSpec(BaseModel):
    """Completion listener for a single job descriptor."""
    model_config = ConfigDict(frozen=True)

    name: str
    job_definition: str
    topic: str
    component: str = "backup"
    source: str = "aws.batch"
    detail_type: str = "Batch Job State Change"
    statuses: Tuple[JobStatus, ...] = (JobStatus.FAILED, JobStatus.SUCCEEDED)

    def event_pattern(self, job_definition_ref: Optional[str] = None) -> Dict[str, Any]:
        """Declarative form of the listener's match, for substrates that need one."""
        return {
            "source": [self.source],
            "detail-type": [self.detail_type],
            "detail": {
                "jobDefinition": [job_definition_ref or self.job_definition],
                "status": [status.value for status in self.statuses],
            },
        }


class DesiredState(BaseModel):
    """Complete end-state derived from a list of backup definitions."""
    model_config = ConfigDict(frozen=True)

    compute_pool: ComputePool
    job_queue: JobQueueSpec
    descriptors: Tuple[JobDescriptor, ...] = ()
    triggers: Tuple[Trigger, ...] = ()
    bindings: Tuple[BucketBinding, ...] = ()
    listeners: Tuple[ListenerSpec, ...] = ()
    topic: str
    email: Optional[str] = None

    def descriptor(self, name: str) -> Optional[JobDescriptor]:
        for descriptor in self.descriptors:
            if descriptor.name == name:
                return descriptor
        return None


class JobHandle(BaseModel):
    """Returned by enqueue; correlates a submission with lifecycle events."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    job_name: str
    job_definition: str
    queue: str


class QueueEntry(BaseModel):
    """One submitted execution, owned by the substrate until terminal."""
    id: str
    job_name: str
    job_definition: str
    queue: str
    status: JobStatus = JobStatus.SUBMITTED
    vcpus: float = 1.0
    memory: int = 2048
    command: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    status_reason: Optional[str] = None


class LifecycleEvent(BaseModel):
    """Normalized job state change event."""
    model_config = ConfigDict(frozen=True)

    source: str
    detail_type: str
    status: str
    job_ref: str
    job_name: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class NotificationEvent(BaseModel):
    """Outbound notification for one terminal transition."""
    model_config = ConfigDict(frozen=True)

    job_name: str
    terminal_status: JobStatus
    subject: str
    message: str
    raw_detail: Dict[str, Any] = Field(default_factory=dict)
