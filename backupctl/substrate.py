"""Interface to the compute, storage, event and notification substrate.

The orchestration core only describes resources; a Substrate applies them.
Every ``ensure_*``/``put_*``/``register_*`` call is an idempotent upsert
keyed by resource name, so re-applying an unchanged DesiredState is safe.
Implementations raise ProvisioningError for rejected calls and
NotificationDeliveryError for failed publishes.
"""

from abc import ABC, abstractmethod

from .models import ComputePool, JobDescriptor, JobQueueSpec, ListenerSpec, Trigger


class Substrate(ABC):

    @abstractmethod
    def ensure_compute_pool(self, pool: ComputePool) -> str:
        """Create the compute pool if missing; return its reference."""

    @abstractmethod
    def ensure_job_queue(self, queue: JobQueueSpec) -> str:
        """Create the job queue if missing; return its reference."""

    @abstractmethod
    def register_job_definition(self, descriptor: JobDescriptor) -> str:
        """Register a job descriptor; return its reference."""

    @abstractmethod
    def create_bucket(self, bucket: str) -> None:
        ...

    @abstractmethod
    def lookup_bucket(self, bucket: str) -> None:
        """Fail with ProvisioningError if the bucket cannot be resolved."""

    @abstractmethod
    def grant_write(self, bucket: str, grantee: str) -> None:
        ...

    @abstractmethod
    def ensure_topic(self, topic: str) -> str:
        ...

    @abstractmethod
    def subscribe_email(self, topic: str, email: str) -> None:
        ...

    @abstractmethod
    def put_schedule_rule(self, trigger: Trigger, queue: str) -> None:
        """Install a cron rule that submits ``trigger.job_name`` into ``queue``."""

    @abstractmethod
    def put_listener(self, listener: ListenerSpec) -> None:
        ...

    @abstractmethod
    def submit_job(self, queue: str, job_definition: str, job_name: str) -> str:
        """Submit one run; return the job id."""

    @abstractmethod
    def publish(self, topic: str, subject: str, message: str) -> None:
        ...
