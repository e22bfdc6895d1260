"""Job descriptor building."""

import re
from typing import Iterable, List, Optional, Sequence

from croniter import croniter

from .bindings import resolve_bucket
from .errors import ConfigurationError
from .models import BackupDefinition, JobDescriptor, ResourceRequest

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")
_DASHES = re.compile(r"-{2,}")


def derive_job_name(source_id: str, prefix: str = "backup") -> str:
    """Deterministic descriptor name for a source id.

    >>> derive_job_name("My Photos/2023")
    'backup-My-Photos-2023'
    """
    if not source_id or not source_id.strip():
        raise ConfigurationError("source_id must not be empty")
    slug = _DASHES.sub("-", _UNSAFE.sub("-", source_id.strip())).strip("-")
    if not slug:
        raise ConfigurationError(f"source_id {source_id!r} has no usable name characters")
    return f"{prefix}-{slug}" if prefix else slug


def build_command(definition: BackupDefinition, executable: str) -> List[str]:
    command = [executable, definition.source_id, definition.destination_url]
    if definition.storage_class:
        command += ["--storage-class", definition.storage_class]
    return command


def validate_schedule(schedule: Optional[str]) -> None:
    """Schedules are plain 5-field cron: no seconds field, no @ macros."""
    if schedule is None:
        return
    if len(schedule.split()) != 5 or not croniter.is_valid(schedule):
        raise ConfigurationError(f"Invalid cron schedule {schedule!r}: expected 5 fields (m h dom mon dow)")


class DescriptorBuilder:
    """Builds descriptors sharing one image, resource request and identity pair."""

    def __init__(
        self,
        image: str,
        executable: str,
        execution_role: str,
        job_role: str,
        resources: Optional[ResourceRequest] = None,
        prefix: str = "backup",
        platform: str = "FARGATE",
        assign_public_ip: bool = True,
        scheme: str = "s3",
    ):
        self.image = image
        self.executable = executable
        self.execution_role = execution_role
        self.job_role = job_role
        self.resources = resources or ResourceRequest()
        self.prefix = prefix
        self.platform = platform
        self.assign_public_ip = assign_public_ip
        self.scheme = scheme

    def build(self, definition: BackupDefinition) -> JobDescriptor:
        name = derive_job_name(definition.source_id, self.prefix)
        bucket = resolve_bucket(definition.destination_url, self.scheme)
        validate_schedule(definition.schedule)
        return JobDescriptor(
            name=name,
            source_id=definition.source_id,
            destination_url=definition.destination_url,
            bucket=bucket,
            command=tuple(build_command(definition, self.executable)),
            image=self.image,
            resources=self.resources,
            secrets=definition.secret_refs,
            execution_role=self.execution_role,
            job_role=self.job_role,
            platform=self.platform,
            assign_public_ip=self.assign_public_ip,
        )

    def build_all(self, definitions: Sequence[BackupDefinition]) -> List[JobDescriptor]:
        """Build every descriptor, rejecting duplicate derived names."""
        descriptors = [self.build(definition) for definition in definitions]
        check_unique(descriptors)
        return descriptors


def check_unique(descriptors: Iterable[JobDescriptor]) -> None:
    seen = {}
    for descriptor in descriptors:
        if descriptor.name in seen:
            raise ConfigurationError(
                f"Duplicate job name {descriptor.name!r} derived from source ids "
                f"{seen[descriptor.name]!r} and {descriptor.source_id!r}"
            )
        seen[descriptor.name] = descriptor.source_id
