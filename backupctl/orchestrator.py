"""Desired-state build and apply.

``build_desired_state`` is a pure function of the backup definitions and
settings. ``apply_desired_state`` pushes a DesiredState into a Substrate,
stopping at the first failure. Nothing is rolled back; re-applying is the
recovery path.
"""

import logging
from typing import Optional, Sequence

from .bindings import bind_access, plan_bindings
from .config import OrchestrationConfig, Settings
from .descriptors import DescriptorBuilder
from .models import BackupDefinition, DesiredState, ResourceRequest
from .queue import ComputeQueueManager, default_pool, default_queue
from .router import CompletionRouter, build_listener
from .scheduler import TriggerScheduler, build_trigger
from .substrate import Substrate

logger = logging.getLogger(__name__)


def build_desired_state(
    definitions: Sequence[BackupDefinition],
    settings: Settings,
    image: Optional[str] = None,
    email: Optional[str] = None,
) -> DesiredState:
    builder = DescriptorBuilder(
        image=image or settings.image,
        executable=settings.executable,
        execution_role=settings.execution_role,
        job_role=settings.job_role,
        resources=ResourceRequest(vcpus=settings.vcpus, memory=settings.memory),
        prefix=settings.name_prefix,
        platform=settings.platform,
        assign_public_ip=settings.assign_public_ip,
        scheme=settings.storage_scheme,
    )
    # all configuration checks run before any binding is planned
    descriptors = builder.build_all(definitions)
    bindings = plan_bindings(definitions, grantee=settings.job_role, scheme=settings.storage_scheme)
    triggers = [
        build_trigger(descriptor, definition.schedule)
        for descriptor, definition in zip(descriptors, definitions)
    ]
    listeners = [build_listener(d, settings.topic_name, settings.component) for d in descriptors]

    return DesiredState(
        compute_pool=default_pool(settings),
        job_queue=default_queue(settings),
        descriptors=tuple(descriptors),
        triggers=tuple(triggers),
        bindings=tuple(bindings),
        listeners=tuple(listeners),
        topic=settings.topic_name,
        email=email,
    )


def desired_state_from_config(config: OrchestrationConfig, settings: Settings) -> DesiredState:
    return build_desired_state(config.backup_definitions, settings, image=config.image, email=config.email)


class Orchestration:
    """Components wired to a substrate for one DesiredState."""

    def __init__(self, state: DesiredState, substrate: Substrate):
        self.state = state
        self.substrate = substrate
        self.queue_manager = ComputeQueueManager(substrate, state.compute_pool, state.job_queue)
        self.scheduler = TriggerScheduler(self.queue_manager, state.descriptors)
        component = state.listeners[0].component if state.listeners else "backup"
        self.router = CompletionRouter(substrate, state.topic, component)
        self.router.listeners = list(state.listeners)

    def apply(self) -> None:
        state = self.state
        self.queue_manager.provision()
        for binding in state.bindings:
            bind_access(binding, self.substrate)
        for descriptor in state.descriptors:
            ref = self.substrate.register_job_definition(descriptor)
            logger.info("Registered job definition %s: %s", descriptor.name, ref)
        self.router.listeners = []
        self.router.provision_topic(state.email)
        for trigger in state.triggers:
            self.scheduler.arm(trigger)
        self.router.attach_all(state.listeners)


def apply_desired_state(state: DesiredState, substrate: Substrate) -> Orchestration:
    orchestration = Orchestration(state, substrate)
    orchestration.apply()
    return orchestration
