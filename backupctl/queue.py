"""Compute queue management."""

import logging
from typing import Optional

from .models import ComputeOrder, ComputePool, JobDescriptor, JobHandle, JobQueueSpec
from .substrate import Substrate

logger = logging.getLogger(__name__)


def default_pool(settings) -> ComputePool:
    return ComputePool(
        name=settings.compute_pool_name,
        max_vcpus=settings.max_vcpus,
        platform=settings.platform,
        subnets=tuple(settings.subnets),
        security_group_ids=tuple(settings.security_group_ids),
    )


def default_queue(settings) -> JobQueueSpec:
    return JobQueueSpec(
        name=settings.queue_name,
        priority=0,
        compute_order=(ComputeOrder(pool=settings.compute_pool_name, order=0),),
    )


class ComputeQueueManager:
    """Owns the single shared pool and queue every job submits into."""

    def __init__(self, substrate: Substrate, pool: ComputePool, queue: JobQueueSpec):
        self.substrate = substrate
        self.pool = pool
        self.queue = queue

    def provision(self) -> str:
        """Create the pool and queue; return the queue reference."""
        pool_ref = self.substrate.ensure_compute_pool(self.pool)
        logger.info("Compute pool %s ready (max %d vCPU): %s", self.pool.name, self.pool.max_vcpus, pool_ref)
        queue_ref = self.substrate.ensure_job_queue(self.queue)
        logger.info("Job queue %s ready: %s", self.queue.name, queue_ref)
        return queue_ref

    def enqueue(self, descriptor: JobDescriptor, run_label: Optional[str] = None) -> JobHandle:
        """Submit one run of a descriptor. Does not wait for execution."""
        job_name = run_label or descriptor.name
        job_id = self.substrate.submit_job(self.queue.name, descriptor.name, job_name)
        logger.info("Enqueued %s as %s (%s)", descriptor.name, job_name, job_id)
        return JobHandle(job_id=job_id, job_name=job_name, job_definition=descriptor.name, queue=self.queue.name)
