"""AWS substrate: Batch, EventBridge, S3, IAM and SNS through boto3."""

import json
import logging
import re
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigurationError, NotificationDeliveryError, ProvisioningError
from .models import ComputePool, JobDescriptor, JobQueueSpec, ListenerSpec, Trigger
from .substrate import Substrate

logger = logging.getLogger(__name__)

SNS_SUBJECT_LIMIT = 100
_DAYS = re.compile(r"(?<![/\d])\d+")


def aws_cron(schedule: str) -> str:
    """Convert a 5-field cron expression to EventBridge's 6-field form.

    >>> aws_cron("0 3 * * *")
    'cron(0 3 * * ? *)'
    >>> aws_cron("30 2 * * 1-5")
    'cron(30 2 ? * 2-6 *)'
    >>> aws_cron("0 3 * * */2")
    'cron(0 3 ? * */2 *)'
    """
    fields = schedule.split()
    if len(fields) != 5:
        raise ConfigurationError(f"Invalid cron schedule {schedule!r}: expected 5 fields")
    minute, hour, dom, month, dow = fields
    if dow == "*":
        dow = "?"
    else:
        # EventBridge numbers days 1-7 from Sunday; step values keep their meaning
        dow = _DAYS.sub(lambda m: str(int(m.group()) % 7 + 1), dow)
        if dom == "*":
            dom = "?"
    return f"cron({minute} {hour} {dom} {month} {dow} *)"


def role_name(role: str) -> str:
    """IAM role name from a role name or ARN."""
    return role.rsplit("/", 1)[-1]


def role_arn(role: str, account: str) -> str:
    if role.startswith("arn:"):
        return role
    return f"arn:aws:iam::{account}:role/{role}"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


class AwsSubstrate(Substrate):
    """Applies resources to an AWS account."""

    def __init__(self, settings, session: Optional[boto3.session.Session] = None):
        self.settings = settings
        self.session = session or boto3.session.Session(region_name=settings.region)
        self.batch = self.session.client("batch")
        self.events = self.session.client("events")
        self.s3 = self.session.client("s3")
        self.iam = self.session.client("iam")
        self.sns = self.session.client("sns")
        self._account: Optional[str] = None
        self._queue_arns: Dict[str, str] = {}
        self._topic_arns: Dict[str, str] = {}

    @property
    def account(self) -> str:
        if self._account is None:
            self._account = self.session.client("sts").get_caller_identity()["Account"]
        return self._account

    def _call(self, what: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(f"{what} failed: {e}") from e

    # Compute

    def ensure_compute_pool(self, pool: ComputePool) -> str:
        found = self._call(
            "describe_compute_environments", self.batch.describe_compute_environments,
            computeEnvironments=[pool.name],
        )["computeEnvironments"]
        if found:
            return found[0]["computeEnvironmentArn"]
        created = self._call(
            "create_compute_environment", self.batch.create_compute_environment,
            computeEnvironmentName=pool.name,
            type="MANAGED",
            state="ENABLED",
            computeResources={
                "type": pool.platform,
                "maxvCpus": pool.max_vcpus,
                "subnets": list(pool.subnets),
                "securityGroupIds": list(pool.security_group_ids),
            },
        )
        logger.info("Created compute environment %s", pool.name)
        return created["computeEnvironmentArn"]

    def ensure_job_queue(self, queue: JobQueueSpec) -> str:
        found = self._call(
            "describe_job_queues", self.batch.describe_job_queues, jobQueues=[queue.name],
        )["jobQueues"]
        if found:
            arn = found[0]["jobQueueArn"]
        else:
            arn = self._call(
                "create_job_queue", self.batch.create_job_queue,
                jobQueueName=queue.name,
                state="ENABLED",
                priority=queue.priority,
                computeEnvironmentOrder=[
                    {"order": order.order, "computeEnvironment": order.pool} for order in queue.compute_order
                ],
            )["jobQueueArn"]
            logger.info("Created job queue %s", queue.name)
        self._queue_arns[queue.name] = arn
        return arn

    def register_job_definition(self, descriptor: JobDescriptor) -> str:
        container = {
            "image": descriptor.image,
            "command": list(descriptor.command),
            "jobRoleArn": role_arn(descriptor.job_role, self.account),
            "executionRoleArn": role_arn(descriptor.execution_role, self.account),
            "resourceRequirements": [
                {"type": "VCPU", "value": f"{descriptor.resources.vcpus:g}"},
                {"type": "MEMORY", "value": str(descriptor.resources.memory)},
            ],
            "networkConfiguration": {
                "assignPublicIp": "ENABLED" if descriptor.assign_public_ip else "DISABLED",
            },
            "secrets": [{"name": s.name, "valueFrom": s.locator} for s in descriptor.secrets],
        }
        registered = self._call(
            "register_job_definition", self.batch.register_job_definition,
            jobDefinitionName=descriptor.name,
            type="container",
            containerProperties=container,
            platformCapabilities=[descriptor.platform],
        )
        return registered["jobDefinitionArn"]

    def submit_job(self, queue: str, job_definition: str, job_name: str) -> str:
        submitted = self._call(
            "submit_job", self.batch.submit_job,
            jobName=job_name, jobQueue=queue, jobDefinition=job_definition,
        )
        return submitted["jobId"]

    # Storage

    def create_bucket(self, bucket: str) -> None:
        kwargs = {"Bucket": bucket}
        region = self.session.region_name
        if region and region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self.s3.create_bucket(**kwargs)
        except ClientError as e:
            if _error_code(e) == "BucketAlreadyOwnedByYou":
                return
            raise ProvisioningError(f"create_bucket {bucket} failed: {e}") from e
        logger.info("Created bucket %s", bucket)

    def lookup_bucket(self, bucket: str) -> None:
        self._call(f"head_bucket {bucket}", self.s3.head_bucket, Bucket=bucket)

    def grant_write(self, bucket: str, grantee: str) -> None:
        policy = {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Action": ["s3:PutObject"],
                "Resource": [f"arn:aws:s3:::{bucket}/*"],
            }],
        }
        self._call(
            "put_role_policy", self.iam.put_role_policy,
            RoleName=role_name(grantee),
            PolicyName=f"{bucket}-write",
            PolicyDocument=json.dumps(policy, sort_keys=True),
        )

    # Events and notifications

    def ensure_topic(self, topic: str) -> str:
        arn = self._call("create_topic", self.sns.create_topic, Name=topic)["TopicArn"]
        # listener rules publish as the EventBridge service principal
        policy = {
            "Version": "2012-10-17",
            "Statement": [{
                "Sid": "AllowEventBridgePublish",
                "Effect": "Allow",
                "Principal": {"Service": "events.amazonaws.com"},
                "Action": "sns:Publish",
                "Resource": arn,
            }],
        }
        self._call(
            "set_topic_attributes", self.sns.set_topic_attributes,
            TopicArn=arn, AttributeName="Policy", AttributeValue=json.dumps(policy, sort_keys=True),
        )
        self._topic_arns[topic] = arn
        return arn

    def _topic_arn(self, topic: str) -> str:
        return self._topic_arns.get(topic) or f"arn:aws:sns:{self.session.region_name}:{self.account}:{topic}"

    def subscribe_email(self, topic: str, email: str) -> None:
        self._call(
            "subscribe", self.sns.subscribe,
            TopicArn=self._topic_arn(topic), Protocol="email", Endpoint=email,
        )

    def _queue_arn(self, queue: str) -> str:
        return self._queue_arns.get(queue) or f"arn:aws:batch:{self.session.region_name}:{self.account}:job-queue/{queue}"

    def put_schedule_rule(self, trigger: Trigger, queue: str) -> None:
        self._call(
            "put_rule", self.events.put_rule,
            Name=trigger.name,
            ScheduleExpression=aws_cron(trigger.schedule),
            State="ENABLED" if trigger.enabled else "DISABLED",
        )
        self._call(
            "put_targets", self.events.put_targets,
            Rule=trigger.name,
            Targets=[{
                "Id": trigger.job_name[:64],
                "Arn": self._queue_arn(queue),
                "RoleArn": role_arn(self.settings.events_role, self.account),
                "BatchParameters": {"JobDefinition": trigger.job_name, "JobName": trigger.job_name},
            }],
        )

    def put_listener(self, listener: ListenerSpec) -> None:
        # Batch events carry the full job-definition ARN, so match on its prefix
        pattern = listener.event_pattern()
        pattern["detail"]["jobDefinition"] = [{
            "prefix": f"arn:aws:batch:{self.session.region_name}:{self.account}:job-definition/{listener.job_definition}:",
        }]
        self._call(
            "put_rule", self.events.put_rule,
            Name=listener.name,
            EventPattern=json.dumps(pattern, sort_keys=True),
            State="ENABLED",
        )
        self._call(
            "put_targets", self.events.put_targets,
            Rule=listener.name,
            Targets=[{"Id": "notify", "Arn": self._topic_arn(listener.topic)}],
        )

    def publish(self, topic: str, subject: str, message: str) -> None:
        try:
            self.sns.publish(
                TopicArn=self._topic_arn(topic),
                Subject=subject[:SNS_SUBJECT_LIMIT],
                Message=message,
            )
        except (ClientError, BotoCoreError) as e:
            raise NotificationDeliveryError(f"publish to {topic} failed: {e}") from e
