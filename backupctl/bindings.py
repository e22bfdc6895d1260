"""Storage binding resolution: destination URL to bucket, and write grants."""

import logging
from typing import Dict, List, Sequence
from urllib.parse import urlparse

from .errors import MalformedDestinationUrl
from .models import BackupDefinition, BucketBinding
from .substrate import Substrate

logger = logging.getLogger(__name__)


def resolve_bucket(destination_url: str, scheme: str = "s3") -> str:
    """Return the bucket (host component) of an object-storage URL.

    >>> resolve_bucket("s3://my-bucket/some/path")
    'my-bucket'
    """
    try:
        parsed = urlparse(destination_url)
    except ValueError as e:
        raise MalformedDestinationUrl(destination_url, str(e)) from e
    if parsed.scheme != scheme:
        raise MalformedDestinationUrl(destination_url, f"scheme must be {scheme}://")
    if not parsed.netloc:
        raise MalformedDestinationUrl(destination_url, "missing bucket")
    return parsed.netloc


def plan_bindings(
    definitions: Sequence[BackupDefinition],
    grantee: str,
    scheme: str = "s3",
) -> List[BucketBinding]:
    """One binding per distinct bucket, in first-seen order.

    A shared bucket is created if any definition pointing at it asks for it.
    """
    order: List[str] = []
    create: Dict[str, bool] = {}
    sources: Dict[str, List[str]] = {}
    for definition in definitions:
        bucket = resolve_bucket(definition.destination_url, scheme)
        if bucket not in create:
            order.append(bucket)
            create[bucket] = False
            sources[bucket] = []
        create[bucket] = create[bucket] or definition.create_destination_if_missing
        sources[bucket].append(definition.source_id)

    return [
        BucketBinding(bucket=bucket, create=create[bucket], grantee=grantee, sources=tuple(sources[bucket]))
        for bucket in order
    ]


def bind_access(binding: BucketBinding, substrate: Substrate) -> None:
    """Create or look up the bucket, then grant put-object to the grantee."""
    if binding.create:
        logger.info("Creating bucket %s", binding.bucket)
        substrate.create_bucket(binding.bucket)
    else:
        substrate.lookup_bucket(binding.bucket)
    substrate.grant_write(binding.bucket, binding.grantee)
    logger.info("Granted write on %s to %s", binding.bucket, binding.grantee)
