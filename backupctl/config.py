"""Settings and orchestration file loading.

Settings come from the environment (prefix ``BACKUPCTL_``) or a ``.env``
file. The orchestration file is JSON::

    {
        "image": "example/folder-backup:latest",
        "email": "ops@example.com",
        "backup_definitions": [
            {
                "source_id": "photos",
                "destination_url": "s3://my-backups/photos",
                "schedule": "0 3 * * *"
            }
        ]
    }
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import BackupDefinition


class Settings(BaseSettings):
    """Shared provisioning settings."""

    model_config = SettingsConfigDict(env_prefix="BACKUPCTL_", env_file=".env", extra="ignore")

    data_dir: str = Field(default=".backupctl", description="Local substrate state directory")
    substrate: Literal["local", "aws"] = "local"

    # Job descriptors
    image: str = "pego/google-backup-to-s3:latest"
    executable: str = "/back-up-drive-folder"
    name_prefix: str = "backup"
    component: str = "backup"
    vcpus: float = 1.0
    memory: int = 2048
    job_timeout: int = Field(default=3600, description="Local worker command timeout (seconds)")

    # Compute pool and queue
    compute_pool_name: str = "default-compute-environment"
    queue_name: str = "default-job-queue"
    max_vcpus: int = 256
    platform: str = "FARGATE"
    subnets: List[str] = Field(default_factory=list)
    security_group_ids: List[str] = Field(default_factory=list)
    assign_public_ip: bool = True

    # Identities
    execution_role: str = "backup-batch-execution-role"
    job_role: str = "backup-batch-job-role"
    events_role: str = "backup-events-submit-role"

    # Notifications
    topic_name: str = "backup-job-notifications"

    # Storage
    storage_scheme: str = "s3"
    region: Optional[str] = None
    account: str = "local"


@lru_cache
def get_settings() -> Settings:
    return Settings()


class OrchestrationConfig(BaseModel):
    """Parsed orchestration file."""
    image: Optional[str] = None
    email: Optional[str] = None
    backup_definitions: List[BackupDefinition] = Field(default_factory=list)


def parse_orchestration(data: dict) -> OrchestrationConfig:
    try:
        return OrchestrationConfig(**data)
    except (TypeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid orchestration config: {e}") from e


def load_orchestration(path: Union[str, Path]) -> OrchestrationConfig:
    """Load an orchestration file, surfacing every problem as ConfigurationError."""
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a JSON object at top level")
    return parse_orchestration(data)
