"""Error taxonomy for backupctl.

Configuration problems are detected while building the desired state and
abort the build before anything is provisioned. Provisioning problems come
from the substrate and propagate unchanged. Notification delivery problems
are logged by the router and never abort the pipeline.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Error codes."""
    CONFIGURATION = "CONFIGURATION"
    MALFORMED_DESTINATION_URL = "MALFORMED_DESTINATION_URL"
    PROVISIONING = "PROVISIONING"
    NOTIFICATION_DELIVERY = "NOTIFICATION_DELIVERY"


class BackupCtlError(Exception):
    """Base exception for backupctl."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class ConfigurationError(BackupCtlError):
    """Invalid backup definitions or settings."""

    def __init__(self, message: str = "Invalid configuration") -> None:
        super().__init__(ErrorCode.CONFIGURATION, message)


class MalformedDestinationUrl(ConfigurationError):
    """Destination URL is not an object-storage URL with a bucket."""

    def __init__(self, url: str, reason: str = "expected s3://bucket[/path]") -> None:
        self.url = url
        super().__init__(f"Malformed destination URL {url!r}: {reason}")
        self.code = ErrorCode.MALFORMED_DESTINATION_URL


class ProvisioningError(BackupCtlError):
    """The substrate rejected a create or bind call."""

    def __init__(self, message: str = "Provisioning failed") -> None:
        super().__init__(ErrorCode.PROVISIONING, message)


class NotificationDeliveryError(BackupCtlError):
    """Publishing to the notification channel failed."""

    def __init__(self, message: str = "Notification delivery failed") -> None:
        super().__init__(ErrorCode.NOTIFICATION_DELIVERY, message)
