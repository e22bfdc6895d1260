"""backupctl - provisions scheduled folder backups into object storage."""

__version__ = "1.0.0"
