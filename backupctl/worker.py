"""Worker process executing queue entries on the local substrate."""

import logging
import os
import signal
import subprocess
import time
from typing import Optional

from .models import TERMINAL_STATUSES, JobStatus, QueueEntry, utcnow
from .router import CompletionRouter
from .storage import LocalSubstrate

logger = logging.getLogger(__name__)


class Worker:
    """Runs admitted entries and routes their lifecycle events."""

    def __init__(self, substrate: LocalSubstrate, router: CompletionRouter, worker_id: int = 1, timeout: int = 3600):
        self.substrate = substrate
        self.router = router
        self.substrate.event_sink = router.route
        self.worker_id = worker_id
        self.timeout = timeout
        self.running = True
        self.current_entry: Optional[QueueEntry] = None

    @classmethod
    def for_substrate(cls, substrate: LocalSubstrate, worker_id: int = 1, timeout: int = 3600) -> "Worker":
        """Worker whose router uses the listeners already applied to the substrate."""
        listeners = substrate.listeners()
        topic = listeners[0].topic if listeners else ""
        router = CompletionRouter(substrate, topic)
        router.listeners = listeners
        return cls(substrate, router, worker_id, timeout)

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        self.running = False
        if self.current_entry:
            logger.info("[Worker %d] Finishing current job %s...", self.worker_id, self.current_entry.job_name)

    def run(self, poll_interval: float = 1.0) -> None:
        """Run the worker loop."""
        logger.info("[Worker %d] Started", self.worker_id)
        while self.running:
            try:
                if not self.run_once():
                    time.sleep(poll_interval)
            except KeyboardInterrupt:
                self.running = False
            except Exception:
                logger.exception("[Worker %d] Error", self.worker_id)
                time.sleep(poll_interval)

        logger.info("[Worker %d] Stopped", self.worker_id)

    def run_once(self) -> Optional[QueueEntry]:
        """Admit and execute one entry, if the pool has room for one."""
        entry = self.substrate.claim_next()
        if entry is None:
            return None
        return self._execute(entry)

    def _execute(self, entry: QueueEntry) -> QueueEntry:
        self.current_entry = entry
        try:
            return self._run(entry)
        except Exception as e:
            self._abandon(entry, e)
            raise
        finally:
            self.current_entry = None

    def _abandon(self, entry: QueueEntry, error: Exception) -> None:
        """Fail an entry left STARTING or RUNNING so it releases its vCPUs."""
        stored = self.substrate.get_entry(entry.id)
        if stored is None or stored.status in TERMINAL_STATUSES:
            return
        logger.error("[Worker %d] %s abandoned: %s", self.worker_id, entry.job_name, error)
        self.substrate.transition(
            stored, JobStatus.FAILED, stopped_at=utcnow(), status_reason=f"Worker error: {error}",
        )

    def _run(self, entry: QueueEntry) -> QueueEntry:
        self.substrate.transition(entry, JobStatus.RUNNING, started_at=utcnow())
        logger.info("[Worker %d] Running %s: %s", self.worker_id, entry.job_name, " ".join(entry.command))
        env = dict(os.environ)
        env.update(entry.environment)

        try:
            result = subprocess.run(
                entry.command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            logger.warning("[Worker %d] %s timed out", self.worker_id, entry.job_name)
            return self.substrate.transition(
                entry, JobStatus.FAILED, stopped_at=utcnow(),
                status_reason=f"Command timeout ({self.timeout} seconds)",
            )
        except OSError as e:
            logger.warning("[Worker %d] %s could not start: %s", self.worker_id, entry.job_name, e)
            return self.substrate.transition(
                entry, JobStatus.FAILED, stopped_at=utcnow(), status_reason=str(e),
            )

        if result.returncode == 0:
            logger.info("[Worker %d] %s succeeded", self.worker_id, entry.job_name)
            return self.substrate.transition(
                entry, JobStatus.SUCCEEDED, stopped_at=utcnow(), exit_code=0,
                status_reason="Essential container in task exited",
            )
        reason = (result.stderr or "").strip()[-500:] or f"Exit code: {result.returncode}"
        logger.warning("[Worker %d] %s failed: %s", self.worker_id, entry.job_name, reason)
        return self.substrate.transition(
            entry, JobStatus.FAILED, stopped_at=utcnow(), exit_code=result.returncode,
            status_reason=reason,
        )
