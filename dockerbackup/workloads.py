"""
Pause/resume of workloads around a snapshot or restore.

Both controllers record every workload they stop on the run's
OperationRecord, and ``resume`` only ever starts what is recorded there.
Workloads that were already stopped before the run are left alone.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from dockerbackup.errors import StepFailed
from dockerbackup.models import StoppedWorkload, PLATFORM_WORKLOAD
from dockerbackup.utils import get_logger

logger = get_logger(__name__)


def _default_log(level, message):
    logger.log(logging.getLevelName(level), message)


@dataclass
class PauseResult:
    stopped: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    untouched: List[str] = field(default_factory=list)

    @property
    def ok(self):
        return not self.failed


class ContainerController:
    """Stops and restarts individual containers (volume-granular mode)."""

    def __init__(self, runtime, record, log=None, is_dry_run=False):
        self.runtime = runtime
        self.record = record
        self.log = log or _default_log
        self.is_dry_run = is_dry_run

    def pause(self, names, volume=None):
        """Stop every running workload in ``names`` (best-effort).

        A failure to stop one workload is recorded in the result and does not
        prevent the remaining ones from being stopped.
        """
        result = PauseResult()
        for name in names:
            if not self.runtime.is_running(name):
                self.log('INFO', f"Container {name} is not running, leaving it untouched")
                result.untouched.append(name)
                continue

            if self.is_dry_run:
                self.log('INFO', f"Would stop container {name}")
                continue

            self.log('INFO', f"Stopping container {name}...")
            ok, detail = self.runtime.stop(name)
            if ok:
                self.record.stopped.append(StoppedWorkload(name=name, volume=volume))
                result.stopped.append(name)
                self.log('INFO', f"Stopped container {name}")
            else:
                self.log('ERROR', f"Failed to stop container {name}: {detail}")
                result.failed.append((name, detail))
        return result

    def resume(self, volume=None):
        """Start the containers this run stopped (optionally only for ``volume``).

        Each container gets exactly one start attempt; a failure is logged as a
        required manual intervention. Returns the names that were started.
        """
        pending = [w for w in self.record.stopped if volume is None or w.volume == volume]
        started = []
        for workload in pending:
            self.record.stopped.remove(workload)
            self.log('INFO', f"Starting container {workload.name}...")
            ok, detail = self.runtime.start(workload.name)
            if ok:
                started.append(workload.name)
                self.log('INFO', f"Started container {workload.name}")
            else:
                self.log('ERROR', f"Failed to start container {workload.name}: {detail}")
                self.log('WARNING', f"Manual intervention required: start container {workload.name}")
                self.record.manual_interventions.append(workload.name)
        return started


class PlatformController:
    """Stops and restarts the whole platform service as a single pseudo-workload."""

    def __init__(self, services, record, log=None, stop_timeout=30, start_timeout=60,
                 attempts=3, retry_delay=5, settle=2, is_dry_run=False):
        self.services = services
        self.record = record
        self.log = log or _default_log
        self.stop_timeout = stop_timeout
        self.start_timeout = start_timeout
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.settle = settle
        self.is_dry_run = is_dry_run

    @property
    def paused(self):
        return PLATFORM_WORKLOAD in self.record.stopped_names()

    def pause(self):
        """Stop the platform service; a timeout is fatal."""
        result = PauseResult()
        if not self.services.is_active():
            self.log('INFO', f"{self.services.service} is already stopped; this run will not start it")
            result.untouched.append(PLATFORM_WORKLOAD)
            return result

        if self.is_dry_run:
            self.log('INFO', f"Would stop {self.services.socket} and {self.services.service}")
            return result

        self.log('INFO', f"Stopping {self.services.socket} and {self.services.service}...")
        ok, detail = self.services.stop()
        # Recorded as soon as the stop was issued so any failure path restarts it
        self.record.stopped.append(StoppedWorkload(name=PLATFORM_WORKLOAD))
        result.stopped.append(PLATFORM_WORKLOAD)
        if not ok:
            self.log('WARNING', f"Stop command reported an error: {detail}")

        if not self.services.wait_for(False, self.stop_timeout):
            raise StepFailed('pause', self.services.service,
                             f"service still active after {self.stop_timeout}s")
        self.log('INFO', f"{self.services.service} stopped")
        return result

    def claim(self):
        """Record the service as stopped by this run so ``resume`` starts it."""
        if not self.paused:
            self.record.stopped.append(StoppedWorkload(name=PLATFORM_WORKLOAD))

    def resume(self):
        """Start the platform service if this run stopped it.

        Retries a fixed number of times, escalating to a forceful stop between
        attempts. Returns True when the service is running again (or was never
        stopped by this run).
        """
        if not self.paused:
            return True
        self.record.stopped = [w for w in self.record.stopped if w.name != PLATFORM_WORKLOAD]

        for attempt in range(1, self.attempts + 1):
            self.log('INFO', f"Starting {self.services.service} (attempt {attempt}/{self.attempts})...")
            ok, detail = self.services.start()
            if ok and self.settle:
                time.sleep(self.settle)
            if self.services.wait_for(True, self.start_timeout):
                self.log('INFO', f"{self.services.service} is running")
                return True
            self.log('WARNING', f"{self.services.service} did not come up: {detail or 'timeout'}")
            if attempt < self.attempts:
                self.services.kill()
                time.sleep(self.retry_delay)

        self.log('ERROR', f"Failed to start {self.services.service} after {self.attempts} attempts")
        self.log('WARNING', f"Manual intervention required: systemctl start {self.services.service}")
        self.record.manual_interventions.append(self.services.service)
        return False
