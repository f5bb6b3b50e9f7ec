"""
Run execution engine: shared run scaffolding and the backup state machine.

Every run goes through the same path: acquire the run lock, execute the
operation's states, and on any failure mark the record failed, resume
whatever this run paused, release the lock and send the summary
notification. Cancellation is cooperative: ``_checkpoint()`` between steps
turns a received signal into a RunCancelled failure.
"""
import sys
import logging
import threading
from pathlib import Path

from dockerbackup import models, space, utils
from dockerbackup.borg import BorgRepository
from dockerbackup.errors import BackupError, LockBusy, PreconditionError, RunCancelled, StepFailed
from dockerbackup.lock import RunLock
from dockerbackup.mapper import map_dependencies, map_platform, select_volumes
from dockerbackup.models import OperationRecord
from dockerbackup.notifications.handlers import send_run_notification
from dockerbackup.remote import RemoteSync
from dockerbackup.runtime import DockerRuntime, ServiceManager
from dockerbackup.sequencer import sequence
from dockerbackup.utils import get_logger, format_bytes, format_duration
from dockerbackup.workloads import ContainerController, PlatformController

logger = get_logger(__name__)

MB = 1024 * 1024


class BaseExecutor:
    """Shared lock/log/fail/finalize handling for every operation kind."""

    kind = None
    STATES = ()

    def __init__(self, settings, repo=None, runtime=None, services=None, remote=None,
                 cancel_event=None, confirm=None):
        """
        Initialize executor.

        Args:
            settings: Settings for this run
            repo: BorgRepository (defaults to the configured repository)
            runtime: DockerRuntime collaborator
            services: ServiceManager for the platform service
            remote: RemoteSync collaborator
            cancel_event: threading.Event set by the signal handler
            confirm: Callable(prompt) -> bool for destructive confirmations
        """
        self.settings = settings
        self.is_dry_run = settings.dry_run
        self.repo = repo or BorgRepository(settings.repository,
                                           progress=settings.interactive and not settings.quiet)
        self.runtime = runtime or DockerRuntime()
        self.services = services or ServiceManager(settings.service_unit, settings.socket_unit)
        self.remote = remote or RemoteSync()
        self.cancel_event = cancel_event or threading.Event()
        self.confirm = confirm
        self.lock = RunLock(settings.lock_path)
        self.record = OperationRecord(kind=self.kind)
        self.busy = None
        self.failure = None
        self.controller = None
        self.platform = None

    def log(self, level, message):
        """Add a timestamped line to the run log and emit it to the module logger."""
        timestamp = utils.local_now().strftime('%Y-%m-%d %H:%M:%S')
        prefix = "[SIMULATION] " if self.is_dry_run else ""
        self.record.log_lines.append(f"[{timestamp}] [{level}] {prefix}{message}")
        logger.log(logging.getLevelName(level), f"{prefix}{message}")

    def transition(self, state):
        self.record.transition(state)
        self.log('INFO', f"### State: {state} ###")
        if self.settings.interactive and not self.settings.quiet and self.STATES:
            step = self.STATES.index(state) + 1 if state in self.STATES else len(self.STATES)
            print(utils.render_progress(step, len(self.STATES), state), file=sys.stderr)

    def _checkpoint(self):
        """Raise RunCancelled if a termination signal arrived since the last step."""
        if self.cancel_event.is_set():
            raise RunCancelled(getattr(self.cancel_event, 'signum', None))

    def _confirm(self, prompt):
        """Ask before a destructive step; only ``force`` skips the question."""
        if self.settings.force or self.is_dry_run:
            return
        if self.confirm is None or not self.confirm(prompt):
            raise PreconditionError(f"not confirmed: {prompt} (use --force for unattended runs)", step='confirm')

    def run(self):
        """Execute the operation and return its OperationRecord."""
        self.log('INFO', f"Starting {self.kind} run{' for ' + self.record.target if self.record.target else ''}")

        try:
            self.lock.acquire()
        except LockBusy as e:
            self.busy = e
            self.record.mark_failed('lock', str(self.lock.path), str(e))
            self.log('ERROR', f"Another run is in progress (pid {e.pid}); lock {e.path}")
            self.record.transition(models.FAILED)
            self._finalize()
            return self.record

        try:
            self.transition(models.LOCK_ACQUIRED)
            self._execute()
            if self.record.failures or self.record.manual_interventions:
                failed = ', '.join(target for target, _reason in self.record.failures)
                self.record.mark_failed('run', failed or None,
                                        'completed with failures' if failed else 'manual intervention required')
                self.record.transition(models.FAILED)
            else:
                self.record.succeeded = True
                self.transition(models.DONE)
        except BackupError as e:
            self._fail(e)
        except (RuntimeError, OSError) as e:
            # docker daemon or borg unreachable mid-run
            self._fail(StepFailed(self.record.state, self.record.target or self.kind, str(e)))
        except Exception as e:
            logger.exception("Unexpected error during %s run", self.kind)
            self._fail(e)
            raise
        finally:
            self.lock.release()
            self._finalize()
        return self.record

    def _execute(self):
        raise NotImplementedError

    def _fail(self, exc):
        """Single failure path: mark failed, roll back / resume, log with context."""
        self.failure = exc
        step = getattr(exc, 'step', None) or self.record.state
        target = getattr(exc, 'target', None) or self.record.target or None
        self.record.mark_failed(step, target, str(exc))
        if isinstance(exc, RunCancelled):
            self.record.cancelled = True
        self.log('ERROR', f"{self.kind} failed at step '{step}'{' for ' + target if target else ''}: {exc}")
        try:
            self._rollback()
        except Exception as rollback_error:
            logger.exception("Rollback raised")
            self.log('ERROR', f"Rollback failed: {rollback_error}")
        self.record.transition(models.FAILED)

    def _rollback(self):
        """Resume every workload this run stopped."""
        if self.controller is not None and self.record.stopped_names():
            self.log('WARNING', 'Resuming containers stopped by this run')
            self.controller.resume()
        if self.platform is not None and self.platform.paused:
            self.log('WARNING', 'Restarting the platform service stopped by this run')
            self.platform.resume()

    def _finalize(self):
        """Log the summary and send the notification."""
        status = 'completed successfully' if self.record.succeeded else 'failed'
        level = 'INFO' if self.record.succeeded else 'ERROR'
        self.log(level, f"{self.kind.capitalize()} run {status} in {format_duration(self.record.duration)}")

        if self.is_dry_run:
            self.log('INFO', 'Would send notification (dry run)')
            return
        results = send_run_notification(self.record, self.settings)
        for res in results:
            if not res.success:
                self.log('WARNING', f"Notification via {res.channel} failed: {res.detail}")

    # Shared steps
    def _require_tools(self, platform=True):
        if not self.repo.available():
            raise PreconditionError('borg is not installed or not on PATH', step='preflight', target='borg')
        if platform and not self.runtime.available():
            raise PreconditionError('docker is not installed or not on PATH', step='preflight', target='docker')

    def _require_repository(self):
        if not self.repo.exists():
            raise PreconditionError(f"repository {self.repo.path} does not exist", step='preflight',
                                    target=self.repo.path)

    def _platform_controller(self):
        return PlatformController(
            self.services, self.record, log=self.log,
            stop_timeout=self.settings.stop_timeout,
            start_timeout=self.settings.start_timeout,
            attempts=self.settings.start_attempts,
            is_dry_run=self.is_dry_run,
        )

    def _container_controller(self):
        return ContainerController(self.runtime, self.record, log=self.log, is_dry_run=self.is_dry_run)


class BackupExecutor(BaseExecutor):
    """Backup of the whole data root or of individual volumes."""

    kind = models.BACKUP
    STATES = (
        models.LOCK_ACQUIRED, models.MAPPED, models.PAUSED, models.SNAPSHOTTING,
        models.RESUMED, models.VERIFYING, models.PRUNING, models.COMPACTING,
        models.SYNCING, models.DONE,
    )

    def __init__(self, settings, full=False, volumes=None, exclude=None, **kwargs):
        super().__init__(settings, **kwargs)
        self.full = full
        self.volumes = list(volumes or [])
        self.exclude = list(exclude or [])
        self.needs_init = False
        self.record.target = settings.data_root if full else (','.join(self.volumes) or 'all volumes')

    def _execute(self):
        self._preflight()
        if self.full:
            self._run_full()
        else:
            self._run_volumes()

    def _preflight(self):
        self._require_tools()
        if self.full and not Path(self.settings.data_root).is_dir():
            raise PreconditionError(f"data root {self.settings.data_root} does not exist",
                                    target=self.settings.data_root)
        self.needs_init = not self.repo.exists()
        if self.needs_init:
            self.log('INFO', f"Repository {self.repo.path} is not initialized yet")

    def _ensure_repository(self):
        """Initialize the repository once the run is past every precondition."""
        if not self.needs_init:
            return
        if self.is_dry_run:
            self.log('INFO', f"Would initialize repository {self.repo.path} (encryption={self.settings.encryption})")
            return
        self.log('INFO', f"Initializing repository {self.repo.path} (encryption={self.settings.encryption})")
        Path(self.repo.path).mkdir(parents=True, exist_ok=True)
        result = self.repo.init(self.settings.encryption)
        if not result.ok:
            raise StepFailed('init', self.repo.path, result.tail())
        self.needs_init = False

    def _run_full(self):
        data_root = self.settings.data_root
        size = space.directory_size(data_root)
        map_platform(data_root, size=size)
        self.transition(models.MAPPED)
        self.log('INFO', f"Data root {data_root}: {format_bytes(size)}, bound to the whole platform")

        space.check(size, self.settings.repository, overhead_pct=self.settings.space_overhead_pct,
                    force=self.settings.force, log=self.log)
        self._checkpoint()
        self._confirm(f"Stop {self.settings.service_unit} to back up {data_root}?")
        self._ensure_repository()

        self.platform = self._platform_controller()
        self.transition(models.PAUSED)
        self.platform.pause()
        self._checkpoint()

        self.transition(models.SNAPSHOTTING)
        name = utils.archive_name(utils.PLATFORM_PREFIX)
        self._create(name, [data_root])

        self.transition(models.RESUMED)
        self.platform.resume()
        self._checkpoint()

        self._verify(name)
        self._maintain([utils.PLATFORM_PREFIX])

    def _map_volumes(self):
        try:
            names = self.runtime.list_volumes()
        except RuntimeError as e:
            raise PreconditionError(f"cannot enumerate volumes: {e}", step='map', target='docker')
        selected = select_volumes(names, self.volumes, self.exclude, log=self.log)
        try:
            mapping = map_dependencies(self.runtime, selected)
        except RuntimeError as e:
            raise PreconditionError(f"cannot map volume users: {e}", step='map', target='docker')
        for volume in mapping.values():
            if volume.mountpoint and Path(volume.mountpoint).is_dir():
                volume.size = space.directory_size(volume.mountpoint)
        return mapping

    def _run_volumes(self):
        mapping = self._map_volumes()
        plan = sequence(mapping.values(), self.settings.priority, self.settings.skip_in_use)
        for name in plan.skipped:
            self._skip(name, 'in use')
        self.transition(models.MAPPED)
        self.log('INFO', f"Volumes: {len(plan.ordinary)} ordinary, {len(plan.deferred)} deferred, "
                         f"{plan.skipped_count} skipped (in use)")
        if plan.deferred:
            self.log('INFO', f"Deferred until last: {', '.join(plan.deferred)}")
        if not plan.order:
            self.log('WARNING', 'Every selected volume was skipped; nothing to back up')
            return

        total = sum(mapping[name].size for name in plan.order)
        space.check(total, self.settings.repository, overhead_pct=self.settings.space_overhead_pct,
                    min_free=self.settings.min_free_mb * MB, force=self.settings.force, log=self.log)
        self._checkpoint()
        if any(mapping[name].running for name in plan.order):
            self._confirm('Stop the containers using the selected volumes during their backup?')
        self._ensure_repository()

        self.controller = self._container_controller()
        processed = []
        for name in plan.order:
            self._checkpoint()
            if self._backup_volume(mapping[name]):
                processed.append(name)

        if not processed:
            if self.record.failures:
                raise StepFailed('snapshot', 'volumes', 'no volume was backed up')
            self.log('WARNING', 'No volume was backed up; every volume was skipped')
            return
        self._maintain(processed)

    def _skip(self, name, reason):
        self.record.skipped.append(name)
        self.record.skip_reasons[name] = reason

    def _backup_volume(self, volume):
        """Pause, snapshot, resume and verify one volume; returns True if it is ready for pruning."""
        self.log('INFO', f"--- Volume {volume.name} ({format_bytes(volume.size)}) ---")
        if not volume.mountpoint:
            self.log('ERROR', f"Volume {volume.name} has no mountpoint")
            self.record.failures.append((volume.name, 'no mountpoint'))
            return False

        self.transition(models.PAUSED)
        result = self.controller.pause(volume.running, volume=volume.name)
        if not result.ok:
            failed = ', '.join(name for name, _detail in result.failed)
            self.log('WARNING', f"Could not stop {failed}; skipping volume {volume.name}")
            self._skip(volume.name, f"could not stop {failed}")
            self.controller.resume(volume.name)
            return False

        name = utils.archive_name(volume.name)
        created = False
        try:
            self.transition(models.SNAPSHOTTING)
            created = self._create(name, [volume.mountpoint])
        except StepFailed as e:
            self.log('ERROR', str(e))
            self.record.failures.append((volume.name, str(e)))
            return False
        finally:
            self.transition(models.RESUMED)
            self.controller.resume(volume.name)

        if not created and not self.is_dry_run:
            return False
        try:
            self._verify(name)
        except StepFailed as e:
            self.log('ERROR', str(e))
            self.record.failures.append((volume.name, str(e)))
            return False
        return True

    def _create(self, name, sources):
        if self.is_dry_run:
            self.log('INFO', f"Would create archive {self.repo.location(name)} from {', '.join(sources)}")
            return False
        self.log('INFO', f"Creating archive {name} (compression {self.settings.compression})...")
        result = self.repo.create(name, sources, compression=self.settings.compression)
        if not result.ok:
            raise StepFailed('create', name, result.tail())
        if result.warning:
            self.log('WARNING', f"borg create finished with warnings: {result.tail(5)}")
        self.record.archives.append(name)
        self.log('INFO', f"Archive {name} created")
        for line in result.tail(12).splitlines():
            self.log('DEBUG', line)
        return True

    def _verify(self, name):
        self._checkpoint()
        self.transition(models.VERIFYING)
        if self.is_dry_run:
            self.log('INFO', f"Would verify archive {name}")
            return
        self.log('INFO', f"Verifying archive {name}...")
        result = self.repo.check(name)
        if not result.ok:
            raise StepFailed('verify', name, result.tail())
        self.log('INFO', f"Archive {name} verified")

    def _maintain(self, prefixes):
        """Prune, compact and sync the repository after the verified snapshots."""
        self._checkpoint()
        self.transition(models.PRUNING)
        if self.needs_init:
            # dry run against a repository that does not exist yet
            self.log('INFO', f"Would prune archives of {', '.join(prefixes)} once the repository exists")
        else:
            for prefix in prefixes:
                result = self.repo.prune(self.settings.retention, glob=utils.archive_glob(prefix),
                                         dry_run=self.is_dry_run)
                if not result.ok:
                    raise StepFailed('prune', prefix, result.tail())
                verb = 'Would prune' if self.is_dry_run else 'Pruned'
                self.log('INFO', f"{verb} {len(result.pruned)} archive(s) for {prefix}")
        self._checkpoint()

        self.transition(models.COMPACTING)
        if self.is_dry_run:
            self.log('INFO', f"Would compact {self.repo.path}")
        else:
            result = self.repo.compact()
            if not result.ok:
                raise StepFailed('compact', self.repo.path, result.tail())
        self._checkpoint()

        self.transition(models.SYNCING)
        self._sync()

    def _sync(self):
        remote = self.settings.remote
        if not remote:
            self.log('INFO', 'Remote sync not configured, skipping')
            return
        if self.is_dry_run:
            self.log('INFO', f"Would sync {self.repo.path} to {remote}")
            return
        self.log('INFO', f"Syncing {self.repo.path} to {remote}...")
        ok, output = self.remote.sync(self.repo.path, remote)
        if not ok:
            raise StepFailed('sync', remote, output[-2000:])
        self.log('INFO', 'Remote sync completed')
