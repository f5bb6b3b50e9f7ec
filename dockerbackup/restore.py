"""
Restore state machine with rollback.

The current data root (the Docker data directory, or one volume's
mountpoint) is moved aside, never copied, before extraction. Any failure
after that point puts the moved copy back before workloads are resumed,
and the copy is only deleted once the post-restore functional check has
passed.
"""
import os
import shutil
from pathlib import Path

from dockerbackup import layout, models, space, utils
from dockerbackup.errors import LayoutUnresolved, PreconditionError, StepFailed
from dockerbackup.executor import BaseExecutor
from dockerbackup.runtime import is_root
from dockerbackup.utils import get_logger, format_bytes

logger = get_logger(__name__)


class RestoreExecutor(BaseExecutor):
    """Restore the whole data root (``full``) or a single volume from an archive."""

    kind = models.RESTORE
    STATES = (
        models.LOCK_ACQUIRED, models.VALIDATED, models.SPACE_CHECKED, models.PAUSED,
        models.RELOCATED, models.EXTRACTING, models.PERMISSIONS_FIXED, models.RESUMED,
        models.FUNCTIONAL_CHECK, models.DONE,
    )

    def __init__(self, settings, archive=None, volume=None, full=False, **kwargs):
        super().__init__(settings, **kwargs)
        if not full and not volume:
            raise ValueError('restore needs either full=True or a volume name')
        if not full and volume == utils.PLATFORM_PREFIX:
            raise ValueError(f"volume '{volume}' is named like the data-root archives; restore it with --full")
        self.full = full
        self.volume = volume
        self.archive = archive
        self.data_root = Path(settings.data_root) if full else None
        self.profile = None
        self.plan = None
        self.staging = []
        self.staged_root = None
        self.platform_paused = False
        self.resumed = []
        self.record.target = settings.data_root if full else volume

    # Target helpers
    def _archive_prefix(self):
        return utils.PLATFORM_PREFIX if self.full else self.volume

    def _volume_mountpoint(self):
        """Mountpoint of the target volume, predicted from the root dir if it does not exist yet."""
        mountpoint = self.runtime.volume_mountpoint(self.volume)
        if mountpoint:
            return Path(mountpoint), True
        root = self.runtime.root_dir() or self.settings.data_root
        return Path(root) / 'volumes' / self.volume / '_data', False

    def _execute(self):
        self._require_tools()
        self._require_repository()
        size = self._validate()
        self._check_space(size)
        self._checkpoint()

        if self.plan is None:
            self._stage_fallback()
        self._checkpoint()

        if self.is_dry_run:
            self._simulate()
            return

        self._confirm(f"Replace {self.data_root} with the contents of archive {self.archive}?")
        self._pause()
        self._checkpoint()
        self._relocate()
        self._checkpoint()
        self._extract()
        self._fix_permissions()
        self._resume()
        self._functional_check()
        self._discard_relocated()

    def _validate(self):
        """Resolve the archive, read its size and classify its layout; returns the size or None."""
        prefix = self._archive_prefix()
        if not self.archive:
            try:
                self.archive = self.repo.latest_archive(glob=utils.archive_glob(prefix))
            except RuntimeError as e:
                raise PreconditionError(f"cannot list archives in {self.repo.path}: {e}", step='validate',
                                        target=self.repo.path)
            if not self.archive:
                raise PreconditionError(f"no archive found for {prefix} in {self.repo.path}",
                                        step='validate', target=prefix)
            self.log('INFO', f"Using latest archive {self.archive}")
        else:
            archive_prefix, _ts = utils.split_archive_name(self.archive)
            if archive_prefix and archive_prefix != prefix:
                self.log('WARNING', f"Archive {self.archive} was not created for {prefix}")

        try:
            info = self.repo.archive_info(self.archive)
        except RuntimeError as e:
            raise PreconditionError(f"archive {self.archive} not found: {e}", step='validate',
                                    target=self.archive)

        if self.full:
            self.profile = layout.LayoutProfile.for_data_root(self.data_root)
        else:
            self.data_root, exists = self._volume_mountpoint()
            if not exists:
                self.log('INFO', f"Volume {self.volume} does not exist yet; it will be created")
            self.profile = layout.LayoutProfile.for_volume(self.data_root)

        sample = layout.sample_paths(self.repo, self.archive)
        self.plan = layout.classify(sample, self.profile)
        if self.plan is None:
            self.log('WARNING', f"Could not classify the layout of {self.archive} from {len(sample)} sampled paths")
        else:
            self.log('INFO', f"Archive layout: {self.plan.describe()}")

        size = (info.get('stats') or {}).get('original_size')
        self.transition(models.VALIDATED)
        self.log('INFO', f"Archive {self.archive} created {info.get('start') or info.get('time') or '?'}, "
                         f"original size {format_bytes(size)}")
        return size

    def _check_space(self, size):
        destination = self.data_root.parent
        if size is None:
            self.log('WARNING', f"Could not determine the size of {self.archive}; skipping the space check")
        else:
            space.check(size, destination, overhead_pct=self.settings.space_overhead_pct,
                        force=self.settings.force, log=self.log)
        self.transition(models.SPACE_CHECKED)

    def _stage_fallback(self):
        """Full extraction into a staging area before anything is touched."""
        if self.is_dry_run:
            self.log('INFO', f"Would extract {self.archive} into a staging directory and search it for a data root")
            return
        found = self._fallback_into_staging()
        if found is None:
            raise LayoutUnresolved(self.archive)
        self.staged_root = found

    def _fallback_into_staging(self):
        staging = layout.make_staging(self.data_root.parent)
        self.staging.append(staging)
        self.log('INFO', f"Extracting the whole archive into {staging}...")
        result, found = layout.fallback_extract(self.repo, self.archive, self.profile, staging)
        if not result.ok:
            self.log('ERROR', f"Full extraction failed: {result.tail()}")
            return None
        if found is None:
            self.log('ERROR', f"No recognizable data root found in {self.archive}")
            return None
        self.log('INFO', f"Found data root at {found.relative_to(staging) or '.'} in the extracted archive")
        return found

    def _simulate(self):
        self.log('INFO', f"Would stop workloads using {self.data_root}")
        self.log('INFO', f"Would move {self.data_root} to {self.data_root}.bak.<timestamp>")
        plan = self.plan.describe() if self.plan else layout.FALLBACK
        self.log('INFO', f"Would extract {self.archive} into {self.data_root} ({plan})")
        self.log('INFO', 'Would fix permissions, restart workloads and run the functional check')

    def _pause(self):
        self.transition(models.PAUSED)
        if self.full:
            self.platform = self._platform_controller()
            result = self.platform.pause()
            self.platform_paused = bool(result.stopped)
            return

        if not self.runtime.volume_exists(self.volume):
            ok, detail = self.runtime.create_volume(self.volume)
            if not ok:
                raise StepFailed('create_volume', self.volume, detail)
            mountpoint = self.runtime.volume_mountpoint(self.volume)
            if mountpoint and Path(mountpoint) != self.data_root:
                self.data_root = Path(mountpoint)
                self.profile = layout.LayoutProfile.for_volume(self.data_root)
                self.plan = layout.classify(layout.sample_paths(self.repo, self.archive), self.profile)

        self.controller = self._container_controller()
        running = self.runtime.containers_for_volume(self.volume, running_only=True)
        result = self.controller.pause(running, volume=self.volume)
        if not result.ok:
            raise StepFailed('pause', self.volume, ', '.join(name for name, _detail in result.failed))

    def _relocate(self):
        """Move the current data root aside and create an empty one in its place."""
        relocated = Path(f"{self.data_root}.bak.{utils.relocation_timestamp()}")
        if self.data_root.exists():
            mode = self.data_root.stat().st_mode & 0o7777
            self.log('INFO', f"Moving {self.data_root} to {relocated}")
            os.rename(self.data_root, relocated)
            self.record.relocated_path = str(relocated)
        else:
            mode = 0o710 if self.full else 0o755
            self.log('INFO', f"{self.data_root} does not exist; nothing to move aside")
        self.data_root.mkdir(parents=True)
        os.chmod(self.data_root, mode)
        self.transition(models.RELOCATED)

    def _extract(self):
        self.transition(models.EXTRACTING)
        if self.staged_root is not None:
            layout.move_contents(self.staged_root, self.data_root)
        else:
            self.log('INFO', f"Extracting {self.archive} into {self.data_root} ({self.plan.describe()})...")
            result = layout.extract_with_plan(self.repo, self.archive, self.plan, self.data_root)
            if not result.ok or not any(self.data_root.iterdir()):
                self.log('WARNING', f"Targeted extraction failed ({result.tail(5) or 'no files extracted'}), "
                                    f"falling back to full extraction")
                self._empty_data_root()
                found = self._fallback_into_staging()
                if found is None:
                    raise LayoutUnresolved(self.archive)
                layout.move_contents(found, self.data_root)
        self._remove_staging()
        self.log('INFO', f"Extraction of {self.archive} completed")

    def _empty_data_root(self):
        for entry in self.data_root.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def _fix_permissions(self):
        """Best-effort ownership/mode repair; problems are logged as warnings."""
        self.transition(models.PERMISSIONS_FIXED)
        try:
            if self.full:
                self._fix_platform_permissions()
            else:
                self._fix_volume_permissions()
        except OSError as e:
            self.log('WARNING', f"Could not fix permissions on {self.data_root}: {e}")

    def _fix_platform_permissions(self):
        root = self.data_root
        if is_root():
            os.chown(root, 0, 0)
        volumes = root / 'volumes'
        if volumes.is_dir():
            os.chmod(volumes, 0o711)
            for entry in volumes.iterdir():
                if entry.is_dir() and not entry.is_symlink():
                    os.chmod(entry, 0o755)
        containers = root / 'containers'
        if containers.is_dir():
            os.chmod(containers, 0o710)
            for config in containers.glob('*/*.json'):
                os.chmod(config, 0o640)

    def _fix_volume_permissions(self):
        if not self.record.relocated_path:
            return
        previous = os.stat(self.record.relocated_path)
        os.chmod(self.data_root, previous.st_mode & 0o7777)
        if is_root():
            os.chown(self.data_root, previous.st_uid, previous.st_gid)

    def _resume(self):
        self.transition(models.RESUMED)
        if self.full:
            if not self.platform.resume():
                raise StepFailed('resume', self.settings.service_unit, 'service did not start')
            return
        self.resumed = self.controller.resume(self.volume)
        if self.record.manual_interventions:
            raise StepFailed('resume', self.volume,
                             f"could not start {', '.join(self.record.manual_interventions)}")

    def _functional_check(self):
        self.transition(models.FUNCTIONAL_CHECK)
        if self.full:
            if not self.platform_paused:
                self.log('INFO', f"{self.settings.service_unit} was not running before the restore; skipping the probe")
                return
            ok, detail = self.runtime.probe()
            if not ok:
                raise StepFailed('functional_check', self.settings.service_unit, detail)
            self.log('INFO', f"Functional check passed: {detail}")
            return

        if not any(self.data_root.iterdir()):
            raise StepFailed('functional_check', self.volume, 'restored volume is empty')
        not_running = [name for name in self.resumed if not self.runtime.is_running(name)]
        if not_running:
            raise StepFailed('functional_check', self.volume, f"not running after restart: {', '.join(not_running)}")
        self.log('INFO', f"Functional check passed for volume {self.volume}")

    def _discard_relocated(self):
        relocated = self.record.relocated_path
        if not relocated:
            return
        if self.settings.keep_relocated:
            self.log('INFO', f"Previous data kept at {relocated}")
            return
        error = layout.remove_tree(relocated)
        if error:
            self.log('WARNING', f"Could not remove {relocated}: {error}")
        else:
            self.log('INFO', f"Removed previous data {relocated}")

    def _remove_staging(self):
        while self.staging:
            staging = self.staging.pop()
            error = layout.remove_tree(staging)
            if error:
                self.log('WARNING', f"Could not remove staging directory {staging}: {error}")

    # Rollback
    def _rollback(self):
        """Put the relocated data root back, then resume workloads."""
        try:
            relocated = self.record.relocated_path
            if relocated and os.path.exists(relocated) and not self.record.rolled_back:
                if self._stop_for_rollback():
                    self.log('WARNING', f"Rolling back: restoring {relocated} to {self.data_root}")
                    if os.path.lexists(self.data_root):
                        shutil.rmtree(self.data_root)
                    os.rename(relocated, self.data_root)
                    self.record.rolled_back = True
                    self.record.relocated_path = None
                    self.transition(models.ROLLED_BACK)
                else:
                    self.log('ERROR', f"Rollback aborted; previous data is still at {relocated}")
                    self.record.manual_interventions.append(f"move {relocated} back to {self.data_root}")
        finally:
            self._remove_staging()
            super()._rollback()

    def _stop_for_rollback(self):
        """Stop again whatever this run already restarted; False if that fails."""
        if self.full:
            if self.platform is None or not self.platform_paused or self.platform.paused:
                return True
            try:
                self.platform.pause()
            except StepFailed as e:
                self.log('ERROR', f"Could not stop the platform for rollback: {e}")
                return False
            # Start it again after the swap even if it had failed to come up
            self.platform.claim()
            return True

        if self.resumed and self.controller is not None:
            result = self.controller.pause(self.resumed, volume=self.volume)
            self.resumed = []
            if not result.ok:
                return False
        return True
