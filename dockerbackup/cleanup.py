"""
Cleanup of unused Docker objects and of leftovers from earlier restores.
"""
from pathlib import Path

from dockerbackup import layout, models
from dockerbackup.errors import PreconditionError
from dockerbackup.executor import BaseExecutor
from dockerbackup.space import directory_size
from dockerbackup.utils import get_logger, format_bytes

logger = get_logger(__name__)

# task name -> docker object kind for ``docker <kind> prune``
PRUNE_TASKS = {
    'containers': 'container',
    'images': 'image',
    'volumes': 'volume',
    'networks': 'network',
    'builder': 'builder',
}
ALL_TASKS = tuple(PRUNE_TASKS) + ('relocated',)


def find_relocated(data_root, volume_mountpoints=()):
    """Return leftover relocated copies and staging directories from earlier restores."""
    data_root = Path(data_root)
    found = []
    parents = {data_root.parent}
    if data_root.parent.is_dir():
        found.extend(sorted(data_root.parent.glob(f"{data_root.name}.bak.*")))
    for mountpoint in volume_mountpoints:
        mountpoint = Path(mountpoint)
        parents.add(mountpoint.parent)
        if mountpoint.parent.is_dir():
            found.extend(sorted(mountpoint.parent.glob(f"{mountpoint.name}.bak.*")))
    for parent in sorted(parents):
        if parent.is_dir():
            found.extend(sorted(parent.glob('.restore-*')))
    return [p for p in found if p.is_dir()]


class CleanupExecutor(BaseExecutor):
    """Run the selected cleanup tasks under the run lock."""

    kind = models.CLEANUP

    def __init__(self, settings, tasks=None, **kwargs):
        super().__init__(settings, **kwargs)
        self.tasks = list(tasks or ALL_TASKS)
        unknown = [t for t in self.tasks if t not in ALL_TASKS]
        if unknown:
            raise ValueError(f"unknown cleanup task(s): {', '.join(unknown)}")
        self.record.target = ','.join(self.tasks)
        self.reclaimed = 0

    def _execute(self):
        mode = "DRY RUN" if self.is_dry_run else "LIVE"
        self.log('INFO', f"Starting cleanup ({mode}): {', '.join(self.tasks)}")
        prune_tasks = [t for t in self.tasks if t in PRUNE_TASKS]
        if prune_tasks and not self.runtime.available():
            raise PreconditionError('docker is not installed or not on PATH', target='docker')

        for task in prune_tasks:
            self._checkpoint()
            self._prune(task)

        if 'relocated' in self.tasks:
            self._checkpoint()
            self._cleanup_relocated()

        if self.reclaimed:
            self.log('INFO', f"Reclaimed {format_bytes(self.reclaimed)} from restore leftovers")

    def _prune(self, task):
        kind = PRUNE_TASKS[task]
        if self.is_dry_run:
            if kind == 'builder':
                self.log('INFO', 'Would prune the builder cache')
            else:
                candidates = self.runtime.dangling(kind)
                self.log('INFO', f"Would prune {len(candidates)} {task}")
            return
        ok, output = self.runtime.prune(kind)
        if ok:
            summary = output.splitlines()[-1] if output else 'nothing to remove'
            self.log('INFO', f"Pruned {task}: {summary}")
        else:
            self.log('ERROR', f"Failed to prune {task}: {output}")
            self.record.failures.append((task, output))

    def _cleanup_relocated(self):
        mountpoints = []
        if self.runtime.available():
            try:
                for name in self.runtime.list_volumes():
                    mountpoint = self.runtime.volume_mountpoint(name)
                    if mountpoint:
                        mountpoints.append(mountpoint)
            except RuntimeError as e:
                self.log('WARNING', f"Could not enumerate volumes: {e}")

        leftovers = find_relocated(self.settings.data_root, mountpoints)
        if not leftovers:
            self.log('INFO', 'No restore leftovers found')
            return

        for path in leftovers:
            size = directory_size(path)
            if self.is_dry_run:
                self.log('INFO', f"Would remove {path} ({format_bytes(size)})")
                continue
            error = layout.remove_tree(path)
            if error:
                self.log('WARNING', f"Could not remove {path}: {error}")
            else:
                self.reclaimed += size
                self.log('INFO', f"Removed {path} ({format_bytes(size)})")
