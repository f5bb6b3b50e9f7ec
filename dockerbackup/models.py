"""
Value types passed between the mapper, sequencer, controllers and executors.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from dockerbackup import utils

# Operation kinds
BACKUP = 'backup'
RESTORE = 'restore'
CLEANUP = 'cleanup'
DOWNLOAD = 'download'
VERIFY = 'verify'

# Priority classes
NORMAL = 'normal'
DEFERRED = 'deferred'

# State names (backup and restore share the terminal ones)
IDLE = 'Idle'
LOCK_ACQUIRED = 'LockAcquired'
MAPPED = 'Mapped/Sequenced'
PAUSED = 'Paused'
SNAPSHOTTING = 'Snapshotting'
VERIFYING = 'Verifying'
PRUNING = 'Pruning'
COMPACTING = 'Compacting'
SYNCING = 'Syncing'
RESUMED = 'Resumed'
VALIDATED = 'Validated'
SPACE_CHECKED = 'SpaceChecked'
RELOCATED = 'CurrentDataRelocated'
EXTRACTING = 'Extracting'
PERMISSIONS_FIXED = 'PermissionsFixed'
FUNCTIONAL_CHECK = 'FunctionalCheck'
DONE = 'Done'
FAILED = 'Failed'
ROLLED_BACK = 'RolledBack'

# The platform service is paused/resumed as one pseudo-workload
PLATFORM_WORKLOAD = 'platform'


@dataclass
class Volume:
    name: str
    size: int = 0
    workloads: Tuple[str, ...] = ()
    running: Tuple[str, ...] = ()
    priority: str = NORMAL
    mountpoint: Optional[str] = None

    @property
    def in_use(self):
        return bool(self.running)


@dataclass
class SequencePlan:
    ordinary: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def order(self):
        """Processing order: every ordinary volume, then every deferred one."""
        return list(self.ordinary) + list(self.deferred)

    @property
    def skipped_count(self):
        return len(self.skipped)


@dataclass
class StoppedWorkload:
    """A workload this run stopped and therefore has to start again."""
    name: str
    volume: Optional[str] = None


@dataclass
class OperationRecord:
    """Working state of one run; created at run start and discarded at run end."""
    kind: str
    target: str = ''
    started_at: datetime = field(default_factory=utils.now)
    state: str = IDLE
    history: List[str] = field(default_factory=lambda: [IDLE])
    stopped: List[StoppedWorkload] = field(default_factory=list)
    relocated_path: Optional[str] = None
    succeeded: Optional[bool] = None
    failed_step: Optional[str] = None
    failed_target: Optional[str] = None
    error: Optional[str] = None
    archives: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    skip_reasons: Dict[str, str] = field(default_factory=dict)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    manual_interventions: List[str] = field(default_factory=list)
    log_lines: List[str] = field(default_factory=list)
    cancelled: bool = False
    rolled_back: bool = False

    def transition(self, state):
        self.state = state
        self.history.append(state)

    def stopped_names(self, volume=None):
        if volume is None:
            return [w.name for w in self.stopped]
        return [w.name for w in self.stopped if w.volume == volume]

    def mark_failed(self, step=None, target=None, error=None):
        self.succeeded = False
        self.failed_step = step
        self.failed_target = target
        self.error = error

    @property
    def duration(self):
        return int((utils.now() - self.started_at).total_seconds())
