"""Exception types raised by the backup and restore runs."""


class BackupError(Exception):
    """Base class for every failure the orchestrator reports."""

    step = None
    target = None


class PreconditionError(BackupError):
    """A prerequisite is missing; raised before anything is mutated."""

    def __init__(self, reason, step='preflight', target=None):
        super().__init__(reason)
        self.reason = reason
        self.step = step
        self.target = target


class LockBusy(BackupError):
    """Another live run holds the lock."""

    def __init__(self, pid, path):
        super().__init__(f"another run is active (pid {pid}, lock {path})")
        self.pid = pid
        self.path = path
        self.step = 'lock'


class InsufficientSpace(BackupError):
    def __init__(self, required, available, destination):
        super().__init__(
            f"insufficient space at {destination}: {required} bytes required, {available} bytes available"
        )
        self.required = required
        self.available = available
        self.destination = destination
        self.step = 'space'
        self.target = destination


class StepFailed(BackupError):
    """A mutation failed mid-run (stop/start, archive operation, extraction)."""

    def __init__(self, step, target, detail=''):
        message = f"{step} failed for {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.step = step
        self.target = target
        self.detail = detail


class LayoutUnresolved(BackupError):
    """Neither classification nor fallback extraction found a usable data root."""

    def __init__(self, archive):
        super().__init__(f"no recognizable data root found in archive {archive}")
        self.archive = archive
        self.step = 'extract'
        self.target = archive


class RunCancelled(BackupError):
    def __init__(self, signum=None):
        super().__init__(f"run cancelled by signal {signum}" if signum else 'run cancelled')
        self.signum = signum
        self.step = 'cancel'
