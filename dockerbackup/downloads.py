"""
Download of a repository from the remote into a local staging directory.
"""
from pathlib import Path

from dockerbackup import models
from dockerbackup.borg import BorgRepository
from dockerbackup.errors import PreconditionError, StepFailed
from dockerbackup.executor import BaseExecutor
from dockerbackup.utils import get_logger

logger = get_logger(__name__)


class DownloadExecutor(BaseExecutor):
    """Copy ``remote`` into ``staging`` and check that the result is a borg repository."""

    kind = models.DOWNLOAD

    def __init__(self, settings, remote=None, staging=None, **kwargs):
        super().__init__(settings, **kwargs)
        self.remote_alias = remote or settings.remote
        self.staging = Path(staging or settings.repository)
        self.record.target = self.remote_alias or ''

    def _execute(self):
        if not self.remote_alias:
            raise PreconditionError('no remote configured (DOCKER_BACKUP_REMOTE or --remote)', target='remote')
        if not self.remote.available():
            raise PreconditionError(f"{self.remote.binary} is not installed or not on PATH",
                                    target=self.remote.binary)

        self.transition(models.SYNCING)
        if self.is_dry_run:
            self.log('INFO', f"Would download {self.remote_alias} into {self.staging}")
            return

        self.staging.mkdir(parents=True, exist_ok=True)
        self.log('INFO', f"Downloading {self.remote_alias} into {self.staging}...")
        ok, output = self.remote.download(self.remote_alias, self.staging)
        if not ok:
            raise StepFailed('download', self.remote_alias, output[-2000:])

        self._checkpoint()
        self.transition(models.VERIFYING)
        staged = BorgRepository(self.staging, binary=self.repo.binary)
        try:
            archives = staged.list_archives()
        except RuntimeError as e:
            raise StepFailed('verify', str(self.staging), f"downloaded data is not a readable repository: {e}")
        self.log('INFO', f"Downloaded repository holds {len(archives)} archive(s)")
