"""
Remote sync collaborator backed by ``rclone``.

The remote is addressed by an rclone alias such as ``offsite:backups/docker``.
Remote-side conflicts are rclone's concern; only local exclusivity is enforced.
"""
import shutil

from dockerbackup.runtime import run_command
from dockerbackup.utils import get_logger

logger = get_logger(__name__)


class RemoteSync:
    def __init__(self, binary='rclone'):
        self.binary = binary

    def available(self):
        return shutil.which(self.binary) is not None

    def _rclone(self, *args):
        result = run_command([self.binary, *args], timeout=None)
        output = (result.stdout or '') + (result.stderr or '')
        return result.returncode == 0, output.strip()

    def sync(self, local, remote):
        """Mirror the local repository directory to ``remote``."""
        return self._rclone('sync', str(local), remote)

    def download(self, remote, local):
        """Copy ``remote`` into the local staging directory."""
        return self._rclone('copy', remote, str(local))
