"""
Archive listing and verification.
"""
from dockerbackup import models, utils
from dockerbackup.errors import PreconditionError, StepFailed
from dockerbackup.executor import BaseExecutor
from dockerbackup.utils import get_logger, format_bytes

logger = get_logger(__name__)


def list_archives(repo, prefix=None, with_sizes=True):
    """Return archive dicts (name, time, original_size) oldest first.

    Args:
        repo: BorgRepository
        prefix: Only archives created for this prefix (``docker`` or a volume name)
        with_sizes: Query ``borg info`` for each archive's original size
    """
    glob = utils.archive_glob(prefix) if prefix else None
    entries = []
    for archive in repo.list_archives(glob=glob):
        entry = {
            'name': archive.get('name') or archive.get('archive'),
            'time': archive.get('time') or archive.get('start'),
            'original_size': None,
        }
        if with_sizes:
            try:
                info = repo.archive_info(entry['name'])
                entry['original_size'] = (info.get('stats') or {}).get('original_size')
            except RuntimeError as e:
                logger.warning("Could not read info for %s: %s", entry['name'], e)
        entries.append(entry)
    return entries


def format_listing(entries):
    """Render archive entries as aligned text lines."""
    if not entries:
        return ['No archives found']
    width = max(len(e['name']) for e in entries)
    lines = []
    for e in entries:
        when = (e['time'] or '')[:19].replace('T', ' ')
        lines.append(f"{e['name']:<{width}}  {when:<19}  {format_bytes(e['original_size']):>10}")
    return lines


class VerifyExecutor(BaseExecutor):
    """Run ``borg check`` on the repository, one archive or every archive in turn."""

    kind = models.VERIFY

    def __init__(self, settings, archive=None, all_archives=False, repository_only=False, **kwargs):
        super().__init__(settings, **kwargs)
        self.archive = archive
        self.all_archives = all_archives
        self.repository_only = repository_only
        self.record.target = archive or ('all archives' if all_archives else settings.repository)

    def _execute(self):
        self._require_tools(platform=False)
        self._require_repository()
        self.transition(models.VERIFYING)

        if self.archive:
            self._check(self.archive)
        elif self.all_archives:
            try:
                names = [a['name'] for a in self.repo.list_archives()]
            except RuntimeError as e:
                raise PreconditionError(f"cannot list archives: {e}", target=self.repo.path)
            self.log('INFO', f"Verifying {len(names)} archive(s)")
            for name in names:
                self._checkpoint()
                try:
                    self._check(name)
                except StepFailed as e:
                    self.log('ERROR', str(e))
                    self.record.failures.append((name, 'check failed'))
        else:
            self.log('INFO', f"Checking repository {self.repo.path}"
                             f"{' (repository only)' if self.repository_only else ''}...")
            result = self.repo.check(repository_only=self.repository_only)
            if not result.ok:
                raise StepFailed('verify', self.repo.path, result.tail())
            self.log('INFO', 'Repository check passed')

    def _check(self, name):
        self.log('INFO', f"Checking archive {name}...")
        result = self.repo.check(name)
        if not result.ok:
            raise StepFailed('verify', name, result.tail())
        self.log('INFO', f"Archive {name} OK")
