"""
Thin wrappers over the ``borg`` CLI.

Each call returns a BorgResult with the exit status and captured output;
option translation (compression, progress, keep counts) is the only logic here.
borg exits 0 on success, 1 on warnings and 2+ on errors.
"""
import os
import re
import json
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dockerbackup.utils import get_logger

logger = get_logger(__name__)

PRUNE_LINE_RE = re.compile(r'^(?:Pruning archive(?: \(\d+/\d+\))?|Would prune):\s+(\S+)')


@dataclass
class BorgResult:
    returncode: int
    output: str = ''
    pruned: List[str] = field(default_factory=list)

    @property
    def ok(self):
        return self.returncode in (0, 1)

    @property
    def warning(self):
        return self.returncode == 1

    def tail(self, lines=20):
        """Last lines of output for log messages."""
        return '\n'.join((self.output or '').strip().splitlines()[-lines:])


class BorgRepository:
    """One borg repository addressed by path (or ssh URL)."""

    def __init__(self, path, binary='borg', progress=False):
        self.path = str(path)
        self.binary = binary
        self.progress = progress

    def location(self, archive=None):
        return f"{self.path}::{archive}" if archive else self.path

    def available(self):
        return shutil.which(self.binary) is not None

    def _env(self):
        env = dict(os.environ)
        # Never block on borg's interactive safety prompts
        env.setdefault('BORG_RELOCATED_REPO_ACCESS_IS_OK', 'yes')
        env.setdefault('BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK', 'yes')
        return env

    def _run(self, args, cwd=None, live=False):
        """Run ``borg <args>``.

        With ``live`` set, ``--progress`` is passed and stderr stays attached to
        the terminal so borg can draw its own progress line.
        """
        cmd_parts = [self.binary, *args]
        if live and self.progress:
            cmd_parts.insert(2, '--progress')
        logger.debug("Running: %s", ' '.join(cmd_parts))
        try:
            result = subprocess.run(
                cmd_parts,
                cwd=cwd,
                env=self._env(),
                stdout=subprocess.PIPE,
                stderr=None if (live and self.progress) else subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            return BorgResult(returncode=127, output=str(e))
        return BorgResult(returncode=result.returncode, output=result.stdout or '')

    def exists(self):
        """True when the repository can be opened."""
        if '://' not in self.path and ':' not in self.path.split('/', 1)[0]:
            if not (Path(self.path) / 'config').is_file():
                return False
        return self._run(['info', self.path]).returncode == 0

    def init(self, encryption='none'):
        return self._run(['init', f'--encryption={encryption}', self.path])

    def create(self, archive, sources, compression='lz4', excludes=()):
        args = ['create', '--stats', '--compression', compression]
        for pattern in excludes:
            args += ['--exclude', pattern]
        args.append(self.location(archive))
        args += [str(s) for s in sources]
        return self._run(args, live=True)

    def check(self, archive=None, repository_only=False):
        args = ['check']
        if repository_only:
            args.append('--repository-only')
        args.append(self.location(archive))
        return self._run(args, live=True)

    def prune(self, retention, glob=None, dry_run=False):
        """Prune by keep counts; ``retention`` maps daily/weekly/monthly/yearly to counts.

        The archive names removed (or that would be removed) are parsed from
        borg's ``--list`` output into ``result.pruned``.
        """
        args = ['prune', '--list']
        if dry_run:
            args.append('--dry-run')
        if glob:
            args += ['--glob-archives', glob]
        for period in ('daily', 'weekly', 'monthly', 'yearly'):
            count = int(retention.get(period) or 0)
            if count > 0:
                args.append(f'--keep-{period}={count}')
        args.append(self.path)
        result = self._run(args)
        for line in result.output.splitlines():
            match = PRUNE_LINE_RE.match(line.strip())
            if match:
                result.pruned.append(match.group(1))
        return result

    def compact(self):
        return self._run(['compact', self.path])

    def _json(self, args):
        cmd_parts = [self.binary, *args]
        try:
            result = subprocess.run(cmd_parts, env=self._env(), capture_output=True, text=True)
        except FileNotFoundError as e:
            raise RuntimeError(str(e))
        if result.returncode not in (0, 1):
            raise RuntimeError(f"{' '.join(cmd_parts[:2])} failed: {result.stderr.strip()}")
        return json.loads(result.stdout or '{}')

    def list_archives(self, glob=None, last=None):
        """Return archive dicts (``name``, ``time``, ...) oldest first."""
        args = ['list', '--json']
        if glob:
            args += ['--glob-archives', glob]
        if last:
            args += ['--last', str(last)]
        args.append(self.path)
        return self._json(args).get('archives', [])

    def latest_archive(self, glob=None):
        archives = self.list_archives(glob=glob, last=1)
        return archives[-1]['name'] if archives else None

    def archive_info(self, archive):
        """Return the ``borg info --json`` entry for one archive (includes stats)."""
        data = self._json(['info', '--json', self.location(archive)])
        archives = data.get('archives') or [{}]
        return archives[0]

    def list_paths(self, archive, limit=100):
        """Return up to ``limit`` stored paths of ``archive`` without listing it fully."""
        cmd_parts = [self.binary, 'list', '--format', '{path}{NL}', self.location(archive)]
        paths = []
        proc = subprocess.Popen(cmd_parts, env=self._env(), stdout=subprocess.PIPE,
                                stderr=subprocess.DEVNULL, text=True)
        try:
            for line in proc.stdout:
                line = line.strip()
                if line:
                    paths.append(line)
                if len(paths) >= limit:
                    break
        finally:
            if proc.poll() is None:
                proc.terminate()
            proc.stdout.close()
            proc.wait()
        return paths

    def extract(self, archive, target_dir, patterns=(), strip_components=0):
        """Extract ``archive`` (optionally only ``patterns``) into ``target_dir``."""
        args = ['extract']
        if strip_components:
            args += ['--strip-components', str(strip_components)]
        args.append(self.location(archive))
        args += list(patterns)
        return self._run(args, cwd=str(target_dir), live=True)
