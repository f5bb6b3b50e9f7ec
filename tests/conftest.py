import fnmatch
import os
from datetime import datetime
from pathlib import Path, PurePosixPath

import pytest

from dockerbackup import utils
from dockerbackup.borg import BorgResult
from dockerbackup.config import Settings


class FakeRuntime:
    """In-memory container runtime: volumes -> bound container names."""

    def __init__(self, volumes=None, running=(), mountpoints=None):
        self.volumes = {name: list(c) for name, c in (volumes or {}).items()}
        self.running = set(running)
        self.mountpoints = dict(mountpoints or {})
        self.fail_stop = set()
        self.fail_start = set()
        self.probe_result = (True, 'hello-world probe succeeded')
        self.calls = []

    def available(self):
        return True

    def list_volumes(self):
        return sorted(self.volumes)

    def volume_exists(self, name):
        return name in self.volumes

    def volume_mountpoint(self, name):
        return self.mountpoints.get(name)

    def create_volume(self, name):
        self.calls.append(('create_volume', name))
        self.volumes.setdefault(name, [])
        return True, ''

    def containers_for_volume(self, volume, running_only=False):
        names = sorted(self.volumes.get(volume, []))
        if running_only:
            names = [n for n in names if n in self.running]
        return names

    def is_running(self, name):
        return name in self.running

    def stop(self, name):
        self.calls.append(('stop', name))
        if name in self.fail_stop:
            return False, 'stop failed'
        self.running.discard(name)
        return True, ''

    def start(self, name):
        self.calls.append(('start', name))
        if name in self.fail_start:
            return False, 'start failed'
        self.running.add(name)
        return True, ''

    def root_dir(self):
        return None

    def probe(self):
        self.calls.append(('probe',))
        return self.probe_result

    def prune(self, kind, dry_run=False):
        self.calls.append(('prune', kind))
        return True, f"Total reclaimed space: 0B ({kind})"

    def dangling(self, kind):
        return []

    def stops(self):
        return [name for op, *rest in self.calls if op == 'stop' for name in rest]

    def starts(self):
        return [name for op, *rest in self.calls if op == 'start' for name in rest]


class FakeServices:
    """Platform service manager whose state flips immediately."""

    service = 'docker.service'
    socket = 'docker.socket'

    def __init__(self, active=True, stop_works=True, start_works=True):
        self.active = active
        self.stop_works = stop_works
        self.start_works = start_works
        self.calls = []

    def is_active(self):
        return self.active

    def stop(self):
        self.calls.append('stop')
        if self.stop_works:
            self.active = False
        return True, ''

    def start(self):
        self.calls.append('start')
        if self.start_works:
            self.active = True
        return True, ''

    def kill(self):
        self.calls.append('kill')

    def wait_for(self, active, timeout):
        return self.active == active


PRUNE_PERIODS = (
    ('daily', '%Y-%m-%d'),
    ('weekly', '%G-%V'),
    ('monthly', '%Y-%m'),
    ('yearly', '%Y'),
)


class FakeBorg:
    """Repository stand-in; ``tree`` maps stored archive paths to file contents."""

    binary = 'borg'

    def __init__(self, path='/repo', tree=None):
        self.path = str(path)
        self.tree = dict(tree or {})
        self.archives = {}
        self.original_size = 1024
        self.create_rc = 0
        self.check_rc = 0
        self.prune_rc = 0
        self.extract_rcs = []
        self.is_repo = True
        self.calls = []

    def location(self, archive=None):
        return f"{self.path}::{archive}" if archive else self.path

    def available(self):
        return True

    def exists(self):
        return self.is_repo

    def init(self, encryption='none'):
        self.calls.append(('init', encryption))
        self.is_repo = True
        return BorgResult(0)

    def create(self, archive, sources, compression='lz4', excludes=()):
        self.calls.append(('create', archive, tuple(sources)))
        if self.create_rc not in (0, 1):
            return BorgResult(self.create_rc, 'create error')
        self.archives[archive] = dict(self.tree)
        return BorgResult(self.create_rc, 'Archive name: ' + archive)

    def check(self, archive=None, repository_only=False):
        self.calls.append(('check', archive, repository_only))
        return BorgResult(self.check_rc, '' if self.check_rc == 0 else 'check error')

    def prune(self, retention, glob=None, dry_run=False):
        """Keep the newest archive of each period, newest periods first, like borg's keep rules."""
        self.calls.append(('prune', glob, dry_run))
        if not self.is_repo:
            return BorgResult(2, f"Repository {self.path} does not exist.")
        if self.prune_rc not in (0, 1):
            return BorgResult(self.prune_rc, 'prune error')
        newest_first = sorted(
            (a['name'] for a in self.list_archives(glob=glob)),
            key=lambda n: datetime.strptime(utils.split_archive_name(n)[1], utils.ARCHIVE_TS_FORMAT),
            reverse=True,
        )
        kept = set()
        for period, pattern in PRUNE_PERIODS:
            count = int(retention.get(period) or 0)
            last = None
            kept_here = 0
            for name in newest_first:
                if kept_here >= count:
                    break
                ts = datetime.strptime(utils.split_archive_name(name)[1], utils.ARCHIVE_TS_FORMAT)
                bucket = ts.strftime(pattern)
                if bucket != last:
                    last = bucket
                    if name not in kept:
                        kept.add(name)
                        kept_here += 1
        pruned = [n for n in reversed(newest_first) if n not in kept]
        if not dry_run:
            for name in pruned:
                del self.archives[name]
        verb = 'Would prune' if dry_run else 'Pruning archive'
        output = '\n'.join(f"{verb}: {name}" for name in pruned)
        return BorgResult(self.prune_rc, output, pruned=pruned)

    def compact(self):
        self.calls.append(('compact',))
        return BorgResult(0)

    def list_archives(self, glob=None, last=None):
        names = sorted(n for n in self.archives if glob is None or fnmatch.fnmatchcase(n, glob))
        if last:
            names = names[-last:]
        return [{'name': n, 'time': '2025-01-01T03:00:00.000000'} for n in names]

    def latest_archive(self, glob=None):
        archives = self.list_archives(glob=glob, last=1)
        return archives[-1]['name'] if archives else None

    def archive_info(self, archive):
        if archive not in self.archives:
            raise RuntimeError(f"archive {archive} does not exist")
        return {'name': archive, 'start': '2025-01-01T03:00:00', 'stats': {'original_size': self.original_size}}

    def list_paths(self, archive, limit=100):
        return list(self.archives.get(archive, {}))[:limit]

    def extract(self, archive, target_dir, patterns=(), strip_components=0):
        self.calls.append(('extract', archive, tuple(patterns), strip_components))
        rc = self.extract_rcs.pop(0) if self.extract_rcs else 0
        if rc not in (0, 1):
            return BorgResult(rc, 'extract error')
        for path, data in self.archives[archive].items():
            if patterns and not any(path == p or path.startswith(p + '/') for p in patterns):
                continue
            parts = PurePosixPath(path).parts[strip_components:]
            if not parts:
                continue
            dest = Path(target_dir, *parts)
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
        return BorgResult(rc)


class FakeRemote:
    binary = 'rclone'

    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def available(self):
        return True

    def sync(self, local, remote):
        self.calls.append(('sync', str(local), remote))
        return self.ok, '' if self.ok else 'sync error'

    def download(self, remote, local):
        self.calls.append(('download', remote, str(local)))
        return self.ok, '' if self.ok else 'download error'


def snapshot_tree(root):
    """Map relative path -> file bytes (directories as None) for equality checks."""
    root = Path(root)
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            result[os.path.relpath(os.path.join(dirpath, name), root)] = None
        for name in filenames:
            path = os.path.join(dirpath, name)
            result[os.path.relpath(path, root)] = Path(path).read_bytes()
    return result


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr('dockerbackup.workloads.time.sleep', lambda seconds: None)


@pytest.fixture
def settings(tmp_path):
    data_root = tmp_path / 'lib' / 'docker'
    data_root.mkdir(parents=True)
    return Settings(
        repository=str(tmp_path / 'repo'),
        data_root=str(data_root),
        lock_path=str(tmp_path / 'run' / 'docker-backup.lock'),
        notify_error=False,
        notify_success=False,
        min_free_mb=0,
        force=True,
    )


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
def borg(tmp_path):
    return FakeBorg(tmp_path / 'repo')


@pytest.fixture
def remote():
    return FakeRemote()
