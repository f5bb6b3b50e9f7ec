import dataclasses
import os
import stat
from pathlib import Path

import pytest

from dockerbackup import models
from dockerbackup.restore import RestoreExecutor
from dockerbackup.run_job import EXIT_FAILED, EXIT_USAGE, exit_code

from conftest import FakeRemote, FakeRuntime, snapshot_tree

ARCHIVE = 'docker-2025-01-01_03:00:00'


@pytest.fixture(autouse=True)
def notifications(monkeypatch):
    sent = []
    monkeypatch.setattr('dockerbackup.executor.send_run_notification',
                        lambda record, settings: sent.append(record) or [])
    return sent


@pytest.fixture
def data_root(settings):
    root = Path(settings.data_root)
    (root / 'volumes' / 'old' / '_data').mkdir(parents=True)
    (root / 'volumes' / 'old' / '_data' / 'state.txt').write_text('current')
    (root / 'containers').mkdir()
    return root


def _stored(root, relative):
    """Archive path for ``relative`` under the absolute data-root path."""
    return f"{str(root).strip('/')}/{relative}"


def _restore(settings, borg, services, runtime=None, **kwargs):
    return RestoreExecutor(settings, full=True, repo=borg, runtime=runtime or FakeRuntime(),
                           services=services, remote=FakeRemote(), **kwargs)


def _leftovers(root):
    parent = Path(root).parent
    return sorted(p.name for p in parent.iterdir() if '.bak.' in p.name or p.name.startswith('.restore-'))


def test_full_restore_replaces_data_root(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {
        _stored(data_root, 'volumes/app/_data/file.txt'): b'restored',
        _stored(data_root, 'containers/abc/config.v2.json'): b'{}',
    }
    runtime = FakeRuntime()
    executor = _restore(settings, borg, services, runtime=runtime)
    record = executor.run()

    assert record.succeeded, record.error
    assert (data_root / 'volumes' / 'app' / '_data' / 'file.txt').read_bytes() == b'restored'
    assert not (data_root / 'volumes' / 'old').exists()
    assert _leftovers(data_root) == []
    assert services.calls == ['stop', 'start']
    assert ('probe',) in runtime.calls
    assert stat.S_IMODE(os.stat(data_root / 'volumes').st_mode) == 0o711
    assert stat.S_IMODE(os.stat(data_root / 'containers').st_mode) == 0o710
    assert record.history[-6:] == [
        models.RELOCATED, models.EXTRACTING, models.PERMISSIONS_FIXED,
        models.RESUMED, models.FUNCTIONAL_CHECK, models.DONE,
    ]
    extract = [c for c in borg.calls if c[0] == 'extract'][0]
    assert extract[2] == (str(data_root).strip('/'),)


def test_short_prefix_archive(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {'docker/volumes/app/_data/file.txt': b'short'}
    record = _restore(settings, borg, services).run()
    assert record.succeeded, record.error
    assert (data_root / 'volumes' / 'app' / '_data' / 'file.txt').read_bytes() == b'short'


def test_keep_relocated(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {'docker/volumes/app/_data/file.txt': b'x'}
    settings = dataclasses.replace(settings, keep_relocated=True)
    record = _restore(settings, borg, services).run()
    assert record.succeeded
    relocated = Path(record.relocated_path)
    assert (relocated / 'volumes' / 'old' / '_data' / 'state.txt').read_text() == 'current'


def test_extraction_failure_rolls_back_identically(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {_stored(data_root, 'volumes/app/_data/file.txt'): b'restored'}
    borg.extract_rcs = [2, 2]
    before = snapshot_tree(data_root)

    executor = _restore(settings, borg, services)
    record = executor.run()

    assert not record.succeeded
    assert record.failed_step == 'extract'
    assert record.rolled_back
    assert models.ROLLED_BACK in record.history
    assert snapshot_tree(data_root) == before
    assert _leftovers(data_root) == []
    assert services.calls == ['stop', 'start']
    assert exit_code(executor) == EXIT_FAILED


def test_unresolvable_layout_leaves_data_root_untouched(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {'home/user/notes.txt': b'not docker'}
    before = snapshot_tree(data_root)

    record = _restore(settings, borg, services).run()

    assert not record.succeeded
    assert record.failed_step == 'extract'
    assert not record.rolled_back
    assert snapshot_tree(data_root) == before
    assert services.calls == []
    assert _leftovers(data_root) == []


def test_fallback_search_finds_nested_data_root(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {'srv/old-host/docker-data/volumes/app/_data/file.txt': b'nested'}
    record = _restore(settings, borg, services).run()

    assert record.succeeded, record.error
    assert (data_root / 'volumes' / 'app' / '_data' / 'file.txt').read_bytes() == b'nested'
    assert _leftovers(data_root) == []


def test_functional_check_failure_rolls_back_after_restart(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {'docker/volumes/app/_data/file.txt': b'x'}
    runtime = FakeRuntime()
    runtime.probe_result = (False, 'hello-world failed')
    before = snapshot_tree(data_root)

    record = _restore(settings, borg, services, runtime=runtime).run()

    assert record.failed_step == 'functional_check'
    assert record.rolled_back
    assert snapshot_tree(data_root) == before
    # restarted, stopped again for the swap, then restarted on the old data
    assert services.calls == ['stop', 'start', 'stop', 'start']
    assert services.active


def test_missing_archive_is_a_precondition(settings, borg, services, data_root):
    executor = _restore(settings, borg, services, archive='docker-2020-01-01_00:00:00')
    record = executor.run()
    assert record.failed_step == 'validate'
    assert exit_code(executor) == EXIT_USAGE
    assert services.calls == []


def test_no_archive_for_target(settings, borg, services, data_root):
    borg.archives['app-2025-01-01_03:00:00'] = {'_data/x': b'x'}
    record = _restore(settings, borg, services).run()
    assert record.failed_step == 'validate'
    assert 'no archive found' in record.error


def test_latest_archive_is_used(settings, borg, services, data_root):
    borg.archives['docker-2025-01-01_03:00:00'] = {'docker/volumes/a/_data/f': b'old'}
    borg.archives['docker-2025-01-02_03:00:00'] = {'docker/volumes/a/_data/f': b'new'}
    executor = _restore(settings, borg, services)
    assert executor.run().succeeded
    assert executor.archive == 'docker-2025-01-02_03:00:00'
    assert (data_root / 'volumes' / 'a' / '_data' / 'f').read_bytes() == b'new'


def test_dry_run_restore_changes_nothing(settings, borg, services, data_root):
    borg.archives[ARCHIVE] = {'docker/volumes/app/_data/file.txt': b'x'}
    settings = dataclasses.replace(settings, dry_run=True)
    before = snapshot_tree(data_root)
    record = _restore(settings, borg, services).run()

    assert record.succeeded
    assert snapshot_tree(data_root) == before
    assert services.calls == []
    assert not any(c[0] == 'extract' for c in borg.calls)


def _volume_setup(tmp_path):
    mountpoint = tmp_path / 'lib' / 'docker' / 'volumes' / 'app' / '_data'
    mountpoint.mkdir(parents=True)
    (mountpoint / 'db.sqlite').write_bytes(b'current')
    runtime = FakeRuntime(volumes={'app': ['web', 'worker']}, running={'web'},
                          mountpoints={'app': str(mountpoint)})
    return runtime, mountpoint


def test_volume_restore_stops_only_running_containers(settings, borg, services, tmp_path):
    runtime, mountpoint = _volume_setup(tmp_path)
    borg.archives['app-2025-01-01_03:00:00'] = {_stored(mountpoint, 'db.sqlite'): b'restored'}

    executor = RestoreExecutor(settings, volume='app', repo=borg, runtime=runtime,
                               services=services, remote=FakeRemote())
    record = executor.run()

    assert record.succeeded, record.error
    assert (mountpoint / 'db.sqlite').read_bytes() == b'restored'
    assert runtime.stops() == ['web']
    assert runtime.starts() == ['web']
    assert 'worker' not in runtime.running
    assert services.calls == []
    assert _leftovers(mountpoint) == []


def test_volume_restore_rolls_back_when_container_does_not_start(settings, borg, services, tmp_path):
    runtime, mountpoint = _volume_setup(tmp_path)
    runtime.fail_start.add('web')
    borg.archives['app-2025-01-01_03:00:00'] = {'_data/db.sqlite': b'restored'}

    record = RestoreExecutor(settings, volume='app', repo=borg, runtime=runtime,
                             services=services, remote=FakeRemote()).run()

    assert not record.succeeded
    assert record.failed_step == 'resume'
    assert record.rolled_back
    assert (mountpoint / 'db.sqlite').read_bytes() == b'current'
    assert 'web' in record.manual_interventions


def test_restore_into_new_volume(settings, borg, services):
    runtime = FakeRuntime()
    borg.archives['fresh-2025-01-01_03:00:00'] = {'_data/seed.sql': b'seed'}

    record = RestoreExecutor(settings, volume='fresh', repo=borg, runtime=runtime,
                             services=services, remote=FakeRemote()).run()

    assert record.succeeded, record.error
    assert ('create_volume', 'fresh') in runtime.calls
    target = Path(settings.data_root) / 'volumes' / 'fresh' / '_data'
    assert (target / 'seed.sql').read_bytes() == b'seed'


def test_volume_named_like_platform_archives_is_rejected(settings, borg, services):
    with pytest.raises(ValueError):
        RestoreExecutor(settings, volume='docker', repo=borg, runtime=FakeRuntime(), services=services,
                        remote=FakeRemote())
