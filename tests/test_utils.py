import fnmatch
from datetime import datetime

from dockerbackup import utils


def test_archive_name_uses_sortable_timestamp():
    dt = datetime(2025, 1, 31, 3, 0, 0)
    assert utils.archive_name('docker', dt) == 'docker-2025-01-31_03:00:00'
    assert utils.archive_name('app-db', dt) == 'app-db-2025-01-31_03:00:00'


def test_archive_glob_does_not_match_longer_prefixes():
    glob = utils.archive_glob('app')
    assert fnmatch.fnmatchcase('app-2025-01-31_03:00:00', glob)
    assert not fnmatch.fnmatchcase('app-db-2025-01-31_03:00:00', glob)
    assert not fnmatch.fnmatchcase('app-2025-01-31', glob)


def test_split_archive_name():
    assert utils.split_archive_name('app-db-2025-01-31_03:00:00') == ('app-db', '2025-01-31_03:00:00')
    assert utils.split_archive_name('manual-archive') == (None, None)
    assert utils.split_archive_name(None) == (None, None)


def test_relocation_timestamp():
    assert utils.relocation_timestamp(datetime(2025, 2, 1, 4, 5, 6)) == '20250201040506'


def test_format_bytes():
    assert utils.format_bytes(None) == 'N/A'
    assert utils.format_bytes(512) == '512.0B'
    assert utils.format_bytes(1536) == '1.5KB'
    assert utils.format_bytes(500 * 1024 * 1024) == '500.0MB'


def test_format_duration():
    assert utils.format_duration(None) == 'N/A'
    assert utils.format_duration(42) == '42s'
    assert utils.format_duration(125) == '2m 5s'
    assert utils.format_duration(3 * 3600 + 120) == '3h 2m'


def test_render_progress_clamps():
    assert utils.render_progress(5, 10, 'Snapshotting', width=10) == '[#####-----]  50% Snapshotting'
    assert utils.render_progress(12, 10, 'Done', width=4) == '[####] 100% Done'
    assert utils.render_progress(0, 0, 'Idle', width=4) == '[----]   0% Idle'
