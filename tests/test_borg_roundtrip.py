"""Round trips against a real borg binary; skipped where borg is not installed."""
import shutil
from datetime import datetime

import pytest

from dockerbackup import layout, utils
from dockerbackup.borg import BorgRepository

from conftest import snapshot_tree

pytestmark = pytest.mark.skipif(shutil.which('borg') is None, reason='borg is not installed')


@pytest.fixture
def repo(tmp_path):
    repo = BorgRepository(tmp_path / 'repo')
    assert repo.init('none').ok
    return repo


@pytest.fixture
def source(tmp_path):
    root = tmp_path / 'src' / 'docker'
    (root / 'volumes' / 'app' / '_data').mkdir(parents=True)
    (root / 'volumes' / 'app' / '_data' / 'db.sqlite').write_bytes(b'\x00\x01' * 512)
    (root / 'containers').mkdir()
    (root / 'containers' / 'config.json').write_text('{}')
    return root


def test_create_then_extract_with_classified_plan(repo, source, tmp_path):
    name = utils.archive_name('docker', datetime(2025, 1, 1, 3, 0, 0))
    assert repo.create(name, [str(source)]).ok
    assert repo.exists()

    profile = layout.LayoutProfile.for_data_root(source)
    plan = layout.classify(layout.sample_paths(repo, name), profile)
    assert plan.kind == layout.ABSOLUTE

    target = tmp_path / 'restored'
    target.mkdir()
    assert layout.extract_with_plan(repo, name, plan, target).ok
    assert snapshot_tree(target) == snapshot_tree(source)


def test_prune_twice_removes_nothing_more(repo, source):
    for day in (1, 2, 3):
        assert repo.create(utils.archive_name('docker', datetime(2025, 1, day, 3, 0, 0)), [str(source)]).ok
    assert repo.create(utils.archive_name('docker-extra', datetime(2025, 1, 1, 3, 0, 0)), [str(source)]).ok

    retention = {'daily': 1, 'weekly': 0, 'monthly': 0, 'yearly': 0}
    glob = utils.archive_glob('docker')
    first = repo.prune(retention, glob=glob)
    assert first.ok
    assert len(first.pruned) == 2
    second = repo.prune(retention, glob=glob)
    assert second.pruned == []

    names = [a['name'] for a in repo.list_archives()]
    assert names == sorted(['docker-2025-01-03_03:00:00', 'docker-extra-2025-01-01_03:00:00'])
    assert repo.latest_archive(glob=glob) == 'docker-2025-01-03_03:00:00'
