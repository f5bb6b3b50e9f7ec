"""
Archive layout resolution for restores.

Archives may store the data root under its absolute path, under a short
prefix (its basename) or directly at the archive root. A bounded sample of
stored paths is classified by an ordered list of strategies, each a pure
function ``(sample, profile) -> (confidence, plan)``. When nothing matches,
or the targeted extraction fails, the whole archive is extracted into a
staging directory and searched for a recognizable data root.
"""
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Tuple

from dockerbackup.utils import get_logger

logger = get_logger(__name__)

SAMPLE_LIMIT = 100
DOCKER_SIGNATURES = ('volumes', 'containers', 'image', 'network')
SEARCH_DEPTH = 6

ABSOLUTE = 'absolute'
STRIP_PREFIX = 'strip_prefix'
DIRECT = 'direct'
FALLBACK = 'fallback'


@dataclass(frozen=True)
class LayoutProfile:
    """What a valid data root looks like inside an archive."""
    absolute_prefix: str
    short_prefix: str
    signatures: Tuple[str, ...] = ()

    @classmethod
    def for_data_root(cls, data_root):
        path = PurePosixPath(data_root)
        return cls(
            absolute_prefix=str(path).strip('/'),
            short_prefix=path.name,
            signatures=DOCKER_SIGNATURES,
        )

    @classmethod
    def for_volume(cls, mountpoint):
        path = PurePosixPath(mountpoint)
        return cls(absolute_prefix=str(path).strip('/'), short_prefix=path.name)


@dataclass(frozen=True)
class ExtractionPlan:
    kind: str
    patterns: Tuple[str, ...] = ()
    strip_components: int = 0
    confidence: float = 0.0

    def describe(self):
        parts = [self.kind]
        if self.patterns:
            parts.append(f"patterns={','.join(self.patterns)}")
        if self.strip_components:
            parts.append(f"strip={self.strip_components}")
        return ' '.join(parts)


def _under(path, prefix):
    return path == prefix or path.startswith(prefix + '/')


def absolute_strategy(sample, profile):
    """Paths stored under the full data-root path (e.g. ``var/lib/docker/...``)."""
    prefix = profile.absolute_prefix
    if prefix and any(_under(p.lstrip('/'), prefix) for p in sample):
        depth = len(PurePosixPath(prefix).parts)
        return 1.0, ExtractionPlan(ABSOLUTE, (prefix,), depth, 1.0)
    return 0.0, None


def strip_prefix_strategy(sample, profile):
    """Paths stored under the data root's basename (e.g. ``docker/...``)."""
    prefix = profile.short_prefix
    if prefix and any(_under(p.lstrip('/'), prefix) for p in sample):
        return 0.8, ExtractionPlan(STRIP_PREFIX, (prefix,), 1, 0.8)
    return 0.0, None


def direct_strategy(sample, profile):
    """Archive root is the data root itself.

    With signatures, at least one must appear at the top level. Profiles
    without signatures (single volumes) accept any non-empty sample at low
    confidence, unless the short prefix shows up deeper in a path.
    """
    if not sample:
        return 0.0, None
    top = {PurePosixPath(p.lstrip('/')).parts[0] for p in sample if p.strip('/')}
    if profile.signatures:
        if top.intersection(profile.signatures):
            return 0.6, ExtractionPlan(DIRECT, (), 0, 0.6)
        return 0.0, None
    if any(profile.short_prefix in PurePosixPath(p).parts for p in sample):
        return 0.0, None
    return 0.3, ExtractionPlan(DIRECT, (), 0, 0.3)


STRATEGIES = (absolute_strategy, strip_prefix_strategy, direct_strategy)


def classify(sample, profile, strategies=STRATEGIES) -> Optional[ExtractionPlan]:
    """Return the highest-confidence plan, or None when the layout is ambiguous.

    Ties go to the earlier strategy.
    """
    best = None
    for strategy in strategies:
        confidence, plan = strategy(sample, profile)
        if plan is not None and confidence > 0 and (best is None or confidence > best.confidence):
            best = plan
    return best


def sample_paths(repo, archive, limit=SAMPLE_LIMIT):
    return repo.list_paths(archive, limit=limit)


def extract_with_plan(repo, archive, plan, data_root):
    """Run the targeted extraction of ``plan`` into ``data_root``."""
    return repo.extract(archive, data_root, patterns=plan.patterns,
                        strip_components=plan.strip_components)


def _has_signature(path, signatures):
    return any((path / name).is_dir() for name in signatures)


def find_data_root(base, profile):
    """Search an extracted archive for a directory that looks like a data root.

    Candidates in order: the absolute prefix, the short prefix, then the first
    directory (breadth-first) holding any signature subdirectory, or named
    like the short prefix when the profile has no signatures.
    """
    base = Path(base)
    for candidate in (profile.absolute_prefix, profile.short_prefix):
        if candidate and (base / candidate).is_dir():
            return base / candidate

    level = [base]
    for _depth in range(SEARCH_DEPTH):
        next_level = []
        for directory in level:
            if profile.signatures:
                if _has_signature(directory, profile.signatures):
                    return directory
            elif directory != base and directory.name == profile.short_prefix:
                return directory
            try:
                next_level.extend(sorted(p for p in directory.iterdir() if p.is_dir() and not p.is_symlink()))
            except OSError:
                continue
        level = next_level
    return None


def make_staging(parent):
    """Create an isolated staging directory next to the data root (same filesystem)."""
    Path(parent).mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix='.restore-', dir=str(parent)))


def fallback_extract(repo, archive, profile, staging):
    """Extract the whole archive into ``staging`` and locate a data root in it.

    Returns:
        Tuple of (BorgResult, found_path or None).
    """
    result = repo.extract(archive, staging)
    if not result.ok:
        return result, None
    return result, find_data_root(staging, profile)


def move_contents(source, target):
    """Move every entry of ``source`` into the (empty) directory ``target``."""
    source = Path(source)
    target = Path(target)
    target.mkdir(parents=True, exist_ok=True)
    for entry in sorted(source.iterdir()):
        shutil.move(str(entry), str(target / entry.name))


def remove_tree(path):
    """Best-effort removal of a staging directory; returns an error string or None."""
    try:
        if os.path.lexists(path):
            shutil.rmtree(path)
    except OSError as e:
        return str(e)
    return None
