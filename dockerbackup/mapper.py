"""
Dependency mapping: which workloads are bound to each volume.
"""
from dockerbackup.errors import PreconditionError
from dockerbackup.models import Volume, PLATFORM_WORKLOAD
from dockerbackup.utils import PLATFORM_PREFIX, get_logger

logger = get_logger(__name__)


def select_volumes(available, selection=None, exclude=None, log=None):
    """Apply the caller's selection filter to the enumerated volumes.

    Args:
        available: Volume names reported by the runtime
        selection: Names the caller asked for (None/empty means all)
        exclude: Names to drop before mapping
        log: Optional ``log(level, message)`` callback

    Returns:
        List of selected volume names, in runtime order.

    Raises:
        PreconditionError: if the filter leaves nothing to do.
    """
    log = log or (lambda level, message: logger.info(message))
    available = list(available)
    exclude = set(exclude or ())

    if selection:
        known = set(available)
        for name in selection:
            if name not in known:
                log('WARNING', f"Volume '{name}' does not exist, ignoring it")
        wanted = set(selection)
        selected = [v for v in available if v in wanted]
    else:
        selected = list(available)

    selected = [v for v in selected if v not in exclude]
    if PLATFORM_PREFIX in selected:
        # its archives would share a name pattern with the whole-platform archives
        log('WARNING', f"Volume '{PLATFORM_PREFIX}' is named like the data-root archives, "
                       f"skipping it; it is covered by a full backup")
        selected.remove(PLATFORM_PREFIX)
    if not selected:
        raise PreconditionError('no volumes to process after applying the selection filter', step='select')
    return selected


def map_dependencies(runtime, volume_names, sizes=None):
    """Map each volume to the workloads bound to it.

    For every volume the runtime is asked for all bound workloads (running or
    not) and, separately, for the running subset; only the running subset is
    ever paused.

    Returns:
        Dict of volume name -> Volume, in the order given.
    """
    sizes = sizes or {}
    mapping = {}
    for name in volume_names:
        workloads = tuple(runtime.containers_for_volume(name))
        running = tuple(runtime.containers_for_volume(name, running_only=True))
        mapping[name] = Volume(
            name=name,
            size=sizes.get(name, 0),
            workloads=workloads,
            running=running,
            mountpoint=runtime.volume_mountpoint(name),
        )
        logger.debug("Volume %s: bound=%s running=%s", name, workloads, running)
    return mapping


def map_platform(data_root, size=0):
    """Whole-platform mode: the data root is the single volume, bound to everything."""
    return {
        data_root: Volume(
            name=data_root,
            size=size,
            workloads=(PLATFORM_WORKLOAD,),
            running=(PLATFORM_WORKLOAD,),
            mountpoint=data_root,
        )
    }
