"""
Ordering of volumes for a backup run.

Volumes bound to a priority workload are deferred to the end of the run, so
that workload is paused for the shortest possible window. Skipping volumes in
active use is evaluated first: a skipped volume never lands in either batch.
"""
from dockerbackup.models import SequencePlan, DEFERRED, NORMAL


def sequence(volumes, priority_names=(), skip_in_use=False):
    """Partition volumes into ordinary and deferred batches.

    Args:
        volumes: Iterable of Volume (input order is preserved in each batch)
        priority_names: Workload names whose volumes should be handled last
        skip_in_use: Skip volumes with at least one running workload

    Returns:
        SequencePlan with ordinary, deferred and skipped volume names.
    """
    priority = set(priority_names or ())
    plan = SequencePlan()

    for volume in volumes:
        if skip_in_use and volume.in_use:
            plan.skipped.append(volume.name)
            continue
        if priority.intersection(volume.workloads):
            volume.priority = DEFERRED
            plan.deferred.append(volume.name)
        else:
            volume.priority = NORMAL
            plan.ordinary.append(volume.name)

    return plan
