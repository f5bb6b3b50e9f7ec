import pytest

from dockerbackup.errors import StepFailed
from dockerbackup.models import BACKUP, OperationRecord, PLATFORM_WORKLOAD
from dockerbackup.workloads import ContainerController, PlatformController

from conftest import FakeRuntime, FakeServices


def _record():
    return OperationRecord(kind=BACKUP)


def test_only_running_workloads_are_stopped_and_resumed():
    runtime = FakeRuntime(volumes={'v1': ['A', 'B']}, running={'A'})
    record = _record()
    controller = ContainerController(runtime, record)

    result = controller.pause(['A', 'B'], volume='v1')
    assert result.stopped == ['A']
    assert result.untouched == ['B']
    assert record.stopped_names('v1') == ['A']

    started = controller.resume('v1')
    assert started == ['A']
    assert runtime.stops() == ['A']
    assert runtime.starts() == ['A']
    assert 'B' not in runtime.running
    assert record.stopped == []


def test_stop_failure_does_not_prevent_other_stops():
    runtime = FakeRuntime(volumes={'v1': ['A', 'B']}, running={'A', 'B'})
    runtime.fail_stop.add('A')
    record = _record()
    result = ContainerController(runtime, record).pause(['A', 'B'], volume='v1')
    assert not result.ok
    assert result.failed == [('A', 'stop failed')]
    assert result.stopped == ['B']
    assert record.stopped_names() == ['B']


def test_resume_failure_is_a_manual_intervention_without_retry():
    runtime = FakeRuntime(volumes={'v1': ['A']}, running={'A'})
    runtime.fail_start.add('A')
    record = _record()
    controller = ContainerController(runtime, record)
    controller.pause(['A'], volume='v1')

    assert controller.resume('v1') == []
    assert runtime.starts() == ['A']
    assert record.manual_interventions == ['A']


def test_resume_only_touches_the_given_volume():
    runtime = FakeRuntime(volumes={'v1': ['A'], 'v2': ['B']}, running={'A', 'B'})
    record = _record()
    controller = ContainerController(runtime, record)
    controller.pause(['A'], volume='v1')
    controller.pause(['B'], volume='v2')

    assert controller.resume('v1') == ['A']
    assert record.stopped_names() == ['B']


def test_dry_run_stops_nothing():
    runtime = FakeRuntime(volumes={'v1': ['A']}, running={'A'})
    record = _record()
    result = ContainerController(runtime, record, is_dry_run=True).pause(['A'], volume='v1')
    assert result.stopped == []
    assert runtime.stops() == []
    assert record.stopped == []


def test_platform_already_stopped_is_left_alone():
    services = FakeServices(active=False)
    record = _record()
    platform = PlatformController(services, record)
    result = platform.pause()
    assert result.untouched == [PLATFORM_WORKLOAD]
    assert not platform.paused
    assert platform.resume() is True
    assert services.calls == []


def test_platform_pause_and_resume():
    services = FakeServices()
    record = _record()
    platform = PlatformController(services, record)
    platform.pause()
    assert platform.paused
    assert not services.active
    assert platform.resume() is True
    assert services.active
    assert services.calls == ['stop', 'start']
    assert not platform.paused


def test_platform_stop_timeout_is_fatal_but_recorded():
    services = FakeServices(stop_works=False)
    record = _record()
    platform = PlatformController(services, record, stop_timeout=1)
    with pytest.raises(StepFailed) as excinfo:
        platform.pause()
    assert excinfo.value.step == 'pause'
    # the stop was issued, so the failure path must start it again
    assert platform.paused


def test_platform_resume_retries_with_kill_escalation():
    services = FakeServices(start_works=False)
    record = _record()
    platform = PlatformController(services, record, attempts=3)
    platform.pause()

    assert platform.resume() is False
    assert services.calls == ['stop', 'start', 'kill', 'start', 'kill', 'start']
    assert record.manual_interventions == ['docker.service']


def test_claim_marks_platform_for_resume():
    services = FakeServices()
    record = _record()
    platform = PlatformController(services, record)
    platform.claim()
    platform.claim()
    assert record.stopped_names() == [PLATFORM_WORKLOAD]
    assert platform.resume() is True
