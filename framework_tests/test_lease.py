import threading
import time
import typing as tp

import pytest

from gke_deployer.cluster_management import common
from gke_deployer.cluster_management import lease


def _wait_for(check: tp.Callable[[], bool], timeout: float = 10) -> None:
    deadline = time.monotonic() + timeout
    while not check():
        if time.monotonic() > deadline:
            msg = "Condition not met in time."
            raise AssertionError(msg)
        time.sleep(0.005)


@pytest.fixture
def lease_manager(fake_broker) -> tp.Iterator[lease.LeaseManager]:
    manager = lease.LeaseManager(fake_broker, heartbeat_interval=0.01)
    yield manager
    manager.release()


class TestAcquire:
    def test_acquire_starts_heartbeat(self, lease_manager: lease.LeaseManager, fake_broker):
        project = lease_manager.acquire()

        assert project == lease.LeasedProject(name="proj-1", resource_type="gke-project")
        assert lease_manager.projects == ["proj-1"]
        _wait_for(lambda: fake_broker.heartbeats["proj-1"] >= 2)
        assert lease_manager.heartbeats[0].is_running

    def test_one_heartbeat_per_lease(self, lease_manager: lease.LeaseManager, fake_broker):
        lease_manager.acquire()
        lease_manager.acquire()

        assert [h.project.name for h in lease_manager.heartbeats] == ["proj-1", "proj-2"]
        _wait_for(lambda: fake_broker.heartbeats["proj-2"] >= 1)

    def test_timeout(self, make_broker):
        manager = lease.LeaseManager(make_broker(projects=()), acquire_timeout=1)
        with pytest.raises(lease.AcquisitionTimeout):
            manager.acquire()
        assert manager.projects == []

    def test_rejected(self, make_broker):
        broker = make_broker()

        def _reject(resource_type: str, timeout: float) -> str:
            msg = f"unknown resource type {resource_type}"
            raise ValueError(msg)

        broker.acquire = _reject
        manager = lease.LeaseManager(broker)
        with pytest.raises(lease.AcquisitionError) as excinfo:
            manager.acquire(resource_type="bad-type")
        assert not isinstance(excinfo.value, lease.AcquisitionTimeout)
        assert "bad-type" in str(excinfo.value)

    def test_acquire_projects(self, lease_manager: lease.LeaseManager):
        assert lease_manager.acquire_projects(2) == ["proj-1", "proj-2"]

    def test_acquire_projects_partial_failure(self, make_broker):
        broker = make_broker(projects=("proj-1",))
        manager = lease.LeaseManager(broker, heartbeat_interval=0.01)

        with pytest.raises(lease.AcquisitionTimeout):
            manager.acquire_projects(2)

        assert broker.released == ["proj-1"]
        assert manager.released
        assert not manager.heartbeats[0].is_running

    def test_acquire_after_release(self, lease_manager: lease.LeaseManager):
        lease_manager.release()
        with pytest.raises(lease.AcquisitionError):
            lease_manager.acquire()


class TestRelease:
    def test_release_idempotent(self, lease_manager: lease.LeaseManager, fake_broker):
        lease_manager.acquire()
        lease_manager.release()
        lease_manager.release()

        assert fake_broker.released == ["proj-1"]
        assert not lease_manager.heartbeats[0].is_running

    def test_no_tick_after_release(self, lease_manager: lease.LeaseManager, fake_broker):
        lease_manager.acquire()
        _wait_for(lambda: fake_broker.heartbeats["proj-1"] >= 1)

        lease_manager.release()
        ticks = fake_broker.heartbeats["proj-1"]
        time.sleep(0.1)
        assert fake_broker.heartbeats["proj-1"] == ticks

    def test_release_doesnt_wait_for_interval(self, fake_broker):
        manager = lease.LeaseManager(fake_broker, heartbeat_interval=300)
        manager.acquire()

        start = time.monotonic()
        manager.release()
        assert time.monotonic() - start < 5
        assert fake_broker.heartbeats["proj-1"] == 0

    def test_release_racing_heartbeat(self, make_broker):
        broker = make_broker(projects=("proj-1", "proj-2"))
        manager = lease.LeaseManager(broker, heartbeat_interval=0.001)
        manager.acquire_projects(2)
        _wait_for(lambda: broker.heartbeats["proj-2"] >= 5)

        threads = [threading.Thread(target=manager.release) for __ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert not any(t.is_alive() for t in threads)
        assert sorted(broker.released) == ["proj-1", "proj-2"]
        ticks = dict(broker.heartbeats)
        time.sleep(0.05)
        assert dict(broker.heartbeats) == ticks

    def test_context_manager(self, fake_broker):
        with pytest.raises(RuntimeError):  # noqa: PT012
            with lease.LeaseManager(fake_broker, heartbeat_interval=0.01) as manager:
                manager.acquire()
                msg = "test failed"
                raise RuntimeError(msg)

        assert fake_broker.released == ["proj-1"]

    def test_broker_release_failure(self, fake_broker):
        def _fail(name: str) -> None:
            if name == "proj-1":
                msg = "broker unavailable"
                raise ConnectionError(msg)
            fake_broker.released.append(name)

        fake_broker.release = _fail
        manager = lease.LeaseManager(fake_broker, heartbeat_interval=0.01)
        manager.acquire_projects(2)
        manager.release()

        assert fake_broker.released == ["proj-2"]


class TestHeartbeatFailures:
    def test_failures_keep_lease(self, make_broker):
        broker = make_broker(fail_heartbeat=True)
        manager = lease.LeaseManager(broker, heartbeat_interval=0.001)
        manager.acquire()
        handle = manager.heartbeats[0]

        _wait_for(lambda: handle.consecutive_failures >= 3)
        assert handle.is_running
        # Failures are only logged by default
        manager.check_heartbeats()

        manager.release()
        assert broker.released == ["proj-1"]

    def test_escalation(self, make_broker):
        broker = make_broker(fail_heartbeat=True)
        manager = lease.LeaseManager(broker, heartbeat_interval=0.001, max_heartbeat_failures=2)
        manager.acquire()

        _wait_for(lambda: manager.heartbeats[0].consecutive_failures >= 2)
        with pytest.raises(lease.HeartbeatError):
            manager.check_heartbeats()
        manager.release()

    def test_success_resets_failures(self, make_broker):
        broker = make_broker(fail_heartbeat=True)
        manager = lease.LeaseManager(broker, heartbeat_interval=0.001, max_heartbeat_failures=2)
        manager.acquire()
        handle = manager.heartbeats[0]
        _wait_for(lambda: handle.consecutive_failures >= 1)

        broker.fail_heartbeat = False
        _wait_for(lambda: handle.consecutive_failures == 0)
        manager.check_heartbeats()
        manager.release()


@pytest.mark.parametrize(
    "kwargs",
    (
        {"heartbeat_interval": 0},
        {"heartbeat_interval": -5},
        {"acquire_timeout": -1},
    ),
    ids=("zero_interval", "negative_interval", "negative_timeout"),
)
def test_invalid_settings(fake_broker, kwargs: dict):
    with pytest.raises(common.ConfigError):
        lease.LeaseManager(fake_broker, **kwargs)
    assert fake_broker.heartbeats == {}
