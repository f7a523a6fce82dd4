"""Leasing of GCP projects from a shared resource broker.

A leased project must be renewed periodically, otherwise the broker considers it abandoned and
reclaims it. Every acquired project therefore gets its own heartbeat thread that keeps renewing the
lease until `LeaseManager.release` is called.
"""

import dataclasses
import logging
import threading
import typing as tp

from gke_deployer.cluster_management import common
from gke_deployer.utils import boskos_client
from gke_deployer.utils import configuration

LOGGER = logging.getLogger(__name__)


class AcquisitionError(common.DeployerError):
    pass


class AcquisitionTimeout(AcquisitionError):
    pass


class HeartbeatError(common.DeployerError):
    pass


class ResourceBroker(tp.Protocol):
    """Broker that leases projects. `acquire` raises `TimeoutError` when it runs out of time."""

    def acquire(self, resource_type: str, timeout: float) -> str: ...

    def heartbeat(self, name: str) -> None: ...

    def release(self, name: str) -> None: ...


@dataclasses.dataclass(frozen=True)
class LeasedProject:
    name: str
    resource_type: str


class HeartbeatHandle:
    """Background thread renewing a single lease."""

    def __init__(
        self, broker: ResourceBroker, project: LeasedProject, interval: float
    ) -> None:
        self.broker = broker
        self.project = project
        self.interval = interval

        self.ticks = 0
        self.consecutive_failures = 0
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{project.name}", daemon=True
        )

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def _tick(self) -> None:
        try:
            self.broker.heartbeat(self.project.name)
        except Exception as exc:
            # A broker hiccup must not end an otherwise healthy run
            self.consecutive_failures += 1
            LOGGER.warning(  # noqa: TRY400
                f"Heartbeat for '{self.project.name}' failed "
                f"({self.consecutive_failures} in a row): {exc}"
            )
        else:
            self.consecutive_failures = 0
        self.ticks += 1

    def _run(self) -> None:
        # `wait` returns as soon as the event is set, no need to wait for the interval to pass
        while not self._stop_event.wait(self.interval):
            self._tick()
        LOGGER.debug(f"Heartbeat for '{self.project.name}' stopped after {self.ticks} ticks.")

    def stop(self) -> None:
        """Stop the thread and wait until it finishes. Safe to call repeatedly."""
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()


class LeaseManager:
    """Acquire projects, keep them leased, and release them exactly once."""

    def __init__(
        self,
        broker: ResourceBroker,
        *,
        resource_type: str = configuration.DEFAULT_BOSKOS_RESOURCE_TYPE,
        acquire_timeout: float = configuration.DEFAULT_BOSKOS_ACQUIRE_TIMEOUT_SECONDS,
        heartbeat_interval: float = configuration.DEFAULT_BOSKOS_HEARTBEAT_INTERVAL_SECONDS,
        max_heartbeat_failures: int = 0,
    ) -> None:
        if heartbeat_interval <= 0:
            msg = f"Heartbeat interval must be positive, got {heartbeat_interval}."
            raise common.ConfigError(msg)
        if acquire_timeout < 0:
            msg = f"Acquire timeout must not be negative, got {acquire_timeout}."
            raise common.ConfigError(msg)

        self.broker = broker
        self.resource_type = resource_type
        self.acquire_timeout = acquire_timeout
        self.heartbeat_interval = heartbeat_interval
        self.max_heartbeat_failures = max_heartbeat_failures

        self._leases: dict[str, HeartbeatHandle] = {}
        self._lock = threading.Lock()
        self._released = False

    @classmethod
    def from_config(cls, config: configuration.DeployerConfig) -> "LeaseManager":
        broker = boskos_client.BoskosClient(
            config.boskos_location, owner=configuration.BOSKOS_OWNER
        )
        return cls(
            broker,
            resource_type=config.boskos_resource_type,
            acquire_timeout=config.boskos_acquire_timeout_seconds,
            heartbeat_interval=config.boskos_heartbeat_interval_seconds,
            max_heartbeat_failures=config.boskos_max_heartbeat_failures,
        )

    @property
    def projects(self) -> list[str]:
        return list(self._leases)

    @property
    def heartbeats(self) -> list[HeartbeatHandle]:
        return list(self._leases.values())

    @property
    def released(self) -> bool:
        return self._released

    def acquire(self, resource_type: str = "", timeout: float | None = None) -> LeasedProject:
        """Acquire a project and start renewing its lease."""
        rtype = resource_type or self.resource_type
        wait_secs = self.acquire_timeout if timeout is None else timeout
        if self._released:
            msg = "Cannot acquire a project, the leases were already released."
            raise AcquisitionError(msg)

        LOGGER.info(f"Acquiring a '{rtype}' project, waiting up to {wait_secs}s.")
        try:
            name = self.broker.acquire(rtype, wait_secs)
        except TimeoutError as exc:
            msg = f"Timed out acquiring a '{rtype}' project: {exc}"
            raise AcquisitionTimeout(msg) from exc
        except Exception as exc:
            msg = f"Failed to acquire a '{rtype}' project: {exc}"
            raise AcquisitionError(msg) from exc

        project = LeasedProject(name=name, resource_type=rtype)
        handle = HeartbeatHandle(
            broker=self.broker, project=project, interval=self.heartbeat_interval
        )
        with self._lock:
            if self._released:
                # Released while waiting for the broker
                self.broker.release(name)
                msg = f"Project '{name}' was acquired after the leases were released."
                raise AcquisitionError(msg)
            if name in self._leases:
                msg = f"Project '{name}' is already leased in this run."
                raise AcquisitionError(msg)
            self._leases[name] = handle
            handle.start()

        LOGGER.info(f"Leased project '{name}'.")
        return project

    def acquire_projects(self, count: int) -> list[str]:
        """Acquire `count` projects, release everything if any of the acquisitions fails."""
        try:
            for __ in range(count):
                self.acquire()
        except AcquisitionError:
            self.release()
            raise
        return self.projects

    def check_heartbeats(self) -> None:
        """Fail if a lease couldn't be renewed too many times in a row.

        Heartbeat failures are only logged unless `max_heartbeat_failures` is set.
        """
        if self.max_heartbeat_failures <= 0:
            return
        for handle in self.heartbeats:
            if handle.consecutive_failures >= self.max_heartbeat_failures:
                msg = (
                    f"Lease of '{handle.project.name}' was not renewed "
                    f"{handle.consecutive_failures} times in a row."
                )
                raise HeartbeatError(msg)

    def release(self) -> None:
        """Stop all heartbeats, then return the projects to the broker.

        Only the first call has an effect. Concurrent callers wait until the release is finished.
        """
        with self._lock:
            if self._released:
                return
            self._released = True

            for handle in self._leases.values():
                handle.stop()

            for name in self._leases:
                try:
                    self.broker.release(name)
                except Exception:
                    LOGGER.exception(f"Failed to release project '{name}'.")

    def __enter__(self) -> "LeaseManager":
        return self

    def __exit__(self, *args: object) -> None:
        self.release()
