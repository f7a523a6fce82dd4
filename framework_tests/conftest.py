import collections
import hashlib
import os
import tempfile
import threading
import typing as tp

# Keep run artifacts of the tests out of the working directory
os.environ.setdefault("RUN_DIR", tempfile.mkdtemp(prefix="gke-deployer-tests-"))
os.environ.pop("SCHEDULING_LOG", None)

import pytest  # noqa: E402

from gke_deployer.utils import helpers  # noqa: E402

STOCKOUT_MSG = (
    "ERROR: (gcloud.container.clusters.create) Operation [<Operation name: 'op-1'>] finished "
    "with error: Try a different location, or try again later: Google Compute Engine: "
    "Zone 'us-central1-a' does not have enough resources available to fulfill the request."
)


def stockout_error(zone: str = "us-central1-a") -> helpers.CommandError:
    msg = STOCKOUT_MSG.replace("us-central1-a", zone)
    return helpers.CommandError(msg, cmd_str="gcloud container clusters create", output=msg)


class FakeBroker:
    """In-memory resource broker."""

    def __init__(self, projects: tp.Iterable[str] = ("proj-1",), fail_heartbeat: bool = False):
        self.free = list(projects)
        self.fail_heartbeat = fail_heartbeat
        self.acquired: list[str] = []
        self.released: list[str] = []
        self.heartbeats: collections.Counter = collections.Counter()
        self._lock = threading.Lock()

    def acquire(self, resource_type: str, timeout: float) -> str:
        if not self.free:
            msg = f"No free '{resource_type}' after {timeout}s"
            raise TimeoutError(msg)
        name = self.free.pop(0)
        self.acquired.append(name)
        return name

    def heartbeat(self, name: str) -> None:
        with self._lock:
            self.heartbeats[name] += 1
        if self.fail_heartbeat:
            msg = "broker unavailable"
            raise ConnectionError(msg)

    def release(self, name: str) -> None:
        self.released.append(name)


def unique_hash(name: str) -> str:
    return hashlib.md5(name.encode()).hexdigest()[:8]  # noqa: S324


class FakeCreator:
    """Cluster creator that fails according to a script of errors per cluster name."""

    def __init__(self, failures: dict[str, list[Exception]] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[dict] = []
        self.deleted: list[tuple[str, str, str]] = []
        self.commands: list[list[str]] = []
        self.networks: list[str] = []
        self.subnetworks: list[tuple[str, str, list[str]]] = []

    def create(
        self,
        *,
        project: str,
        name: str,
        location_flag: str,
        subnetwork: str = "",
        master_ip_range: str = "",
    ) -> str:
        self.calls.append(
            {
                "project": project,
                "name": name,
                "location_flag": location_flag,
                "subnetwork": subnetwork,
                "master_ip_range": master_ip_range,
            }
        )
        errors = self.failures.get(name)
        if errors:
            raise errors.pop(0)

        location = location_flag.split("=", maxsplit=1)[1]
        zone = location if location_flag.startswith("--zone") else f"{location}-a"
        base = f"https://www.googleapis.com/compute/v1/projects/{project}/zones/{zone}"
        uniq = unique_hash(name)
        return (
            f"{base}/instanceGroupManagers/gke-{name}-default-pool-{uniq}-grp;"
            f"{base}/instanceGroups/unrelated-group\n"
        )

    def delete(self, *, project: str, name: str, location_flag: str) -> None:
        self.deleted.append((project, name, location_flag))

    def ensure_network(self, *, project: str) -> None:
        self.networks.append(project)

    def ensure_subnetwork(self, *, project: str, region: str, ranges: list[str]) -> str:
        self.subnetworks.append((project, region, ranges))
        return f"default-{region}"

    def run(self, args: list[str]) -> str:
        self.commands.append(args)
        return ""


@pytest.fixture
def fake_broker() -> FakeBroker:
    return FakeBroker(projects=("proj-1", "proj-2", "proj-3"))


@pytest.fixture
def fake_creator() -> FakeCreator:
    return FakeCreator()


@pytest.fixture
def make_broker() -> tp.Callable[..., FakeBroker]:
    return FakeBroker


@pytest.fixture
def make_creator() -> tp.Callable[..., FakeCreator]:
    return FakeCreator


@pytest.fixture
def stockout() -> tp.Callable[..., helpers.CommandError]:
    return stockout_error
