"""Deployer configuration.

Values are read from environment variables when the module is imported, the same way for every
entry point (CLI, pytest fixtures). `DeployerConfig.from_env` turns them into the run-scoped
configuration object that is passed to the orchestrator.
"""

import dataclasses
import os
import pathlib as pl

LAUNCH_PATH = pl.Path.cwd()

STOCKOUT_ERROR_PATTERN = ".*does not have enough resources available to fulfill.*"

DEFAULT_NUM_NODES = 3
DEFAULT_MACHINE_TYPE = "n1-standard-2"
DEFAULT_IMAGE_TYPE = "cos"
DEFAULT_WINDOWS_NUM_NODES = 1
DEFAULT_WINDOWS_MACHINE_TYPE = "n1-standard-2"
WINDOWS_IMAGE_TYPE_LTSC = "WINDOWS_LTSC"
WINDOWS_IMAGE_TYPE_SAC = "WINDOWS_SAC"

DEFAULT_BOSKOS_LOCATION = "http://boskos.test-pods.svc.cluster.local."
DEFAULT_BOSKOS_RESOURCE_TYPE = "gke-project"
DEFAULT_BOSKOS_ACQUIRE_TIMEOUT_SECONDS = 300
DEFAULT_BOSKOS_HEARTBEAT_INTERVAL_SECONDS = 300

PRIVATE_CLUSTER_ACCESS_LEVELS = ("no", "limited", "unrestricted")


def _env_list(name: str, *, sep: str = ",") -> list[str]:
    return [s.strip() for s in (os.environ.get(name) or "").split(sep) if s.strip()]


def _env_int(name: str, default: int, *, min_value: int | None = None) -> int:
    value = os.environ.get(name) or ""
    if not value:
        return default
    try:
        num = int(value)
    except ValueError:
        msg = f"Invalid {name}: {value}"
        raise RuntimeError(msg) from None
    if min_value is not None and num < min_value:
        msg = f"Invalid {name} '{num}': must be >= {min_value}"
        raise RuntimeError(msg)
    return num


ZONES = _env_list("GKE_ZONES")
REGIONS = _env_list("GKE_REGIONS")
PROJECTS = _env_list("GKE_PROJECTS")
CLUSTER_NAMES = _env_list("GKE_CLUSTER_NAMES")
NUM_CLUSTERS = _env_int("GKE_NUM_CLUSTERS", 1, min_value=1)

NUM_NODES = _env_int("GKE_NUM_NODES", DEFAULT_NUM_NODES, min_value=1)
MACHINE_TYPE = os.environ.get("GKE_MACHINE_TYPE") or DEFAULT_MACHINE_TYPE
IMAGE_TYPE = os.environ.get("GKE_IMAGE_TYPE") or DEFAULT_IMAGE_TYPE
CLUSTER_VERSION = os.environ.get("GKE_CLUSTER_VERSION") or ""

WINDOWS_ENABLED = bool(os.environ.get("GKE_WINDOWS_ENABLED"))
WINDOWS_NUM_NODES = _env_int("GKE_WINDOWS_NUM_NODES", DEFAULT_WINDOWS_NUM_NODES, min_value=1)
WINDOWS_MACHINE_TYPE = os.environ.get("GKE_WINDOWS_MACHINE_TYPE") or DEFAULT_WINDOWS_MACHINE_TYPE
WINDOWS_IMAGE_TYPE = os.environ.get("GKE_WINDOWS_IMAGE_TYPE") or WINDOWS_IMAGE_TYPE_LTSC

NETWORK = os.environ.get("GKE_NETWORK") or "default"
ENVIRONMENT = os.environ.get("GKE_ENVIRONMENT") or "prod"

# Every attempt has its own entry, entries are separated by ",".
# An entry for subnetwork ranges is "<nodes range> <pods range> <services range>",
# an entry for master IP ranges has one range per cluster.
SUBNETWORK_RANGES = _env_list("GKE_SUBNETWORK_RANGES")
PRIVATE_CLUSTER_ACCESS_LEVEL = os.environ.get("GKE_PRIVATE_CLUSTER_ACCESS_LEVEL") or "no"
if PRIVATE_CLUSTER_ACCESS_LEVEL not in PRIVATE_CLUSTER_ACCESS_LEVELS:
    msg = f"Invalid GKE_PRIVATE_CLUSTER_ACCESS_LEVEL: {PRIVATE_CLUSTER_ACCESS_LEVEL}"
    raise RuntimeError(msg)
PRIVATE_CLUSTER_MASTER_IP_RANGES = _env_list("GKE_PRIVATE_CLUSTER_MASTER_IP_RANGES")

# Patterns can contain ",", so use ";;" as a separator
RETRYABLE_ERROR_PATTERNS = _env_list("GKE_RETRYABLE_ERROR_PATTERNS", sep=";;") or [
    STOCKOUT_ERROR_PATTERN
]
# Use number of candidate locations if set to 0
TOTAL_TRY_COUNT = _env_int("GKE_TOTAL_TRY_COUNT", 0, min_value=0)
CREATE_EXTRA_ARGS = (os.environ.get("GKE_CREATE_EXTRA_ARGS") or "").split()

BOSKOS_LOCATION = os.environ.get("BOSKOS_LOCATION") or DEFAULT_BOSKOS_LOCATION
BOSKOS_RESOURCE_TYPE = os.environ.get("BOSKOS_RESOURCE_TYPE") or DEFAULT_BOSKOS_RESOURCE_TYPE
BOSKOS_ACQUIRE_TIMEOUT_SECONDS = _env_int(
    "BOSKOS_ACQUIRE_TIMEOUT_SECONDS", DEFAULT_BOSKOS_ACQUIRE_TIMEOUT_SECONDS, min_value=0
)
BOSKOS_HEARTBEAT_INTERVAL_SECONDS = _env_int(
    "BOSKOS_HEARTBEAT_INTERVAL_SECONDS", DEFAULT_BOSKOS_HEARTBEAT_INTERVAL_SECONDS, min_value=1
)
BOSKOS_PROJECTS_REQUESTED = _env_int("BOSKOS_PROJECTS_REQUESTED", 1, min_value=1)
# Number of consecutive failed heartbeats that fails the run, 0 means "only log the failures"
BOSKOS_MAX_HEARTBEAT_FAILURES = _env_int("BOSKOS_MAX_HEARTBEAT_FAILURES", 0, min_value=0)
BOSKOS_OWNER = os.environ.get("JOB_NAME") or "gke-deployer"

RUN_DIR = pl.Path(os.environ.get("RUN_DIR") or LAUNCH_PATH / "_rundir").expanduser().resolve()

# Resolve SCHEDULING_LOG
SCHEDULING_LOG: str | pl.Path = os.environ.get("SCHEDULING_LOG") or ""
if SCHEDULING_LOG:
    SCHEDULING_LOG = pl.Path(SCHEDULING_LOG).expanduser().resolve()


@dataclasses.dataclass
class DeployerConfig:
    """Configuration of a single provisioning run."""

    zones: list[str] = dataclasses.field(default_factory=list)
    regions: list[str] = dataclasses.field(default_factory=list)
    # Leased from Boskos when empty
    projects: list[str] = dataclasses.field(default_factory=list)
    # Items are "name" or "name:project_index"
    cluster_names: list[str] = dataclasses.field(default_factory=list)
    num_clusters: int = 1

    num_nodes: int = DEFAULT_NUM_NODES
    machine_type: str = DEFAULT_MACHINE_TYPE
    image_type: str = DEFAULT_IMAGE_TYPE
    cluster_version: str = ""
    windows_enabled: bool = False
    windows_num_nodes: int = DEFAULT_WINDOWS_NUM_NODES
    windows_machine_type: str = DEFAULT_WINDOWS_MACHINE_TYPE
    windows_image_type: str = WINDOWS_IMAGE_TYPE_LTSC

    network: str = "default"
    environment: str = "prod"
    subnetwork_ranges: list[str] = dataclasses.field(default_factory=list)
    private_cluster_access_level: str = "no"
    private_cluster_master_ip_ranges: list[str] = dataclasses.field(default_factory=list)
    create_extra_args: list[str] = dataclasses.field(default_factory=list)

    retryable_error_patterns: list[str] = dataclasses.field(
        default_factory=lambda: [STOCKOUT_ERROR_PATTERN]
    )
    total_try_count: int = 0

    boskos_location: str = DEFAULT_BOSKOS_LOCATION
    boskos_resource_type: str = DEFAULT_BOSKOS_RESOURCE_TYPE
    boskos_acquire_timeout_seconds: int = DEFAULT_BOSKOS_ACQUIRE_TIMEOUT_SECONDS
    boskos_heartbeat_interval_seconds: int = DEFAULT_BOSKOS_HEARTBEAT_INTERVAL_SECONDS
    boskos_projects_requested: int = 1
    boskos_max_heartbeat_failures: int = 0

    @property
    def is_private(self) -> bool:
        return self.private_cluster_access_level != "no"

    @classmethod
    def from_env(cls) -> "DeployerConfig":
        return cls(
            zones=list(ZONES),
            regions=list(REGIONS),
            projects=list(PROJECTS),
            cluster_names=list(CLUSTER_NAMES),
            num_clusters=NUM_CLUSTERS,
            num_nodes=NUM_NODES,
            machine_type=MACHINE_TYPE,
            image_type=IMAGE_TYPE,
            cluster_version=CLUSTER_VERSION,
            windows_enabled=WINDOWS_ENABLED,
            windows_num_nodes=WINDOWS_NUM_NODES,
            windows_machine_type=WINDOWS_MACHINE_TYPE,
            windows_image_type=WINDOWS_IMAGE_TYPE,
            network=NETWORK,
            environment=ENVIRONMENT,
            subnetwork_ranges=list(SUBNETWORK_RANGES),
            private_cluster_access_level=PRIVATE_CLUSTER_ACCESS_LEVEL,
            private_cluster_master_ip_ranges=list(PRIVATE_CLUSTER_MASTER_IP_RANGES),
            create_extra_args=list(CREATE_EXTRA_ARGS),
            retryable_error_patterns=list(RETRYABLE_ERROR_PATTERNS),
            total_try_count=TOTAL_TRY_COUNT,
            boskos_location=BOSKOS_LOCATION,
            boskos_resource_type=BOSKOS_RESOURCE_TYPE,
            boskos_acquire_timeout_seconds=BOSKOS_ACQUIRE_TIMEOUT_SECONDS,
            boskos_heartbeat_interval_seconds=BOSKOS_HEARTBEAT_INTERVAL_SECONDS,
            boskos_projects_requested=BOSKOS_PROJECTS_REQUESTED,
            boskos_max_heartbeat_failures=BOSKOS_MAX_HEARTBEAT_FAILURES,
        )
