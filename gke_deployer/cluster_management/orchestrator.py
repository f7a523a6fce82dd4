"""Creation of the requested clusters in the leased projects.

Every requested cluster goes through its own small state machine::

    PENDING -> ATTEMPTING(location) -> SUCCEEDED
                    |          ^
                    v          |  retryable error, budget left
              EXHAUSTED    ATTEMPTING(next location)

Attempts are strictly sequential. A cluster that ends up `EXHAUSTED` doesn't stop creation of the
other clusters; its original error is re-raised once all clusters were processed.
"""

import dataclasses
import datetime
import enum
import logging
import typing as tp

from gke_deployer.cluster_management import common
from gke_deployer.cluster_management import firewall
from gke_deployer.cluster_management import lease
from gke_deployer.cluster_management import locations
from gke_deployer.cluster_management import topology
from gke_deployer.utils import configuration
from gke_deployer.utils import framework_log
from gke_deployer.utils import gcloud
from gke_deployer.utils import helpers
from gke_deployer.utils import locking

LOGGER = logging.getLogger(__name__)


class AttemptState(enum.Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class ClusterCreator(tp.Protocol):
    """Collaborator that talks to the cloud provider."""

    def create(
        self,
        *,
        project: str,
        name: str,
        location_flag: str,
        subnetwork: str = "",
        master_ip_range: str = "",
    ) -> str: ...

    def delete(self, *, project: str, name: str, location_flag: str) -> None: ...

    def ensure_network(self, *, project: str) -> None: ...

    def ensure_subnetwork(self, *, project: str, region: str, ranges: list[str]) -> str: ...

    def run(self, args: list[str]) -> str: ...


@dataclasses.dataclass
class RetryState:
    total_try_count: int
    retry_count: int = 0

    def can_retry(self) -> bool:
        return self.retry_count + 1 < self.total_try_count

    def next_attempt(self) -> int:
        if not self.can_retry():
            msg = f"Retry budget of {self.total_try_count} tries exhausted."
            raise RuntimeError(msg)
        self.retry_count += 1
        return self.retry_count


@dataclasses.dataclass
class ClusterOutcome:
    project: str
    index: int
    name: str
    state: AttemptState = AttemptState.PENDING
    # Location flag of the last attempt
    location: str = ""
    retries: int = 0
    error: Exception | None = None
    record: topology.ClusterRecord | None = None
    instance_groups: list[topology.InstanceGroupRecord] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class RequestedCluster:
    index: int
    name: str
    project_index: int = 0


def get_requested_clusters(names: tp.Sequence[str], num_clusters: int) -> list[RequestedCluster]:
    """Return clusters to create.

    Names are either plain names, or "name:project_index" for clusters that don't go to the first
    project. Names are generated when none are given.
    """
    if not names:
        prefix = f"kt2-{helpers.get_rand_str(6)}"
        names = [prefix] if num_clusters == 1 else [f"{prefix}-{i}" for i in range(num_clusters)]

    requested = []
    for index, name_spec in enumerate(names):
        name, __, project_idx = name_spec.partition(":")
        if not name:
            msg = f"Invalid cluster name: '{name_spec}'"
            raise common.ConfigError(msg)
        try:
            project_index = int(project_idx or 0)
        except ValueError:
            msg = f"Invalid project index in cluster name: '{name_spec}'"
            raise common.ConfigError(msg) from None
        requested.append(RequestedCluster(index=index, name=name, project_index=project_index))

    seen = [(c.name, c.project_index) for c in requested]
    if len(set(seen)) != len(seen):
        msg = f"Duplicate cluster names: {list(names)}"
        raise common.ConfigError(msg)
    return requested


def parse_ranges(entries: tp.Sequence[str], *, width: int = 0) -> list[list[str]]:
    """Split per-attempt range entries ("a b c") into lists of ranges."""
    parsed = [e.split() for e in entries]
    if width and any(len(p) != width for p in parsed):
        msg = f"Every range entry must have {width} items: {list(entries)}"
        raise common.ConfigError(msg)
    return parsed


class ProvisioningOrchestrator:
    """Create clusters with retries in alternative locations and record the created topology."""

    def __init__(
        self,
        config: configuration.DeployerConfig,
        *,
        lease_manager: lease.LeaseManager | None = None,
        creator: ClusterCreator | None = None,
    ) -> None:
        self.config = config
        self.lease_manager = lease_manager
        self.creator: ClusterCreator = creator or gcloud.GcloudClusterCreator(config)

        self.outcomes: list[ClusterOutcome] = []
        self.total_try_count = 0
        self.classifier = locations.ErrorClassifier(())
        self.subnetwork_ranges: list[list[str]] = []
        self.master_ip_ranges: list[list[str]] = []
        self.requested: list[RequestedCluster] = []
        self._registry: topology.TopologyRegistry | None = None
        self._initialized = False

    @property
    def registry(self) -> topology.TopologyRegistry:
        if self._registry is None:
            msg = "Orchestrator is not initialized."
            raise RuntimeError(msg)
        return self._registry

    def log(self, msg: str) -> None:
        """Log a message to the scheduling log shared by all deployers of the test run."""
        if not configuration.SCHEDULING_LOG:
            return

        with (
            locking.file_lock(configuration.SCHEDULING_LOG),
            open(configuration.SCHEDULING_LOG, "a", encoding="utf-8") as logfile,
        ):
            logfile.write(f"{datetime.datetime.now(tz=datetime.timezone.utc)}: {msg}\n")

    def _verify_config(self) -> None:
        config = self.config
        locations.verify_location_flags(regions=config.regions, zones=config.zones)
        try:
            gcloud.container_endpoint(config.environment)
        except ValueError as exc:
            raise common.ConfigError(str(exc)) from exc
        if config.total_try_count < 0:
            msg = f"Total try count must not be negative, got {config.total_try_count}."
            raise common.ConfigError(msg)

        num_locations = len(locations.candidate_locations(config.regions, config.zones))
        self.total_try_count = min(config.total_try_count or num_locations, num_locations)
        self.classifier = locations.ErrorClassifier(config.retryable_error_patterns)
        self.requested = get_requested_clusters(config.cluster_names, config.num_clusters)

        self.subnetwork_ranges = parse_ranges(config.subnetwork_ranges, width=3)
        if self.subnetwork_ranges and len(self.subnetwork_ranges) < self.total_try_count:
            msg = (
                f"Subnetwork ranges are needed for each of {self.total_try_count} tries, "
                f"got {len(self.subnetwork_ranges)}."
            )
            raise common.ConfigError(msg)

        if config.is_private:
            self.master_ip_ranges = parse_ranges(
                config.private_cluster_master_ip_ranges, width=len(self.requested)
            )
            if len(self.master_ip_ranges) < self.total_try_count:
                msg = (
                    f"Master IP ranges are needed for each of {self.total_try_count} tries, "
                    f"got {len(self.master_ip_ranges)}."
                )
                raise common.ConfigError(msg)

    def _get_projects(self) -> list[str]:
        if self.config.projects:
            return list(self.config.projects)

        if self.lease_manager is None:
            self.lease_manager = lease.LeaseManager.from_config(self.config)
        return self.lease_manager.acquire_projects(self.config.boskos_projects_requested)

    def init(self) -> None:
        """Verify configuration and get projects. Does nothing when already initialized."""
        if self._initialized:
            return

        # Configuration errors must surface before any project is leased
        self._verify_config()

        projects = self._get_projects()
        bad_idx = [c.name for c in self.requested if c.project_index >= len(projects)]
        if bad_idx:
            msg = f"Clusters {bad_idx} refer to a project that is not available: {projects}"
            raise common.ConfigError(msg)

        self._registry = topology.TopologyRegistry(projects)
        self._initialized = True
        self.log(f"initialized with projects {projects}, {self.total_try_count} tries")

    def _location_flag(self, attempt: int) -> str:
        return locations.location_flag(self.config.regions, self.config.zones, attempt)

    def _attempt(self, project: str, index: int, name: str, attempt: int) -> str:
        subnetwork = ""
        if self.subnetwork_ranges:
            region = locations.region_from_location(self.config.regions, self.config.zones, attempt)
            subnetwork = self.creator.ensure_subnetwork(
                project=project, region=region, ranges=self.subnetwork_ranges[attempt]
            )
        master_ip_range = self.master_ip_ranges[attempt][index] if self.master_ip_ranges else ""

        return self.creator.create(
            project=project,
            name=name,
            location_flag=self._location_flag(attempt),
            subnetwork=subnetwork,
            master_ip_range=master_ip_range,
        )

    def _cleanup_failed_attempt(self, project: str, name: str, location_flag: str) -> None:
        """Delete leftovers of a failed attempt, if there are any."""
        try:
            self.creator.delete(project=project, name=name, location_flag=location_flag)
        except helpers.CommandError as err:
            LOGGER.debug(f"Nothing to clean up after failed attempt for '{name}': {err}")

    def create_cluster(self, project: str, index: int, name: str) -> ClusterOutcome:
        """Create a single cluster, retrying in the next location on retryable errors."""
        self.init()
        outcome = ClusterOutcome(project=project, index=index, name=name)
        retry_state = RetryState(total_try_count=self.total_try_count)

        while True:
            if self.lease_manager:
                self.lease_manager.check_heartbeats()

            attempt = retry_state.retry_count
            outcome.state = AttemptState.ATTEMPTING
            outcome.location = self._location_flag(attempt)
            outcome.retries = attempt
            self.log(f"'{name}': attempt {attempt + 1} with `{outcome.location}`")

            try:
                output = self._attempt(project=project, index=index, name=name, attempt=attempt)
            except helpers.CommandError as err:
                if self.classifier.is_retryable(str(err)) and retry_state.can_retry():
                    framework_log.framework_logger().warning(
                        f"Cluster '{name}' in '{project}' failed with `{outcome.location}`, "
                        "retrying in the next location"
                    )
                    LOGGER.warning(f"Retryable error creating cluster '{name}': {err}")
                    self._cleanup_failed_attempt(
                        project=project, name=name, location_flag=outcome.location
                    )
                    retry_state.next_attempt()
                    continue

                outcome.state = AttemptState.EXHAUSTED
                outcome.error = err
                self._cleanup_failed_attempt(
                    project=project, name=name, location_flag=outcome.location
                )
                framework_log.framework_logger().error(
                    f"Cluster '{name}' in '{project}' failed after {attempt + 1} tries"
                )
                self.log(f"'{name}': failed after {attempt + 1} tries")
                return outcome

            outcome.record = self.registry.record_cluster(project, index, name)
            outcome.instance_groups = self.registry.register_instance_groups(
                project, name, topology.split_instance_group_urls(output)
            )
            outcome.state = AttemptState.SUCCEEDED
            LOGGER.info(f"Created cluster '{name}' in '{project}' with `{outcome.location}`.")
            self.log(f"'{name}': created with `{outcome.location}`")
            return outcome

    @property
    def succeeded(self) -> list[ClusterOutcome]:
        return [o for o in self.outcomes if o.state == AttemptState.SUCCEEDED]

    @property
    def exhausted(self) -> list[ClusterOutcome]:
        return [o for o in self.outcomes if o.state == AttemptState.EXHAUSTED]

    def up(self) -> topology.TopologyRegistry:
        """Create all requested clusters and open firewall for them."""
        self.init()
        registry = self.registry
        projects = registry.projects

        for project in projects:
            self.creator.ensure_network(project=project)

        for requested in self.requested:
            outcome = self.create_cluster(
                project=projects[requested.project_index],
                index=requested.index,
                name=requested.name,
            )
            self.outcomes.append(outcome)

        exhausted = self.exhausted
        try:
            firewall.ensure_rules(
                firewall.get_rules(registry, self.config.network), run_func=self.creator.run
            )
        except helpers.CommandError:
            if not exhausted:
                raise
            # The error of the failed cluster is the one to report
            LOGGER.exception("Failed to create firewall rules.")

        if exhausted:
            for outcome in exhausted[1:]:
                LOGGER.error(f"Failed to create cluster '{outcome.name}': {outcome.error}")
            raise exhausted[0].error  # type: ignore[misc]

        return registry

    def down(self) -> None:
        """Delete what this run created and release the leased projects."""
        try:
            if not self._initialized:
                return

            firewall.delete_rules(
                firewall.get_rules(self.registry, self.config.network),
                run_func=self.creator.run,
            )
            for outcome in self.succeeded:
                try:
                    self.creator.delete(
                        project=outcome.project, name=outcome.name, location_flag=outcome.location
                    )
                except helpers.CommandError as err:
                    LOGGER.error(  # noqa: TRY400
                        f"Failed to delete cluster '{outcome.name}': {err}"
                    )
            self.log("called `down`")
        finally:
            if self.lease_manager:
                self.lease_manager.release()
