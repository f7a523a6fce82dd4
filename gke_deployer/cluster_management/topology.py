"""Bookkeeping of the clusters and instance groups created in the leased projects."""

import dataclasses
import logging
import re
import typing as tp

from gke_deployer.cluster_management import common

LOGGER = logging.getLogger(__name__)

# Matches instance group URLs of the form
# `https://www.googleapis.com/compute/v1/projects/some-project/zones/a-zone/`
# `instanceGroupManagers/gke-some-cluster-some-pool-90fcb815-grp`
# or `.../instanceGroupManagers/gk3-some-cluster-some-pool-90fcb815-grp` for GKE in Autopilot mode.
# Groups: 0 - path starting with `zones/`, 1 - zone, 2 - pool name, 3 - unique hash
_POOL_RE = re.compile(r"zones/([^/]+)/instanceGroupManagers/(gk[e3]-.*-([0-9a-f]{8})-grp)$")


class InstanceGroupParseError(common.DeployerError):
    pass


class DuplicateIndexError(common.DeployerError):
    pass


class UnknownProjectError(common.DeployerError):
    pass


@dataclasses.dataclass(frozen=True, order=True)
class ClusterRecord:
    # Position of the cluster among the requested cluster names
    index: int
    name: str


@dataclasses.dataclass(frozen=True)
class InstanceGroupRecord:
    path: str
    zone: str
    name: str
    # Nonce used for scoping firewall rules to a single cluster
    unique_hash: str


def parse_instance_group_url(url: str) -> InstanceGroupRecord:
    """Parse instance group manager URL of a node pool."""
    m = _POOL_RE.search(url.strip())
    if not m:
        msg = f"Failed to parse instance group URL: {url!r}"
        raise InstanceGroupParseError(msg)
    return InstanceGroupRecord(path=m[0], zone=m[1], name=m[2], unique_hash=m[3])


def split_instance_group_urls(output: str) -> list[str]:
    """Split `gcloud` listing of instance group URLs (`;` separated) into single URLs."""
    return [u for u in re.split(r"[;\s]+", output) if u]


class TopologyRegistry:
    """Projects, clusters created in them, and instance groups backing the clusters.

    The registry is written only by the orchestrator. Lookups return copies.
    """

    def __init__(self, projects: tp.Iterable[str]) -> None:
        self._clusters: dict[str, list[ClusterRecord]] = {p: [] for p in projects}
        self._instance_groups: dict[str, dict[str, list[InstanceGroupRecord]]] = {
            p: {} for p in self._clusters
        }

    @property
    def projects(self) -> list[str]:
        return list(self._clusters)

    def _check_project(self, project: str) -> None:
        if project not in self._clusters:
            msg = f"Project '{project}' is not part of this run."
            raise UnknownProjectError(msg)

    def record_cluster(self, project: str, index: int, name: str) -> ClusterRecord:
        self._check_project(project)
        project_clusters = self._clusters[project]
        if any(c.index == index for c in project_clusters):
            msg = f"Cluster index {index} already recorded for project '{project}'."
            raise DuplicateIndexError(msg)

        record = ClusterRecord(index=index, name=name)
        project_clusters.append(record)
        return record

    def register_instance_groups(
        self, project: str, cluster_name: str, urls: tp.Iterable[str]
    ) -> list[InstanceGroupRecord]:
        """Parse and store instance groups of the cluster, skip URLs that don't match."""
        self._check_project(project)
        records = []
        for url in urls:
            try:
                records.append(parse_instance_group_url(url))
            except InstanceGroupParseError as exc:
                LOGGER.warning(f"Skipping instance group of cluster '{cluster_name}': {exc}")

        self._instance_groups[project].setdefault(cluster_name, []).extend(records)
        return records

    def clusters(self, project: str) -> tuple[ClusterRecord, ...]:
        self._check_project(project)
        return tuple(self._clusters[project])

    def all_clusters(self) -> list[tuple[str, ClusterRecord]]:
        return [(p, c) for p, clusters in self._clusters.items() for c in clusters]

    def instance_groups(self, project: str, cluster_name: str) -> tuple[InstanceGroupRecord, ...]:
        self._check_project(project)
        return tuple(self._instance_groups[project].get(cluster_name, ()))

    def unique_hashes(self, project: str, cluster_name: str) -> list[str]:
        """Return unique hashes of the cluster's instance groups, in order of appearance."""
        igs = self.instance_groups(project, cluster_name)
        return list(dict.fromkeys(ig.unique_hash for ig in igs))

    def as_dict(self) -> dict[str, tp.Any]:
        return {
            project: {
                "clusters": [dataclasses.asdict(c) for c in clusters],
                "instance_groups": {
                    cname: [dataclasses.asdict(ig) for ig in igs]
                    for cname, igs in self._instance_groups[project].items()
                },
            }
            for project, clusters in self._clusters.items()
        }
