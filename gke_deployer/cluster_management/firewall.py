"""Firewall rules opening the ports e2e tests need on the cluster nodes.

A rule is scoped to a single cluster through the unique hash of its instance groups, so clusters
with the same name in different runs don't share rules.
"""

import dataclasses
import logging
import typing as tp

from gke_deployer.cluster_management import common
from gke_deployer.cluster_management import topology
from gke_deployer.utils import gcloud
from gke_deployer.utils import helpers

LOGGER = logging.getLogger(__name__)

RunFunc = tp.Callable[[list[str]], str]


@dataclasses.dataclass(frozen=True)
class FirewallRule:
    name: str
    project: str
    network: str
    target_tag: str
    allow: str = common.E2E_ALLOW


def rule_name(unique_hash: str) -> str:
    return f"e2e-ports-{unique_hash}"


def node_tag(cluster_name: str, unique_hash: str) -> str:
    """Return network tag GKE puts on nodes of the cluster."""
    return f"gke-{cluster_name}-{unique_hash}-node"


def get_rules(registry: topology.TopologyRegistry, network: str) -> list[FirewallRule]:
    """Return firewall rules for all clusters recorded in the registry."""
    rules = []
    for project, cluster in registry.all_clusters():
        unique_hashes = registry.unique_hashes(project, cluster.name)
        if not unique_hashes:
            LOGGER.warning(f"No instance groups known for cluster '{cluster.name}', no firewall.")
        rules.extend(
            FirewallRule(
                name=rule_name(uniq),
                project=project,
                network=network,
                target_tag=node_tag(cluster.name, uniq),
            )
            for uniq in unique_hashes
        )
    return rules


def create_args(rule: FirewallRule) -> list[str]:
    return [
        "compute",
        "firewall-rules",
        "create",
        rule.name,
        f"--project={rule.project}",
        f"--network={rule.network}",
        f"--allow={rule.allow}",
        f"--target-tags={rule.target_tag}",
    ]


def ensure_rules(rules: tp.Iterable[FirewallRule], *, run_func: RunFunc) -> None:
    for rule in rules:
        LOGGER.info(f"Creating firewall rule '{rule.name}' in project '{rule.project}'.")
        try:
            run_func(create_args(rule))
        except helpers.CommandError as err:
            if not gcloud.is_already_exists(err):
                raise
            LOGGER.debug(f"Firewall rule '{rule.name}' already exists.")


def delete_rules(rules: tp.Iterable[FirewallRule], *, run_func: RunFunc) -> None:
    """Delete firewall rules, log failures and continue with the rest."""
    for rule in rules:
        try:
            run_func(
                [
                    "compute",
                    "firewall-rules",
                    "delete",
                    rule.name,
                    f"--project={rule.project}",
                    "--quiet",
                ]
            )
        except helpers.CommandError as err:
            if gcloud.is_not_found(err):
                continue
            LOGGER.error(f"Failed to delete firewall rule '{rule.name}': {err}")  # noqa: TRY400
