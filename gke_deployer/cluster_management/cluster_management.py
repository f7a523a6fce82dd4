"""Module for exposing useful components of cluster provisioning.

The provisioning system creates ephemeral GKE clusters for a test run. It is built from these
pieces:
    - **Leases**: GCP projects are leased from a shared Boskos pool. `LeaseManager` acquires the
      projects, keeps every lease alive with a heartbeat thread, and releases the projects exactly
      once when the run is over.
    - **Locations**: the candidate zones (or regions) are tried one after another. When cluster
      creation fails with a transient error, e.g. the zone doesn't have enough resources,
      `ErrorClassifier` recognizes the error and the next attempt goes to the next location.
    - **Topology**: `TopologyRegistry` records which clusters were created in which project and
      which instance groups back them. The unique hash in instance group names scopes firewall
      rules to a single cluster.
    - **`ProvisioningOrchestrator`**: the main class. `up()` creates all requested clusters,
      `down()` deletes them and releases the leased projects.
"""

# flake8: noqa
from gke_deployer.cluster_management.common import ConfigError
from gke_deployer.cluster_management.common import DeployerError
from gke_deployer.cluster_management.lease import LeaseManager
from gke_deployer.cluster_management.locations import ErrorClassifier
from gke_deployer.cluster_management.orchestrator import AttemptState
from gke_deployer.cluster_management.orchestrator import ProvisioningOrchestrator
from gke_deployer.cluster_management.topology import TopologyRegistry
