#!/usr/bin/env python3
"""Provision GKE clusters for a test run, run the tests, and tear the clusters down.

Configuration is read from `GKE_*` and `BOSKOS_*` environment variables.
"""

import argparse
import logging
import sys

from gke_deployer.cluster_management import cluster_management
from gke_deployer.cluster_management import common
from gke_deployer.utils import configuration
from gke_deployer.utils import gcloud
from gke_deployer.utils import helpers

LOGGER = logging.getLogger(__name__)


def get_args() -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=(__doc__ or "").split("\n", maxsplit=1)[0])
    parser.add_argument(
        "-t",
        "--test-cmd",
        default="",
        help="Command to run once the clusters are up, `KUBECONFIG` points to the clusters.",
    )
    parser.add_argument(
        "-k",
        "--keep-clusters",
        action="store_true",
        help="Don't delete the clusters and don't release the leased projects at the end.",
    )
    return parser.parse_args()


def fetch_kubeconfig(
    creator: gcloud.GcloudClusterCreator, orch: cluster_management.ProvisioningOrchestrator
) -> str:
    """Get credentials of all created clusters into a single kubeconfig file."""
    kubeconfig = configuration.RUN_DIR / common.KUBECONFIG_FILE
    for outcome in orch.succeeded:
        creator.get_credentials(
            project=outcome.project,
            name=outcome.name,
            location_flag=outcome.location,
            kubeconfig=kubeconfig,
        )
    return str(kubeconfig)


def main() -> int:
    logging.basicConfig(format="%(levelname)s:%(message)s", level=logging.INFO)
    args = get_args()

    config = configuration.DeployerConfig.from_env()
    creator = gcloud.GcloudClusterCreator(config)
    orch = cluster_management.ProvisioningOrchestrator(config, creator=creator)

    retval = 0
    try:
        registry = orch.up()
        configuration.RUN_DIR.mkdir(parents=True, exist_ok=True)
        helpers.write_json(
            out_file=configuration.RUN_DIR / common.TOPOLOGY_FILE, content=registry.as_dict()
        )
        kubeconfig = fetch_kubeconfig(creator=creator, orch=orch)
        if args.test_cmd:
            LOGGER.info(f"Running `{args.test_cmd}`.")
            test_out = helpers.run_in_bash(args.test_cmd, env={"KUBECONFIG": kubeconfig})
            LOGGER.info(test_out.decode("utf-8"))
    except (cluster_management.DeployerError, helpers.CommandError) as exc:
        LOGGER.error(str(exc))  # noqa: TRY400
        retval = 1
    finally:
        if args.keep_clusters:
            LOGGER.info("Keeping the clusters, the leased projects are not released.")
        else:
            orch.down()

    return retval


if __name__ == "__main__":
    sys.exit(main())
