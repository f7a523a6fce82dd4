"""Wrappers around the `gcloud` command line tool."""

import logging
import pathlib as pl

from gke_deployer.utils import configuration
from gke_deployer.utils import helpers

LOGGER = logging.getLogger(__name__)

CONTAINER_ENDPOINTS = {
    "prod": "https://container.googleapis.com/",
    "staging": "https://staging-container.sandbox.googleapis.com/",
    "test": "https://test-container.sandbox.googleapis.com/",
}

WINDOWS_POOL_NAME = "windows-pool"
PODS_RANGE_NAME = "pods"
SERVICES_RANGE_NAME = "services"


def container_endpoint(environment: str) -> str:
    """Return the GKE API endpoint for the given environment name or custom URL."""
    if environment.startswith(("http://", "https://")):
        return environment if environment.endswith("/") else f"{environment}/"
    endpoint = CONTAINER_ENDPOINTS.get(environment)
    if not endpoint:
        msg = f"Unknown GKE environment: {environment}"
        raise ValueError(msg)
    return endpoint


def run(args: list[str], *, environment: str = "prod") -> str:
    """Run `gcloud` with the given arguments and return its stdout."""
    env = {"CLOUDSDK_API_ENDPOINT_OVERRIDES_CONTAINER": container_endpoint(environment)}
    return helpers.run_command(["gcloud", *args], env=env).decode("utf-8")


def is_already_exists(err: helpers.CommandError) -> bool:
    return "already exists" in err.output


def is_not_found(err: helpers.CommandError) -> bool:
    return "not found" in err.output.lower() or "was not found" in err.output


class GcloudClusterCreator:
    """Create and manage GKE clusters with `gcloud`."""

    def __init__(self, config: configuration.DeployerConfig) -> None:
        self.config = config

    def run(self, args: list[str]) -> str:
        return run(args, environment=self.config.environment)

    def create_args(
        self,
        *,
        project: str,
        name: str,
        location_flag: str,
        subnetwork: str = "",
        master_ip_range: str = "",
    ) -> list[str]:
        """Return arguments for `gcloud container clusters create`."""
        config = self.config
        args = [
            "container",
            "clusters",
            "create",
            name,
            f"--project={project}",
            location_flag,
            f"--machine-type={config.machine_type}",
            f"--num-nodes={config.num_nodes}",
            f"--image-type={config.image_type}",
            f"--network={config.network}",
            "--quiet",
        ]
        if config.cluster_version:
            args.append(f"--cluster-version={config.cluster_version}")
        if subnetwork:
            args.extend(
                [
                    f"--subnetwork={subnetwork}",
                    "--enable-ip-alias",
                    f"--cluster-secondary-range-name={PODS_RANGE_NAME}",
                    f"--services-secondary-range-name={SERVICES_RANGE_NAME}",
                ]
            )
        if config.is_private:
            if not subnetwork:
                args.append("--enable-ip-alias")
            args.extend(["--enable-private-nodes", f"--master-ipv4-cidr={master_ip_range}"])
            if config.private_cluster_access_level == "limited":
                args.append("--enable-master-authorized-networks")
            else:
                args.append("--no-enable-master-authorized-networks")
        args.extend(config.create_extra_args)
        return args

    def create(
        self,
        *,
        project: str,
        name: str,
        location_flag: str,
        subnetwork: str = "",
        master_ip_range: str = "",
    ) -> str:
        """Create the cluster and return a listing of its instance group URLs."""
        LOGGER.info(f"Creating cluster '{name}' in project '{project}' ({location_flag}).")
        self.run(
            self.create_args(
                project=project,
                name=name,
                location_flag=location_flag,
                subnetwork=subnetwork,
                master_ip_range=master_ip_range,
            )
        )
        if self.config.windows_enabled:
            self.create_windows_pool(project=project, name=name, location_flag=location_flag)
        return self.instance_group_urls(project=project, name=name, location_flag=location_flag)

    def create_windows_pool(self, *, project: str, name: str, location_flag: str) -> None:
        config = self.config
        self.run(
            [
                "container",
                "node-pools",
                "create",
                WINDOWS_POOL_NAME,
                f"--cluster={name}",
                f"--project={project}",
                location_flag,
                f"--image-type={config.windows_image_type}",
                f"--machine-type={config.windows_machine_type}",
                f"--num-nodes={config.windows_num_nodes}",
                "--quiet",
            ]
        )

    def instance_group_urls(self, *, project: str, name: str, location_flag: str) -> str:
        return self.run(
            [
                "container",
                "clusters",
                "describe",
                name,
                f"--project={project}",
                location_flag,
                "--format=value(instanceGroupUrls)",
            ]
        )

    def get_credentials(
        self, *, project: str, name: str, location_flag: str, kubeconfig: pl.Path
    ) -> None:
        env = {
            "CLOUDSDK_API_ENDPOINT_OVERRIDES_CONTAINER": container_endpoint(
                self.config.environment
            ),
            "KUBECONFIG": str(kubeconfig),
        }
        helpers.run_command(
            [
                "gcloud",
                "container",
                "clusters",
                "get-credentials",
                name,
                f"--project={project}",
                location_flag,
            ],
            env=env,
        )

    def delete(self, *, project: str, name: str, location_flag: str) -> None:
        LOGGER.info(f"Deleting cluster '{name}' in project '{project}'.")
        self.run(
            [
                "container",
                "clusters",
                "delete",
                name,
                f"--project={project}",
                location_flag,
                "--quiet",
            ]
        )

    def ensure_network(self, *, project: str) -> None:
        """Create the custom network unless it's the project's default one."""
        if self.config.network == "default":
            return
        try:
            self.run(
                [
                    "compute",
                    "networks",
                    "create",
                    self.config.network,
                    f"--project={project}",
                    "--subnet-mode=custom",
                ]
            )
        except helpers.CommandError as err:
            if not is_already_exists(err):
                raise
            LOGGER.debug(f"Network '{self.config.network}' already exists in '{project}'.")

    def ensure_subnetwork(self, *, project: str, region: str, ranges: list[str]) -> str:
        """Create subnetwork in the region, return its name.

        Subnetworks are regional, so the same subnetwork serves every zone of the region.
        """
        nodes_range, pods_range, services_range = ranges
        subnetwork = f"{self.config.network}-{region}"
        try:
            self.run(
                [
                    "compute",
                    "networks",
                    "subnets",
                    "create",
                    subnetwork,
                    f"--project={project}",
                    f"--network={self.config.network}",
                    f"--region={region}",
                    f"--range={nodes_range}",
                    f"--secondary-range={PODS_RANGE_NAME}={pods_range},"
                    f"{SERVICES_RANGE_NAME}={services_range}",
                ]
            )
        except helpers.CommandError as err:
            if not is_already_exists(err):
                raise
            LOGGER.debug(f"Subnetwork '{subnetwork}' already exists in '{project}'.")
        return subnetwork
