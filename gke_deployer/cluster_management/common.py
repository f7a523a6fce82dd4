E2E_ALLOW = "tcp:22,tcp:80,tcp:8080,tcp:30000-32767,udp:30000-32767"
TOPOLOGY_FILE = "topology.json"
KUBECONFIG_FILE = "kubetest2-kubeconfig"


class DeployerError(Exception):
    pass


class ConfigError(DeployerError):
    pass
