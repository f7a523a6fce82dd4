import functools
import logging
import pathlib as pl
import time

from gke_deployer.utils import configuration


def get_logs_dir() -> pl.Path:
    logs_dir = configuration.RUN_DIR / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


@functools.cache
def get_framework_log_path() -> pl.Path:
    return get_logs_dir() / "framework.log"


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the `framework.log` file.

    The logger can be used for logging (and later reporting) events like a cluster creation
    attempt that failed with a stockout in a given zone.
    """

    class UTCFormatter(logging.Formatter):
        converter = time.gmtime  # type: ignore[assignment]

    formatter = UTCFormatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.FileHandler(get_framework_log_path())
    handler.setFormatter(formatter)

    logger = logging.getLogger("framework")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)

    return logger
