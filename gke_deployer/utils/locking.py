"""Locking of files shared by deployers that run in parallel."""

import logging

import filelock

import gke_deployer.utils.types as ttypes

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)


def file_lock(path: ttypes.FileType, timeout: float = -1) -> filelock.FileLock:
    """Return inter-process lock guarding the given file.

    The lock lives in a `.lock` file next to the guarded file. Negative `timeout` waits forever.
    """
    return filelock.FileLock(f"{path}.lock", timeout=timeout)
