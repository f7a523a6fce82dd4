import pathlib as pl

import filelock
import pytest

from gke_deployer.utils import locking


def test_file_lock_path(tmp_path: pl.Path):
    lock = locking.file_lock(tmp_path / "scheduling.log")
    assert lock.lock_file == str(tmp_path / "scheduling.log.lock")


def test_file_lock_exclusive(tmp_path: pl.Path):
    guarded = tmp_path / "scheduling.log"
    with locking.file_lock(guarded):
        with pytest.raises(filelock.Timeout):
            locking.file_lock(guarded, timeout=0).acquire()

    with locking.file_lock(guarded, timeout=0):
        guarded.write_text("unlocked", encoding="utf-8")
    assert guarded.read_text(encoding="utf-8") == "unlocked"
