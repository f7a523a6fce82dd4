import json
import pathlib as pl

import pytest

from gke_deployer.utils import helpers


def test_run_command():
    assert helpers.run_command(["echo", "hello"]) == b"hello\n"


def test_run_command_env():
    out = helpers.run_in_bash("echo $GKE_TEST_VAR", env={"GKE_TEST_VAR": "value"})
    assert out == b"value\n"


def test_run_command_error():
    with pytest.raises(helpers.CommandError) as excinfo:
        helpers.run_in_bash("echo 'quota exceeded' >&2; exit 1")
    err = excinfo.value
    assert err.output == "quota exceeded\n"
    assert "quota exceeded" in str(err)
    assert err.cmd_str.startswith("bash -o pipefail -c")


def test_run_command_ignore_fail():
    assert helpers.run_command("false", ignore_fail=True) == b""


@pytest.mark.parametrize("length", (0, 1, 6))
def test_get_rand_str(length: int):
    rand_str = helpers.get_rand_str(length)
    assert len(rand_str) == length
    assert rand_str.islower() or not rand_str


def test_write_json(tmp_path: pl.Path):
    out_file = tmp_path / "topology.json"
    helpers.write_json(out_file=out_file, content={"proj-1": []})
    assert json.loads(out_file.read_text()) == {"proj-1": []}
