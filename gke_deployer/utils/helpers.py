import json
import logging
import os
import pathlib as pl
import random
import string
import subprocess

import gke_deployer.utils.types as ttypes

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Command finished with non-zero return code."""

    def __init__(self, msg: str, *, cmd_str: str = "", output: str = "") -> None:
        super().__init__(msg)
        self.cmd_str = cmd_str
        self.output = output


def run_command(
    command: str | list,
    *,
    workdir: ttypes.FileType = "",
    ignore_fail: bool = False,
    shell: bool = False,
    env: dict | None = None,
) -> bytes:
    """Run command."""
    cmd: str | list
    if isinstance(command, str):
        cmd = command if shell else command.split()
        cmd_str = command
    else:
        cmd = command
        cmd_str = " ".join(command)

    LOGGER.debug("Running `%s`", cmd_str)

    run_env = {**os.environ, **env} if env else None
    with subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        shell=shell,
        cwd=workdir or None,
        env=run_env,
    ) as p:
        stdout, stderr = p.communicate()
        retcode = p.returncode

    if not ignore_fail and retcode != 0:
        err_dec = stderr.decode()
        err_dec = err_dec or stdout.decode()
        msg = f"An error occurred while running `{cmd_str}`: {err_dec}"
        raise CommandError(msg, cmd_str=cmd_str, output=err_dec)

    return stdout


def run_in_bash(command: str, *, workdir: ttypes.FileType = "", env: dict | None = None) -> bytes:
    """Run command(s) in bash."""
    cmd = ["bash", "-o", "pipefail", "-c", f"{command}"]
    return run_command(cmd, workdir=workdir, env=env)


def get_rand_str(length: int = 8) -> str:
    """Return random string."""
    if length < 1:
        return ""
    return "".join(random.choice(string.ascii_lowercase) for i in range(length))


def write_json(*, out_file: ttypes.FileType, content: dict) -> ttypes.FileType:
    """Write dictionary content to JSON file."""
    with open(pl.Path(out_file).expanduser(), "w", encoding="utf-8") as out_fp:
        out_fp.write(json.dumps(content, indent=4))
    return out_file
