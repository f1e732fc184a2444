#!/usr/bin/env python3
"""Command dispatcher - runs the downstream test as a local shell command.

Build parameters are exported into the command's environment.
"""

import logging
import os
import subprocess
from typing import Dict, Optional

from cibisect.dispatch.base import BuildDispatcher, BuildHandle, BuildOutcome


logger = logging.getLogger(__name__)


class CommandDispatcher(BuildDispatcher):
    """Run the downstream test as a shell command.

    Exit status 0 is a pass, any other exit status a failure. A command killed
    by a signal or by the timeout is reported as aborted.

    Attributes:
        command: Shell command line to run
        workdir: Working directory (current directory if None)
        timeout: Seconds to wait before killing the command (None waits forever)
    """

    def __init__(
        self, command: str, workdir: Optional[str] = None, timeout: Optional[int] = None
    ) -> None:
        self.command = command
        self.workdir = workdir
        self.timeout = timeout

    def dispatch(self, parameters: Dict[str, str]) -> BuildHandle:
        env = os.environ.copy()
        env.update(parameters)

        logger.info(f"Running downstream command: {self.command}")
        logger.debug(f"Build parameters: {parameters}")
        try:
            process = subprocess.Popen(
                self.command,
                shell=True,
                cwd=self.workdir,
                env=env,
            )
        except OSError as exc:
            logger.error(f"Failed to launch downstream command: {exc}")
            return BuildHandle(dict(parameters), None, {"error": str(exc)})

        return BuildHandle(dict(parameters), process)

    def wait(self, handle: BuildHandle) -> BuildOutcome:
        process = handle.backend
        if process is None:
            return BuildOutcome.UNKNOWN

        try:
            returncode = process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Downstream command timed out after {self.timeout}s, killing it")
            process.kill()
            process.wait()
            return BuildOutcome.ABORTED

        if returncode == 0:
            logger.info("Downstream build was successful")
            return BuildOutcome.SUCCESS
        if returncode < 0:
            logger.warning(f"Downstream build was killed by signal {-returncode}")
            return BuildOutcome.ABORTED

        logger.info(f"Downstream build failed with exit code {returncode}")
        return BuildOutcome.FAILURE

    def describe(self) -> str:
        return f"command: {self.command}"
