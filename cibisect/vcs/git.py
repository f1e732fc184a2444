#!/usr/bin/env python3
"""Git bisect oracle.

Drives ``git bisect`` through subprocess calls and interprets its textual
responses.
"""

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Callable, List, Optional

from cibisect.vcs.base import (
    BisectionResult,
    CommitState,
    OracleCommandError,
    VcsOracle,
)
from cibisect.vcs.parser import find_completion_line, revision_from_line


logger = logging.getLogger(__name__)

# Constants
DEFAULT_GIT_COMMAND = "git"
NEXT_CANDIDATE_REF = "BISECT_HEAD"
SHORT_COMMIT_LENGTH = 7


@dataclass
class CommandOutput:
    """Captured result of one git invocation."""

    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[List[str]], CommandOutput]


class GitBisectOracle(VcsOracle):
    """Bisection oracle backed by the git command-line tool.

    Attributes:
        repo_path: Path to the git work tree
        git_command: Git executable
        timeout: Per-command timeout in seconds (None for no timeout)
    """

    def __init__(
        self,
        repo_path: str = ".",
        git_command: str = DEFAULT_GIT_COMMAND,
        timeout: Optional[int] = None,
        runner: Optional[CommandRunner] = None,
    ) -> None:
        """Initialize git oracle.

        Args:
            repo_path: Path to the git work tree
            git_command: Git executable
            timeout: Per-command timeout in seconds
            runner: Optional replacement for the subprocess call, receives the
                full argument list and returns a CommandOutput
        """
        self.repo_path = repo_path
        self.git_command = git_command
        self.timeout = timeout
        self._runner = runner or self._subprocess_runner
        logger.debug(f"Using the git command '{git_command}' in {repo_path}")

    def _subprocess_runner(self, args: List[str]) -> CommandOutput:
        try:
            result = subprocess.run(
                args,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise OracleCommandError(" ".join(args), -1, f"timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise OracleCommandError(" ".join(args), -1, str(exc)) from exc

        return CommandOutput(result.returncode, result.stdout, result.stderr)

    def _run(self, *args: str) -> CommandOutput:
        return self._runner([self.git_command, *args])

    def _run_checked(self, *args: str) -> CommandOutput:
        """Run a git command and raise if it fails.

        Args:
            *args: Git arguments

        Returns:
            CommandOutput of the successful command

        Raises:
            OracleCommandError: If the command exits with a non-zero status
        """
        output = self._run(*args)
        if output.returncode != 0:
            command = " ".join([self.git_command, *args])
            logger.error(f"The command '{command}' exited with error code {output.returncode}")
            logger.error(f"stderr contained: {output.stderr.strip()}")
            logger.error(f"stdout contained: {output.stdout.strip()}")
            raise OracleCommandError(command, output.returncode, output.stderr)
        return output

    def check_exists(self, revision: str) -> bool:
        output = self._run("cat-file", "-e", f"{revision}^{{commit}}")
        if output.returncode == 0:
            return True

        logger.error(
            f"The commit {revision} does not exist in the repository "
            f"(did you forget adding the remote name?)"
        )
        logger.debug(f"cat-file exited with code {output.returncode}: {output.stderr.strip()}")
        return False

    def reset_session(self) -> None:
        logger.debug("Resetting git bisect")
        self._run_checked("bisect", "reset")

    def start_session(self) -> None:
        logger.debug("Starting git bisect without checkout")
        self._run_checked("bisect", "start", "--no-checkout")

    def mark_commit(self, revision: str, state: CommitState) -> BisectionResult:
        logger.info(f"Marking commit {revision[:SHORT_COMMIT_LENGTH]} as {state.value}")
        output = self._run_checked("bisect", state.value, revision)
        return self._parse_bisect_output(output)

    def fetch_log(self) -> str:
        log_text = self._run_checked("bisect", "log").stdout
        if log_text and not log_text.endswith("\n"):
            log_text += "\n"
        return log_text

    def next_candidate(self) -> str:
        """Return the revision git bisect wants tested next."""
        return self._run_checked("rev-parse", NEXT_CANDIDATE_REF).stdout.strip()

    def _replay(self, log_text: str) -> BisectionResult:
        fd, path = tempfile.mkstemp(prefix="cibisect-replay-", suffix=".log")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(log_text)
            logger.info("Replaying recorded bisection log")
            output = self._run_checked("bisect", "replay", path)
        finally:
            os.unlink(path)

        return self._parse_bisect_output(output)

    def _parse_bisect_output(self, output: CommandOutput) -> BisectionResult:
        """Turn bisect stdout into a BisectionResult.

        The culprit is taken from the completion line itself; the frontier is
        only queried when the search continues.
        """
        completion_line = find_completion_line(output.stdout)
        if completion_line is not None:
            culprit = revision_from_line(completion_line)
            logger.info(f"Git bisect reports: first bad commit is {culprit}")
            return BisectionResult(culprit, True)

        return BisectionResult(self.next_candidate(), False)
