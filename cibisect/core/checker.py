"""System health checker for cibisect dependencies and configuration."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config.config import BisectConfig
from ..vcs.base import VcsOracle
from ..vcs.git import GitBisectOracle


logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Result of a single check operation."""

    category: str
    name: str
    passed: bool
    message: str
    details: Optional[str] = None
    warning: bool = False


class SystemChecker:
    """Validates cibisect system dependencies and configuration."""

    def __init__(self, config: BisectConfig, oracle: Optional[VcsOracle] = None):
        """Initialize system checker with configuration.

        Args:
            config: Loaded bisect configuration
            oracle: Oracle used to resolve the endpoint commits (git oracle if None)
        """
        self.config = config
        self.oracle = oracle
        self.results: List[CheckResult] = []

    def check_local_tools(self) -> List[CheckResult]:
        """Check that the git executable is available.

        Returns:
            List of check results for local tools
        """
        git_command = self.config.git_command
        tool_path = shutil.which(git_command)
        if tool_path:
            return [
                CheckResult(
                    category="Local System",
                    name=f"{git_command} command",
                    passed=True,
                    message=f"Found at {tool_path}",
                )
            ]
        return [
            CheckResult(
                category="Local System",
                name=f"{git_command} command",
                passed=False,
                message=f"{git_command} not found in PATH",
            )
        ]

    def check_repository(self) -> List[CheckResult]:
        """Check that the repository path is a git work tree.

        Returns:
            List of check results for the repository
        """
        repo_path = Path(self.config.repo_path)
        if not repo_path.is_dir():
            return [
                CheckResult(
                    category="Repository",
                    name="work tree",
                    passed=False,
                    message=f"Directory not found: {repo_path}",
                )
            ]

        try:
            result = subprocess.run(
                [self.config.git_command, "rev-parse", "--is-inside-work-tree"],
                cwd=repo_path,
                capture_output=True,
                text=True,
                check=False,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return [
                CheckResult(
                    category="Repository",
                    name="work tree",
                    passed=False,
                    message="Could not run git",
                    details=str(exc),
                )
            ]

        if result.returncode == 0 and result.stdout.strip() == "true":
            return [
                CheckResult(
                    category="Repository",
                    name="work tree",
                    passed=True,
                    message=f"Git work tree at {repo_path}",
                )
            ]
        return [
            CheckResult(
                category="Repository",
                name="work tree",
                passed=False,
                message=f"Not a git work tree: {repo_path}",
                details=result.stderr.strip() or None,
            )
        ]

    def check_state_dir(self) -> List[CheckResult]:
        """Check that decision logs can be written.

        Returns:
            List of check results for the state directory
        """
        state_dir = Path(self.config.state_dir)

        # Walk up to the closest existing directory, it will be created on first use
        probe = state_dir
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent

        if probe.is_dir() and os.access(probe, os.W_OK):
            message = f"Writable at {state_dir}"
            if probe != state_dir:
                message = f"{state_dir} will be created"
            return [
                CheckResult(
                    category="Configuration",
                    name="state directory",
                    passed=True,
                    message=message,
                )
            ]
        return [
            CheckResult(
                category="Configuration",
                name="state directory",
                passed=False,
                message=f"Not writable: {state_dir}",
            )
        ]

    def check_dispatcher(self) -> List[CheckResult]:
        """Validate dispatcher configuration.

        Returns:
            List of check results for the dispatcher
        """
        dispatcher = self.config.dispatcher

        if dispatcher.type == "command":
            if dispatcher.command:
                return [
                    CheckResult(
                        category="Configuration",
                        name="dispatcher",
                        passed=True,
                        message=f"Command dispatcher: {dispatcher.command}",
                    )
                ]
            return [
                CheckResult(
                    category="Configuration",
                    name="dispatcher",
                    passed=False,
                    message="Command dispatcher configured without a command",
                )
            ]

        if dispatcher.type == "properties":
            return [
                CheckResult(
                    category="Configuration",
                    name="dispatcher",
                    passed=True,
                    message=f"Properties file dispatcher: {dispatcher.properties_file}",
                    details="Only usable for chained mode (step command)",
                    warning=True,
                )
            ]

        return [
            CheckResult(
                category="Configuration",
                name="dispatcher",
                passed=False,
                message=f"Unknown dispatcher type: {dispatcher.type}",
            )
        ]

    def check_commits(self) -> List[CheckResult]:
        """Check that the configured endpoint commits resolve.

        Returns:
            List of check results for the endpoint commits
        """
        results = []
        oracle = self.oracle or GitBisectOracle(
            repo_path=self.config.repo_path,
            git_command=self.config.git_command,
            timeout=self.config.git_timeout,
        )

        for name, commit in (
            ("good commit", self.config.good_commit),
            ("bad commit", self.config.bad_commit),
        ):
            if not commit:
                results.append(
                    CheckResult(
                        category="Repository",
                        name=name,
                        passed=True,
                        message="Not configured (must be given on the command line)",
                        warning=True,
                    )
                )
            elif oracle.check_exists(commit):
                results.append(
                    CheckResult(
                        category="Repository",
                        name=name,
                        passed=True,
                        message=f"{commit} found",
                    )
                )
            else:
                results.append(
                    CheckResult(
                        category="Repository",
                        name=name,
                        passed=False,
                        message=f"{commit} does not exist in the repository",
                    )
                )

        return results

    def run_all_checks(self) -> bool:
        """Run all system checks and collect results.

        Returns:
            True if all checks passed, False otherwise
        """
        self.results = []

        logger.info("Checking local tools...")
        self.results.extend(self.check_local_tools())

        logger.info("Validating configuration...")
        self.results.extend(self.check_state_dir())
        self.results.extend(self.check_dispatcher())

        logger.info("Checking repository...")
        repo_results = self.check_repository()
        self.results.extend(repo_results)

        # Commit lookups are meaningless without a work tree
        if repo_results[0].passed or self.oracle is not None:
            self.results.extend(self.check_commits())
        else:
            self.results.append(
                CheckResult(
                    category="Repository",
                    name="endpoint commits",
                    passed=True,
                    message="Skipped due to missing work tree",
                    warning=True,
                )
            )

        return all(r.passed for r in self.results)

    def print_results(self):
        """Print formatted check results to console."""
        if not self.results:
            print("No checks performed.")
            return

        print("\nRunning cibisect system checks...\n")

        categories = {}
        for result in self.results:
            categories.setdefault(result.category, []).append(result)

        for category, results in categories.items():
            print(f"[{category}]")
            for result in results:
                symbol = ("⚠" if result.warning else "✓") if result.passed else "✗"

                print(f"{symbol} {result.name}: {result.message}")
                if result.details:
                    print(f"  {result.details}")
            print()

        passed = sum(1 for r in self.results if r.passed and not r.warning)
        failed = sum(1 for r in self.results if not r.passed)
        warnings = sum(1 for r in self.results if r.warning)

        print(f"Summary: {passed} passed, {failed} failed, {warnings} warning(s)")

        if failed > 0:
            print(
                "\n⚠ Some checks failed. Please address the issues above before running bisection."
            )
