#!/usr/bin/env python3
"""Abstract base class for version-control bisection oracles.

Provides the interface the orchestrator uses to drive an external bisection
tool and the value types exchanged with it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cibisect.vcs.parser import find_completion_line, revision_from_line


class CommitState(Enum):
    """Verdict assigned to a tested commit."""

    GOOD = "good"
    BAD = "bad"


@dataclass(frozen=True)
class CommitPair:
    """Known good/bad boundary of a search.

    Attributes:
        good_commit: Revision known to pass
        bad_commit: Revision known to fail
    """

    good_commit: str
    bad_commit: str


@dataclass(frozen=True)
class BisectionResult:
    """Outcome of one oracle interaction.

    Attributes:
        commit: Culprit when is_done, otherwise the next candidate to test
        is_done: True once the oracle has converged on a single commit
    """

    commit: str
    is_done: bool


class OracleError(Exception):
    """Base exception for oracle errors."""


class OracleCommandError(OracleError):
    """Raised when an oracle command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command '{command}' failed with exit code {returncode}: {stderr.strip()}"
        )


class VcsOracle(ABC):
    """Abstract base class for bisection oracles.

    Implementations own the good/bad frontier and compute the next candidate.
    The completion-marker scan used by replay_log lives here so that every
    backend short-circuits a finished log the same way.
    """

    @abstractmethod
    def check_exists(self, revision: str) -> bool:
        """Check whether a revision resolves to a commit.

        Args:
            revision: Revision identifier

        Returns:
            True if the revision exists, False otherwise (never raises for a
            missing revision)
        """

    @abstractmethod
    def reset_session(self) -> None:
        """Discard any bisection in progress."""

    @abstractmethod
    def start_session(self) -> None:
        """Start a new bisection."""

    @abstractmethod
    def mark_commit(self, revision: str, state: CommitState) -> BisectionResult:
        """Mark a revision as good or bad.

        Args:
            revision: Revision to mark
            state: Verdict for the revision

        Returns:
            BisectionResult with the culprit or the next candidate
        """

    @abstractmethod
    def fetch_log(self) -> str:
        """Return the full serialized decision history."""

    @abstractmethod
    def _replay(self, log_text: str) -> BisectionResult:
        """Feed an unfinished decision log into a fresh bisection."""

    def replay_log(self, log_text: str) -> BisectionResult:
        """Rebuild the frontier from a previously recorded decision log.

        A log that already contains the completion marker is answered from the
        text alone, without touching the backend.

        Args:
            log_text: Log previously returned by fetch_log

        Returns:
            BisectionResult for the replayed state
        """
        completion_line = find_completion_line(log_text)
        if completion_line is not None:
            return BisectionResult(revision_from_line(completion_line), True)

        return self._replay(log_text)

    def validate_pair(self, commits: CommitPair) -> Optional[str]:
        """Check both ends of a commit pair.

        Args:
            commits: Pair to validate

        Returns:
            The first revision that does not resolve, or None if both exist
        """
        for revision in (commits.good_commit, commits.bad_commit):
            if not self.check_exists(revision):
                return revision
        return None
