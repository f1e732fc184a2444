"""Pytest configuration and fixtures for cibisect tests."""

import os
import shutil
import subprocess
from typing import Callable, Dict, List, Optional, Union

import pytest

from cibisect.dispatch.base import BuildDispatcher, BuildHandle, BuildOutcome
from cibisect.persistence.store import SessionStore
from cibisect.vcs.base import BisectionResult, CommitState, OracleError, VcsOracle


class LinearHistoryOracle(VcsOracle):
    """In-memory oracle over a straight line of commits.

    Mimics git bisect: the next candidate is the midpoint of the frontier, the
    log uses ``git bisect good|bad <rev>`` lines and ends with a
    ``# first bad commit: [<rev>] ...`` line once converged.
    """

    def __init__(self, commits: List[str]):
        self.commits = list(commits)
        self.replays = 0
        self.marks: List[tuple] = []
        self.resets = 0
        self._reset_state()

    def _reset_state(self):
        self.started = False
        self.good_index: Optional[int] = None
        self.bad_index: Optional[int] = None
        self.lines: List[str] = []
        self.culprit: Optional[str] = None

    def check_exists(self, revision: str) -> bool:
        return revision in self.commits

    def reset_session(self) -> None:
        self.resets += 1
        self._reset_state()

    def start_session(self) -> None:
        self.started = True
        self.lines.append("git bisect start")

    def mark_commit(self, revision: str, state: CommitState) -> BisectionResult:
        if not self.started:
            raise OracleError("bisection not started")
        if self.culprit is not None:
            raise OracleError("bisection already finished")

        self.marks.append((revision, state))
        self.lines.append(f"git bisect {state.value} {revision}")

        index = self.commits.index(revision)
        if state is CommitState.GOOD:
            self.good_index = index if self.good_index is None else max(self.good_index, index)
        else:
            self.bad_index = index if self.bad_index is None else min(self.bad_index, index)

        if self.good_index is None or self.bad_index is None:
            return BisectionResult(revision, False)

        if self.bad_index - self.good_index <= 1:
            self.culprit = self.commits[self.bad_index]
            self.lines.append(f"# first bad commit: [{self.culprit}] commit {self.culprit}")
            return BisectionResult(self.culprit, True)

        middle = (self.good_index + self.bad_index) // 2
        return BisectionResult(self.commits[middle], False)

    def fetch_log(self) -> str:
        return "\n".join(self.lines) + "\n"

    def _replay(self, log_text: str) -> BisectionResult:
        self.replays += 1
        self._reset_state()

        result = None
        for line in log_text.splitlines():
            words = line.split()
            if words[:3] == ["git", "bisect", "start"]:
                self.start_session()
            elif len(words) == 4 and words[:2] == ["git", "bisect"]:
                result = self.mark_commit(words[3], CommitState(words[2]))

        if result is None:
            raise OracleError("nothing to replay")
        return result


Outcomes = Union[Dict[str, List[BuildOutcome]], Callable[[str], BuildOutcome]]


class ScriptedDispatcher(BuildDispatcher):
    """Dispatcher whose outcomes are decided up front.

    Outcomes come either from a callable taking the commit or from a mapping of
    commit to a list of outcomes consumed one per build.
    """

    def __init__(self, outcomes: Outcomes, revision_parameter: str = "COMMIT"):
        self.outcomes = outcomes
        self.revision_parameter = revision_parameter
        self.dispatched: List[Dict[str, str]] = []
        self.waited = 0

    @property
    def commits(self) -> List[str]:
        return [parameters[self.revision_parameter] for parameters in self.dispatched]

    def dispatch(self, parameters: Dict[str, str]) -> BuildHandle:
        self.dispatched.append(dict(parameters))
        commit = parameters[self.revision_parameter]
        if callable(self.outcomes):
            outcome = self.outcomes(commit)
        else:
            outcome = self.outcomes[commit].pop(0)
        return BuildHandle(parameters=dict(parameters), extra={"outcome": outcome})

    def wait(self, handle: BuildHandle) -> BuildOutcome:
        self.waited += 1
        return handle.extra["outcome"]

    def describe(self) -> str:
        return "scripted"


def make_commits(count: int) -> List[str]:
    return [f"c{i}" for i in range(count)]


def regression_at(commits: List[str], culprit: str) -> Callable[[str], BuildOutcome]:
    """Outcome function for a regression introduced by one commit."""
    culprit_index = commits.index(culprit)

    def outcome(commit: str) -> BuildOutcome:
        if commits.index(commit) >= culprit_index:
            return BuildOutcome.FAILURE
        return BuildOutcome.SUCCESS

    return outcome


@pytest.fixture
def commits():
    """Ten commits, c0 (oldest) to c9 (newest)."""
    return make_commits(10)


@pytest.fixture
def linear_oracle():
    """Factory for in-memory linear history oracles."""
    return LinearHistoryOracle


@pytest.fixture
def scripted_dispatcher():
    """Factory for scripted dispatchers."""
    return ScriptedDispatcher


@pytest.fixture
def regression():
    """Factory for regression outcome functions."""
    return regression_at


@pytest.fixture
def store(tmp_path):
    """Session store in a temporary directory."""
    return SessionStore(tmp_path / "state", tmp_path / "scratch")


GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def _git(repo, *args):
    env = dict(os.environ, **GIT_ENV)
    result = subprocess.run(
        ["git", *args], cwd=repo, env=env, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path):
    """Repository with eight commits; the sixth one breaks the build.

    Skips the test when git is not installed.
    """
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")

    shas = []
    for i in range(8):
        (repo / "state.txt").write_text("broken\n" if i >= 5 else "ok\n")
        (repo / "counter.txt").write_text(f"{i}\n")
        _git(repo, "add", ".")
        _git(repo, "-c", "commit.gpgsign=false", "commit", "-q", "-m", f"commit {i}")
        shas.append(_git(repo, "rev-parse", "HEAD"))
    return repo, shas
