#!/usr/bin/env python3
"""Bisection Orchestrator.

Drives the resumable bisection state machine: recover or initialize the
oracle frontier, test each candidate through the build dispatcher, record the
verdict and publish the decision log before moving on.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from cibisect.core.classifier import RevisionClassifier
from cibisect.dispatch.base import (
    BuildDispatcher,
    BuildOutcome,
    DispatchError,
    DownstreamBuildCrashed,
)
from cibisect.persistence.state_manager import DatabaseError, StateManager
from cibisect.persistence.store import SessionHandle, SessionStore
from cibisect.vcs.base import BisectionResult, CommitPair, CommitState, VcsOracle


# Constants
DEFAULT_MAX_ITERATIONS = 1000
MAX_SAME_COMMIT = 3
DEFAULT_REVISION_PARAMETER = "COMMIT"

Logger = Union[logging.Logger, logging.LoggerAdapter]


class BisectPhase(Enum):
    """Orchestrator state."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    AWAITING_TEST_RESULT = "awaiting_test_result"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


class BisectError(Exception):
    """Base exception for bisection errors."""


class BisectConfigurationError(BisectError):
    """Raised when a search cannot start with the given input."""


class BisectionStuckError(BisectError):
    """Raised when the oracle stops making progress."""


@dataclass
class BisectRun:
    """Result of driving a search in one process.

    Attributes:
        search_identifier: Search identifier
        result: Last BisectionResult (culprit if done, next candidate otherwise)
        steps: (commit, verdict) pairs recorded by this process
        tests_dispatched: Downstream builds started by this process
        phase: Final orchestrator phase
    """

    search_identifier: str
    result: BisectionResult
    steps: List[Tuple[str, CommitState]] = field(default_factory=list)
    tests_dispatched: int = 0
    phase: BisectPhase = BisectPhase.IDLE

    @property
    def is_done(self) -> bool:
        return self.result.is_done


class SearchLogAdapter(logging.LoggerAdapter):
    """Prefix log lines with the search identifier."""

    def process(self, msg: Any, kwargs: Any) -> Tuple[Any, Any]:
        return f"[{self.extra['search']}] {msg}", kwargs


class BisectOrchestrator:
    """Drive a bisection search through oracle, store and dispatcher.

    Attributes:
        oracle: Bisection oracle
        store: Decision log store
        dispatcher: Downstream build dispatcher
        history: Optional history ledger
        phase: Current state machine phase
        tests_dispatched: Downstream builds started by this instance
    """

    def __init__(
        self,
        oracle: VcsOracle,
        store: SessionStore,
        dispatcher: BuildDispatcher,
        *,
        retry_count: int = 1,
        min_successful_iterations: int = 1,
        revision_parameter: str = DEFAULT_REVISION_PARAMETER,
        parameters: Optional[Dict[str, str]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        history: Optional[StateManager] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            oracle: Bisection oracle
            store: Decision log store
            dispatcher: Downstream build dispatcher
            retry_count: Failing runs before a candidate is declared bad
            min_successful_iterations: Passing runs before a candidate is declared good
            revision_parameter: Build parameter carrying the revision under test
            parameters: Extra parameters for every downstream build
            max_iterations: Safety limit on loop iterations
            history: Optional history ledger
            logger: Logger for progress reporting (module logger if None)
        """
        # Fail early on invalid classification settings
        RevisionClassifier(retry_count, min_successful_iterations)

        self.oracle = oracle
        self.store = store
        self.dispatcher = dispatcher
        self.retry_count = retry_count
        self.min_successful_iterations = min_successful_iterations
        self.revision_parameter = revision_parameter
        self.parameters = dict(parameters or {})
        self.max_iterations = max_iterations
        self.history = history
        self.log: Logger = logger or logging.getLogger(__name__)

        self.phase = BisectPhase.IDLE
        self.tests_dispatched = 0

    def build_parameters(self, commit: str) -> Dict[str, str]:
        """Parameters for a downstream build of a commit.

        Configured parameters come first; the revision parameter overrides them.
        """
        parameters = dict(self.parameters)
        parameters[self.revision_parameter] = commit
        return parameters

    def new_classifier(self, successes: int = 0, failures: int = 0) -> RevisionClassifier:
        """Create a classifier, optionally resuming from earlier runs.

        Args:
            successes: Passing runs already recorded for the candidate
            failures: Failing runs already recorded for the candidate

        Raises:
            BisectConfigurationError: If the earlier runs already decide the candidate
        """
        classifier = RevisionClassifier(self.retry_count, self.min_successful_iterations)
        if (
            successes < 0
            or failures < 0
            or successes >= classifier.remaining_success_budget
            or failures >= classifier.remaining_failure_budget
        ):
            raise BisectConfigurationError(
                f"Invalid run counters for an undecided candidate "
                f"(passed: {successes}, failed: {failures})"
            )

        for _ in range(successes):
            classifier.record_outcome(True)
        for _ in range(failures):
            classifier.record_outcome(False)
        return classifier

    def begin_history(
        self, search_identifier: str, commits: Optional[CommitPair], mode: str
    ) -> None:
        """Register the search in the history ledger."""
        self._ledger(
            "get_or_create_search",
            search_identifier,
            commits.good_commit if commits else None,
            commits.bad_commit if commits else None,
            mode,
        )

    def _ledger(self, action: str, *args: Any, **kwargs: Any) -> None:
        if self.history is None:
            return
        try:
            getattr(self.history, action)(*args, **kwargs)
        except DatabaseError as exc:
            self.log.warning(f"History ledger update failed (non-fatal): {exc}")

    def initialize(
        self, handle: SessionHandle, commits: Optional[CommitPair] = None
    ) -> BisectionResult:
        """Recover or create the oracle frontier.

        Prior progress is replayed from the decision log. Without it, the
        commit pair is validated and the oracle started from scratch; the
        initial decisions are published before returning.

        Args:
            handle: Open session
            commits: Endpoints for a fresh start (ignored when resuming)

        Returns:
            BisectionResult with the culprit or the first candidate

        Raises:
            BisectConfigurationError: If a fresh start lacks valid endpoints
            OracleCommandError: If an oracle command fails
        """
        self.phase = BisectPhase.INITIALIZING

        if self.store.has_prior_progress(handle):
            self.log.info("Found previous decision log, replaying it")
            result = self.oracle.replay_log(self.store.read(handle))
        else:
            if commits is None:
                raise BisectConfigurationError(
                    f"No previous progress for '{handle.search_identifier}' "
                    f"and no good/bad commits given"
                )

            self.log.info(
                f"Starting bisection with good commit: {commits.good_commit}, "
                f"bad commit: {commits.bad_commit}"
            )
            missing = self.oracle.validate_pair(commits)
            if missing is not None:
                raise BisectConfigurationError(
                    f"Can't start bisecting, commit {missing} does not exist in the repository"
                )

            self.oracle.reset_session()
            self.oracle.start_session()
            self.oracle.mark_commit(commits.good_commit, CommitState.GOOD)
            result = self.oracle.mark_commit(commits.bad_commit, CommitState.BAD)
            self._publish(handle)

        if result.is_done:
            self.phase = BisectPhase.DONE
            self.log.info(f"Found the first bad commit at {result.commit}")
            self._ledger("complete_search", handle.search_identifier, result.commit)
        else:
            self.log.info(f"Next commit to be tested: {result.commit}")
        return result

    def classify(
        self, commit: str, classifier: Optional[RevisionClassifier] = None
    ) -> RevisionClassifier:
        """Test a commit until the classifier reaches a verdict.

        Only one downstream build is outstanding at any time.

        Args:
            commit: Candidate commit
            classifier: Classifier to continue (a fresh one if None)

        Returns:
            Decided RevisionClassifier

        Raises:
            DownstreamBuildCrashed: If a build is aborted, ends in an unknown
                state or the dispatcher fails
        """
        self.phase = BisectPhase.AWAITING_TEST_RESULT
        if classifier is None:
            classifier = self.new_classifier()
        parameters = self.build_parameters(commit)

        while not classifier.is_decided():
            run_num = classifier.successes + classifier.failures + 1
            self.log.info(f"Running downstream build with commit {commit} (run {run_num})")
            outcome = self._run_build(commit, parameters)

            if outcome is BuildOutcome.SUCCESS:
                classifier.record_outcome(True)
            elif outcome is BuildOutcome.FAILURE:
                classifier.record_outcome(False)
            else:
                self.log.error(f"Downstream build for {commit} ended as {outcome.value}")
                raise DownstreamBuildCrashed(commit, outcome)

        self.log.info(
            f"Commit {commit} classified as {classifier.verdict().value} "
            f"({classifier.successes} passed, {classifier.failures} failed)"
        )
        return classifier

    def _run_build(self, commit: str, parameters: Dict[str, str]) -> BuildOutcome:
        self.tests_dispatched += 1
        try:
            handle = self.dispatcher.dispatch(parameters)
            return self.dispatcher.wait(handle)
        except DispatchError:
            raise
        except Exception as exc:
            self.log.error(f"Downstream project threw an exception for revision {commit}: {exc}")
            raise DownstreamBuildCrashed(commit, BuildOutcome.UNKNOWN, str(exc)) from exc

    def record(
        self,
        handle: SessionHandle,
        commit: str,
        state: CommitState,
        successes: int = 0,
        failures: int = 0,
    ) -> BisectionResult:
        """Mark a verdict and publish the decision log.

        The log is published before the result is returned, so a crash after
        this point never loses the decision.

        Args:
            handle: Open session
            commit: Tested commit
            state: Verdict
            successes: Passing runs behind the verdict
            failures: Failing runs behind the verdict

        Returns:
            BisectionResult after marking
        """
        self.phase = BisectPhase.RECORDING
        result = self.oracle.mark_commit(commit, state)
        self._publish(handle)
        self._ledger(
            "add_step", handle.search_identifier, commit, state.value, successes, failures
        )

        if result.is_done:
            self.phase = BisectPhase.DONE
            self.log.info(f"Found the first bad commit at {result.commit}")
            self._ledger("complete_search", handle.search_identifier, result.commit)
        else:
            self.log.info(f"Next commit to be tested: {result.commit}")
        return result

    def record_crash(
        self,
        handle: SessionHandle,
        exc: DownstreamBuildCrashed,
        successes: int = 0,
        failures: int = 0,
    ) -> None:
        """Note a crashed build in the history ledger without marking a verdict."""
        self._ledger(
            "add_step",
            handle.search_identifier,
            exc.commit,
            None,
            successes,
            failures,
            error_message=str(exc),
        )

    def test_commit(self, commit: str) -> CommitState:
        """Test a commit and return its verdict."""
        return self.classify(commit).verdict()

    def step(
        self, handle: SessionHandle, result: BisectionResult
    ) -> Tuple[CommitState, BisectionResult]:
        """Test the current candidate and record its verdict.

        Returns:
            Tuple of (verdict, BisectionResult after marking)
        """
        classifier = self.new_classifier()
        try:
            self.classify(result.commit, classifier)
        except DownstreamBuildCrashed as exc:
            self.record_crash(handle, exc, classifier.successes, classifier.failures)
            raise

        verdict = classifier.verdict()
        result = self.record(
            handle, result.commit, verdict, classifier.successes, classifier.failures
        )
        return verdict, result

    def _publish(self, handle: SessionHandle) -> None:
        self.log.info("Publishing decision log")
        self.store.save(handle, self.oracle.fetch_log())

    def fail(self, search_identifier: str, exc: BaseException) -> None:
        """Record a fatal error for the search."""
        self.phase = BisectPhase.FAILED
        self.log.error(f"Git bisection failed: {exc}")
        self._ledger("fail_search", search_identifier, str(exc))

    def run(
        self,
        search_identifier: str,
        commits: Optional[CommitPair] = None,
        continue_automatically: bool = True,
    ) -> BisectRun:
        """Run a search in loop mode.

        Args:
            search_identifier: Stable identifier of the search
            commits: Endpoints, required only when no prior progress exists
            continue_automatically: Loop until done; stop after one step if False

        Returns:
            BisectRun describing what this process did

        Raises:
            BisectError: On configuration errors or when the search is stuck
            OracleCommandError: If an oracle command fails
            DownstreamBuildCrashed: If a downstream build crashes
        """
        self.log.info("=== Starting Bisection ===")
        self.log.info(f"Downstream builds run through {self.dispatcher.describe()}")
        dispatched_before = self.tests_dispatched
        steps: List[Tuple[str, CommitState]] = []

        handle = self.store.open(search_identifier)
        try:
            self.begin_history(search_identifier, commits, "loop")
            result = self.initialize(handle, commits)

            iteration_count = 0
            previous_commit = None
            same_commit_count = 0

            while not result.is_done:
                iteration_count += 1
                if iteration_count > self.max_iterations:
                    raise BisectionStuckError(
                        f"Exceeded {self.max_iterations} iterations, bisection may be stuck"
                    )

                if result.commit == previous_commit:
                    same_commit_count += 1
                    self.log.warning(
                        f"Still on same commit {result.commit} "
                        f"(attempt {same_commit_count}/{MAX_SAME_COMMIT})"
                    )
                    if same_commit_count >= MAX_SAME_COMMIT:
                        raise BisectionStuckError(
                            f"Oracle returned commit {result.commit} for "
                            f"{same_commit_count} consecutive iterations"
                        )
                else:
                    same_commit_count = 0
                    previous_commit = result.commit

                commit = result.commit
                verdict, result = self.step(handle, result)
                steps.append((commit, verdict))

                if not continue_automatically and not result.is_done:
                    self.log.info("Not continuing automatically, stopping after one step")
                    break

            if result.is_done:
                self.log.info(f"Bisect completed, wanted commit is {result.commit}")

        except Exception as exc:
            self.fail(search_identifier, exc)
            raise
        finally:
            self.store.cleanup(handle)

        return BisectRun(
            search_identifier=search_identifier,
            result=result,
            steps=steps,
            tests_dispatched=self.tests_dispatched - dispatched_before,
            phase=self.phase,
        )
