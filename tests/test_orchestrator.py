"""Tests for BisectOrchestrator in loop mode."""

import logging
import math
from typing import List

import pytest

from cibisect.core.orchestrator import (
    BisectConfigurationError,
    BisectionStuckError,
    BisectOrchestrator,
    BisectPhase,
    SearchLogAdapter,
)
from cibisect.dispatch.base import BuildOutcome, DownstreamBuildCrashed
from cibisect.persistence.state_manager import StateManager
from cibisect.vcs.base import BisectionResult, CommitPair, CommitState, VcsOracle


class ScriptedOracle(VcsOracle):
    """Oracle answering each mark with the next scripted result."""

    def __init__(self, known: List[str], results: List[BisectionResult]):
        self.known = set(known)
        self.results = list(results)
        self.marks = []
        self.resets = 0

    def check_exists(self, revision):
        return revision in self.known

    def reset_session(self):
        self.resets += 1

    def start_session(self):
        pass

    def mark_commit(self, revision, state):
        self.marks.append((revision, state))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

    def fetch_log(self):
        return "".join(f"git bisect {state.value} {rev}\n" for rev, state in self.marks)

    def _replay(self, log_text):
        raise AssertionError("replay not expected")


def make_orchestrator(oracle, store, dispatcher, **kwargs):
    return BisectOrchestrator(oracle, store, dispatcher, **kwargs)


def test_scenario_marks_verdicts_and_reports_culprit(store, scripted_dispatcher):
    """Test the a1..b9 scenario with frontier c5, c3, c4 and culprit c3."""
    oracle = ScriptedOracle(
        ["a1", "b9", "c3", "c4", "c5"],
        [
            BisectionResult("a1", False),
            BisectionResult("c5", False),
            BisectionResult("c3", False),
            BisectionResult("c4", False),
            BisectionResult("c3", True),
        ],
    )
    dispatcher = scripted_dispatcher(
        {
            "c5": [BuildOutcome.SUCCESS],
            "c3": [BuildOutcome.FAILURE],
            "c4": [BuildOutcome.SUCCESS],
        }
    )

    run = make_orchestrator(oracle, store, dispatcher).run("scenario", CommitPair("a1", "b9"))

    assert oracle.marks == [
        ("a1", CommitState.GOOD),
        ("b9", CommitState.BAD),
        ("c5", CommitState.GOOD),
        ("c3", CommitState.BAD),
        ("c4", CommitState.GOOD),
    ]
    assert run.result == BisectionResult("c3", True)
    assert run.steps == [
        ("c5", CommitState.GOOD),
        ("c3", CommitState.BAD),
        ("c4", CommitState.GOOD),
    ]
    assert run.tests_dispatched == 3
    assert run.phase is BisectPhase.DONE


def test_missing_good_commit_aborts_before_any_mark(store, linear_oracle, scripted_dispatcher, commits):
    """Test that an unknown good commit stops the search before marking or testing."""
    oracle = linear_oracle(commits)
    dispatcher = scripted_dispatcher(lambda commit: BuildOutcome.SUCCESS)
    orchestrator = make_orchestrator(oracle, store, dispatcher)

    with pytest.raises(BisectConfigurationError, match="does-not-exist"):
        orchestrator.run("missing", CommitPair("does-not-exist", "c9"))

    assert oracle.marks == []
    assert oracle.resets == 0
    assert dispatcher.dispatched == []
    assert orchestrator.phase is BisectPhase.FAILED


def test_fresh_start_without_commits_is_rejected(store, linear_oracle, scripted_dispatcher, commits):
    """Test that a search with no prior progress needs both endpoints."""
    orchestrator = make_orchestrator(
        linear_oracle(commits), store, scripted_dispatcher(lambda commit: BuildOutcome.SUCCESS)
    )

    with pytest.raises(BisectConfigurationError):
        orchestrator.run("nothing-yet")


def test_loop_finds_culprit(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that loop mode converges on the commit introducing the regression."""
    oracle = linear_oracle(commits)
    dispatcher = scripted_dispatcher(regression(commits, "c6"))

    run = make_orchestrator(oracle, store, dispatcher).run("loop", CommitPair("c0", "c9"))

    assert run.is_done
    assert run.result.commit == "c6"
    assert dispatcher.commits == ["c4", "c6", "c5"]
    assert run.steps == [
        ("c4", CommitState.GOOD),
        ("c6", CommitState.BAD),
        ("c5", CommitState.GOOD),
    ]


def test_decision_log_published_after_each_step(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that the canonical log holds every verdict and the completion line."""
    oracle = linear_oracle(commits)
    dispatcher = scripted_dispatcher(regression(commits, "c6"))

    make_orchestrator(oracle, store, dispatcher).run("published", CommitPair("c0", "c9"))

    log_text = store.canonical_log("published")
    assert "git bisect good c0" in log_text
    assert "git bisect bad c9" in log_text
    assert "git bisect good c4" in log_text
    assert "git bisect bad c6" in log_text
    assert "# first bad commit: [c6]" in log_text


def test_scratch_copy_removed_after_run(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that the process-local copy is cleaned up."""
    dispatcher = scripted_dispatcher(regression(commits, "c3"))
    make_orchestrator(linear_oracle(commits), store, dispatcher).run(
        "cleanup", CommitPair("c0", "c9")
    )

    assert list(store.scratch_dir.iterdir()) == []


@pytest.mark.parametrize("culprit", [f"c{i}" for i in range(1, 10)])
def test_termination_bound(store, linear_oracle, scripted_dispatcher, regression, commits, culprit):
    """Test that the number of steps stays within the bisection bound."""
    dispatcher = scripted_dispatcher(regression(commits, culprit))

    run = make_orchestrator(linear_oracle(commits), store, dispatcher).run(
        f"bound-{culprit}", CommitPair("c0", "c9")
    )

    assert run.result == BisectionResult(culprit, True)
    assert len(run.steps) <= math.ceil(math.log2(9)) + 1


def test_completed_search_dispatches_nothing(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that reusing a finished identifier returns the original culprit."""
    make_orchestrator(
        linear_oracle(commits), store, scripted_dispatcher(regression(commits, "c6"))
    ).run("finished", CommitPair("c0", "c9"))

    oracle = linear_oracle(commits)
    dispatcher = scripted_dispatcher(regression(commits, "c2"))
    run = make_orchestrator(oracle, store, dispatcher).run("finished", CommitPair("c0", "c9"))

    assert run.result == BisectionResult("c6", True)
    assert run.tests_dispatched == 0
    assert dispatcher.dispatched == []
    assert oracle.replays == 0
    assert oracle.marks == []


def test_stop_after_one_step_then_resume(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that a stopped search resumes from the published log."""
    outcome = regression(commits, "c6")

    first = make_orchestrator(linear_oracle(commits), store, scripted_dispatcher(outcome)).run(
        "resumed", CommitPair("c0", "c9"), continue_automatically=False
    )

    assert not first.is_done
    assert first.steps == [("c4", CommitState.GOOD)]
    assert first.result == BisectionResult("c6", False)

    oracle = linear_oracle(commits)
    dispatcher = scripted_dispatcher(outcome)
    second = make_orchestrator(oracle, store, dispatcher).run("resumed")

    assert oracle.replays == 1
    assert dispatcher.commits == ["c6", "c5"]
    assert second.result == BisectionResult("c6", True)


def test_replay_is_idempotent(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that replaying the same log twice gives the same frontier."""
    run = make_orchestrator(
        linear_oracle(commits), store, scripted_dispatcher(regression(commits, "c6"))
    ).run("replay", CommitPair("c0", "c9"), continue_automatically=False)
    log_text = store.canonical_log("replay")

    first = linear_oracle(commits).replay_log(log_text)
    second = linear_oracle(commits).replay_log(log_text)

    assert first == second
    assert first == run.result


@pytest.mark.parametrize("outcome", [BuildOutcome.ABORTED, BuildOutcome.UNKNOWN])
def test_crashed_build_is_not_classified(store, linear_oracle, scripted_dispatcher, commits, outcome):
    """Test that an aborted or unknown build stops the search without a verdict."""
    oracle = linear_oracle(commits)
    dispatcher = scripted_dispatcher(lambda commit: outcome)
    orchestrator = make_orchestrator(oracle, store, dispatcher)

    with pytest.raises(DownstreamBuildCrashed) as excinfo:
        orchestrator.run("crash", CommitPair("c0", "c9"))

    assert excinfo.value.commit == "c4"
    assert excinfo.value.outcome is outcome
    assert ("c4", CommitState.GOOD) not in oracle.marks
    assert ("c4", CommitState.BAD) not in oracle.marks
    assert orchestrator.phase is BisectPhase.FAILED
    assert "c4" not in store.canonical_log("crash")


def test_dispatcher_exception_reported_as_crash(store, linear_oracle, scripted_dispatcher, commits):
    """Test that a dispatcher failure surfaces as a crashed build."""

    def explode(commit):
        raise RuntimeError("executor went away")

    orchestrator = make_orchestrator(linear_oracle(commits), store, scripted_dispatcher(explode))

    with pytest.raises(DownstreamBuildCrashed, match="executor went away"):
        orchestrator.run("explode", CommitPair("c0", "c9"))


def test_retries_until_verdict(store, linear_oracle, scripted_dispatcher, commits):
    """Test that a candidate is rebuilt until the classifier decides."""
    dispatcher = scripted_dispatcher(
        {
            "c4": [BuildOutcome.FAILURE, BuildOutcome.SUCCESS],
            "c6": [BuildOutcome.FAILURE, BuildOutcome.FAILURE],
            "c5": [BuildOutcome.SUCCESS],
        }
    )
    orchestrator = make_orchestrator(linear_oracle(commits), store, dispatcher, retry_count=2)

    run = orchestrator.run("flaky", CommitPair("c0", "c9"))

    assert run.result == BisectionResult("c6", True)
    assert run.tests_dispatched == 5
    assert dispatcher.commits == ["c4", "c4", "c6", "c6", "c5"]


def test_revision_parameter_overrides_configured_parameters(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that the revision under test wins over configured parameters."""
    dispatcher = scripted_dispatcher(regression(commits, "c6"), revision_parameter="REV")
    orchestrator = make_orchestrator(
        linear_oracle(commits),
        store,
        dispatcher,
        revision_parameter="REV",
        parameters={"REV": "stale", "BUILD_TYPE": "release"},
    )

    orchestrator.run("params", CommitPair("c0", "c9"))

    assert dispatcher.dispatched[0] == {"REV": "c4", "BUILD_TYPE": "release"}


def test_history_ledger_records_search(tmp_path, store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that the history ledger follows the search."""
    history = StateManager(str(tmp_path / "history.db"))
    try:
        make_orchestrator(
            linear_oracle(commits),
            store,
            scripted_dispatcher(regression(commits, "c6")),
            history=history,
        ).run("ledger", CommitPair("c0", "c9"))

        search = history.get_search("ledger")
        steps = history.get_steps("ledger")
    finally:
        history.close()

    assert search.status == "completed"
    assert search.result_commit == "c6"
    assert search.mode == "loop"
    assert [(s.commit_sha, s.verdict) for s in steps] == [
        ("c4", "good"),
        ("c6", "bad"),
        ("c5", "good"),
    ]


def test_history_ledger_records_failure(tmp_path, store, linear_oracle, scripted_dispatcher, commits):
    """Test that a crashed search is marked failed in the ledger."""
    history = StateManager(str(tmp_path / "history.db"))
    try:
        orchestrator = make_orchestrator(
            linear_oracle(commits),
            store,
            scripted_dispatcher(lambda commit: BuildOutcome.ABORTED),
            history=history,
        )
        with pytest.raises(DownstreamBuildCrashed):
            orchestrator.run("ledger-crash", CommitPair("c0", "c9"))

        search = history.get_search("ledger-crash")
        steps = history.get_steps("ledger-crash")
    finally:
        history.close()

    assert search.status == "failed"
    assert "c4" in search.error_message
    assert [(s.commit_sha, s.verdict) for s in steps] == [("c4", None)]
    assert "aborted" in steps[0].error_message


def test_stuck_oracle_is_detected(store, scripted_dispatcher):
    """Test that an oracle repeating the same candidate stops the search."""
    oracle = ScriptedOracle(["a1", "b9", "c5"], [BisectionResult("c5", False)])
    dispatcher = scripted_dispatcher(lambda commit: BuildOutcome.SUCCESS)

    with pytest.raises(BisectionStuckError):
        make_orchestrator(oracle, store, dispatcher).run("stuck", CommitPair("a1", "b9"))

    assert dispatcher.commits == ["c5", "c5", "c5"]


def test_max_iterations_limit(store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that the iteration limit stops a long search."""
    orchestrator = make_orchestrator(
        linear_oracle(commits),
        store,
        scripted_dispatcher(regression(commits, "c6")),
        max_iterations=2,
    )

    with pytest.raises(BisectionStuckError):
        orchestrator.run("limited", CommitPair("c0", "c9"))


def test_invalid_classification_settings(store, linear_oracle, scripted_dispatcher, commits):
    """Test that invalid retry settings are rejected up front."""
    dispatcher = scripted_dispatcher(lambda commit: BuildOutcome.SUCCESS)

    with pytest.raises(ValueError):
        make_orchestrator(linear_oracle(commits), store, dispatcher, min_successful_iterations=0)
    with pytest.raises(ValueError):
        make_orchestrator(linear_oracle(commits), store, dispatcher, retry_count=-1)


def test_search_log_adapter_prefixes_identifier(caplog, store, linear_oracle, scripted_dispatcher, regression, commits):
    """Test that progress lines carry the search identifier."""
    adapter = SearchLogAdapter(logging.getLogger("cibisect.test"), {"search": "nightly"})
    orchestrator = make_orchestrator(
        linear_oracle(commits),
        store,
        scripted_dispatcher(regression(commits, "c6")),
        logger=adapter,
    )

    with caplog.at_level(logging.INFO, logger="cibisect.test"):
        orchestrator.run("nightly", CommitPair("c0", "c9"))

    messages = [r.getMessage() for r in caplog.records if r.name == "cibisect.test"]
    assert messages
    assert all(message.startswith("[nightly] ") for message in messages)
    assert any("first bad commit at c6" in message for message in messages)


def test_crash_after_retry_keeps_run_counts(tmp_path, store, linear_oracle, scripted_dispatcher, commits):
    """Test that runs finished before a crash are kept in the history."""
    history = StateManager(str(tmp_path / "history.db"))
    try:
        orchestrator = make_orchestrator(
            linear_oracle(commits),
            store,
            scripted_dispatcher({"c4": [BuildOutcome.FAILURE, BuildOutcome.UNKNOWN]}),
            retry_count=2,
            history=history,
        )
        with pytest.raises(DownstreamBuildCrashed):
            orchestrator.run("partial", CommitPair("c0", "c9"))

        steps = history.get_steps("partial")
    finally:
        history.close()

    assert [(s.commit_sha, s.verdict, s.successes, s.failures) for s in steps] == [
        ("c4", None, 0, 1)
    ]


def test_new_classifier_resumes_counters(store, linear_oracle, scripted_dispatcher, commits):
    """Test that a classifier can pick up earlier runs of a candidate."""
    orchestrator = make_orchestrator(
        linear_oracle(commits), store, scripted_dispatcher({}), retry_count=3
    )

    classifier = orchestrator.new_classifier(successes=0, failures=2)
    assert (classifier.successes, classifier.failures) == (0, 2)
    assert not classifier.is_decided()

    with pytest.raises(BisectConfigurationError):
        orchestrator.new_classifier(failures=3)
    with pytest.raises(BisectConfigurationError):
        orchestrator.new_classifier(successes=-1)
