#!/usr/bin/env python3
"""Continuation Bridge - chained bisection across independent builds.

In chained mode every downstream build runs one step of the search: it folds
its own outcome into the shared decision log, then triggers the next build
with parameters that let it resume the same search.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from cibisect.core.classifier import RevisionClassifier
from cibisect.core.orchestrator import BisectConfigurationError, BisectOrchestrator
from cibisect.dispatch.base import BuildHandle, BuildOutcome, DownstreamBuildCrashed
from cibisect.vcs.base import BisectionResult, CommitPair, CommitState


# Parameter names shared with the host CI
BISECT_GOOD_COMMIT = "BISECT_GOOD_COMMIT"
BISECT_BAD_COMMIT = "BISECT_BAD_COMMIT"
BISECT_INTERNAL_SEARCH_IDENTIFIER = "BISECT_INTERNAL_SEARCH_IDENTIFIER"
BISECT_SUCCESSES = "BISECT_SUCCESSES"
BISECT_FAILURES = "BISECT_FAILURES"
MARKER_VALUE = "TRUE"


@dataclass(frozen=True)
class ContinuationParameters:
    """Parameters handed to the next build of a chained search.

    Attributes:
        revision: Candidate the next build must test
        good_commit: Current good boundary
        bad_commit: Current bad boundary
        revision_parameter: Parameter name carrying the candidate
        successes: Passing runs of the candidate so far
        failures: Failing runs of the candidate so far
    """

    revision: str
    good_commit: str
    bad_commit: str
    revision_parameter: str = "COMMIT"
    successes: int = 0
    failures: int = 0

    def to_mapping(self) -> Dict[str, str]:
        return {
            self.revision_parameter: self.revision,
            BISECT_GOOD_COMMIT: self.good_commit,
            BISECT_BAD_COMMIT: self.bad_commit,
            BISECT_INTERNAL_SEARCH_IDENTIFIER: MARKER_VALUE,
            BISECT_SUCCESSES: str(self.successes),
            BISECT_FAILURES: str(self.failures),
        }

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, str], revision_parameter: str = "COMMIT"
    ) -> "ContinuationParameters":
        """Rebuild continuation parameters from build parameters.

        Missing run counters count as zero.

        Raises:
            BisectConfigurationError: If a required parameter is missing or a
                run counter is not a number
        """
        missing = [
            key
            for key in (revision_parameter, BISECT_GOOD_COMMIT, BISECT_BAD_COMMIT)
            if not mapping.get(key)
        ]
        if missing:
            raise BisectConfigurationError(
                f"Continuation parameters incomplete, missing: {', '.join(missing)}"
            )
        try:
            successes = int(mapping.get(BISECT_SUCCESSES) or 0)
            failures = int(mapping.get(BISECT_FAILURES) or 0)
        except ValueError as exc:
            raise BisectConfigurationError(f"Invalid run counter: {exc}") from exc

        return cls(
            revision=mapping[revision_parameter],
            good_commit=mapping[BISECT_GOOD_COMMIT],
            bad_commit=mapping[BISECT_BAD_COMMIT],
            revision_parameter=revision_parameter,
            successes=successes,
            failures=failures,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_mapping(), indent=2, sort_keys=True)

    @classmethod
    def from_json(
        cls, text: str, revision_parameter: str = "COMMIT"
    ) -> "ContinuationParameters":
        return cls.from_mapping(json.loads(text), revision_parameter)

    @property
    def pair(self) -> CommitPair:
        return CommitPair(self.good_commit, self.bad_commit)


def is_continuation(parameters: Mapping[str, str]) -> bool:
    """Check whether build parameters belong to a running chained search."""
    return BISECT_INTERNAL_SEARCH_IDENTIFIER in parameters


def next_pair(pair: CommitPair, commit: str, verdict: CommitState) -> CommitPair:
    """Narrow the frontier with a new verdict."""
    if verdict is CommitState.BAD:
        return CommitPair(pair.good_commit, commit)
    return CommitPair(commit, pair.bad_commit)


def build_passed(commit: str, outcome: BuildOutcome) -> bool:
    """Tell whether a finished build passed.

    Raises:
        DownstreamBuildCrashed: If the build neither passed nor failed
    """
    if outcome is BuildOutcome.SUCCESS:
        return True
    if outcome is BuildOutcome.FAILURE:
        return False
    raise DownstreamBuildCrashed(commit, outcome)


@dataclass
class BuildContext:
    """The build that just finished.

    Attributes:
        parameters: Parameters the build ran with
        commit: Revision the build checked out
        outcome: Terminal status of the build
        previous_good_commit: Last revision that built successfully
    """

    parameters: Dict[str, str] = field(default_factory=dict)
    commit: Optional[str] = None
    outcome: BuildOutcome = BuildOutcome.UNKNOWN
    previous_good_commit: Optional[str] = None


@dataclass
class ChainStep:
    """What one chained step did.

    Attributes:
        action: "idle", "started", "retried", "continued" or "done"
        result: Oracle result after this step
        verdict: Verdict recorded for the tested revision (None until decided)
        next_parameters: Parameters of the triggered build
        build: Handle of the triggered build
    """

    action: str
    result: Optional[BisectionResult] = None
    verdict: Optional[CommitState] = None
    next_parameters: Optional[ContinuationParameters] = None
    build: Optional[BuildHandle] = None

    @property
    def is_done(self) -> bool:
        return self.result is not None and self.result.is_done


class ContinuationBridge:
    """Run one step of a chained search per finished build."""

    def __init__(self, orchestrator: BisectOrchestrator) -> None:
        self.orchestrator = orchestrator

    @property
    def log(self):
        return self.orchestrator.log

    def handle_build(self, search_identifier: str, context: BuildContext) -> ChainStep:
        """Fold a finished build into the search and trigger the next one.

        Args:
            search_identifier: Stable identifier of the search
            context: The build that just finished

        Returns:
            ChainStep describing what was done

        Raises:
            BisectConfigurationError: If the search cannot be started or resumed
            DownstreamBuildCrashed: If the build neither passed nor failed
        """
        if is_continuation(context.parameters):
            return self._continue(search_identifier, context)

        if context.outcome is BuildOutcome.FAILURE:
            return self._start(search_identifier, context)

        self.log.info(f"Build ended as {context.outcome.value}, nothing to bisect")
        return ChainStep(action="idle")

    def _start(self, search_identifier: str, context: BuildContext) -> ChainStep:
        if not context.previous_good_commit:
            raise BisectConfigurationError(
                "Build failed but there is no previous successful commit to bisect from"
            )
        if not context.commit:
            raise BisectConfigurationError("Build failed but its commit is unknown")

        pair = CommitPair(context.previous_good_commit, context.commit)
        self.log.info(
            f"Build failed, starting bisection between {pair.good_commit} and {pair.bad_commit}"
        )

        orchestrator = self.orchestrator
        handle = orchestrator.store.open(search_identifier)
        try:
            orchestrator.begin_history(search_identifier, pair, "chained")
            result = orchestrator.initialize(handle, pair)
            if result.is_done:
                return ChainStep(action="done", result=result)

            next_parameters, build = self._trigger(result.commit, pair)
            return ChainStep(
                action="started",
                result=result,
                next_parameters=next_parameters,
                build=build,
            )
        except Exception as exc:
            orchestrator.fail(search_identifier, exc)
            raise
        finally:
            orchestrator.store.cleanup(handle)

    def _continue(self, search_identifier: str, context: BuildContext) -> ChainStep:
        orchestrator = self.orchestrator
        carried = ContinuationParameters.from_mapping(
            context.parameters, orchestrator.revision_parameter
        )
        pair = carried.pair
        tested = carried.revision
        self.log.info(
            f"Continuing bisection of {tested} (good: {pair.good_commit}, bad: {pair.bad_commit})"
        )

        handle = orchestrator.store.open(search_identifier)
        try:
            orchestrator.begin_history(search_identifier, pair, "chained")
            result = orchestrator.initialize(handle, pair)
            if result.is_done:
                return ChainStep(action="done", result=result)

            if result.commit != tested:
                self.log.warning(
                    f"Tested revision {tested} differs from current candidate {result.commit}"
                )

            classifier = orchestrator.new_classifier(carried.successes, carried.failures)
            try:
                classifier.record_outcome(build_passed(tested, context.outcome))
            except DownstreamBuildCrashed as exc:
                orchestrator.record_crash(handle, exc, carried.successes, carried.failures)
                raise

            if not classifier.is_decided():
                self.log.info(
                    f"Commit {tested} not classified yet "
                    f"({classifier.successes} passed, {classifier.failures} failed), rebuilding it"
                )
                next_parameters, build = self._trigger(tested, pair, classifier)
                return ChainStep(
                    action="retried",
                    result=result,
                    next_parameters=next_parameters,
                    build=build,
                )

            verdict = classifier.verdict()
            self.log.info(
                f"Marking commit {tested} as {verdict.value} "
                f"({classifier.successes} passed, {classifier.failures} failed)"
            )
            result = orchestrator.record(
                handle, tested, verdict, classifier.successes, classifier.failures
            )
            pair = next_pair(pair, tested, verdict)
            if result.is_done:
                return ChainStep(action="done", result=result, verdict=verdict)

            next_parameters, build = self._trigger(result.commit, pair)
            return ChainStep(
                action="continued",
                result=result,
                verdict=verdict,
                next_parameters=next_parameters,
                build=build,
            )
        except Exception as exc:
            orchestrator.fail(search_identifier, exc)
            raise
        finally:
            orchestrator.store.cleanup(handle)

    def _trigger(
        self,
        commit: str,
        pair: CommitPair,
        classifier: Optional[RevisionClassifier] = None,
    ) -> Tuple[ContinuationParameters, BuildHandle]:
        """Dispatch the next build without waiting for it.

        A classifier is passed when the same commit is rebuilt; its counters
        travel with the build.
        """
        orchestrator = self.orchestrator
        next_parameters = ContinuationParameters(
            revision=commit,
            good_commit=pair.good_commit,
            bad_commit=pair.bad_commit,
            revision_parameter=orchestrator.revision_parameter,
            successes=classifier.successes if classifier else 0,
            failures=classifier.failures if classifier else 0,
        )
        parameters = dict(orchestrator.parameters)
        parameters.update(next_parameters.to_mapping())

        self.log.info(f"Triggering next build with commit {commit}")
        orchestrator.tests_dispatched += 1
        build = orchestrator.dispatcher.dispatch(parameters)
        return next_parameters, build
