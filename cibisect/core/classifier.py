"""Revision classification from repeated, possibly flaky test outcomes."""

from cibisect.vcs.base import CommitState


class RevisionClassifier:
    """Race between a failure budget and a success budget.

    Each recorded success spends one unit of the success budget and each
    failure one unit of the failure budget. The revision is decided as soon
    as either budget reaches zero: good if it was the success budget, bad
    otherwise. With ``retry_count=r`` and ``min_successful_iterations=s``
    a verdict is reached after at most ``r + s - 1`` outcomes.

    A ``retry_count`` of 0 behaves like 1, so that a single failure still
    decides.

    Attributes:
        retry_count: Failing runs needed before declaring bad
        min_successful_iterations: Passing runs needed before declaring good
        successes: Passing runs recorded so far
        failures: Failing runs recorded so far
    """

    def __init__(self, retry_count: int = 1, min_successful_iterations: int = 1) -> None:
        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")
        if min_successful_iterations < 1:
            raise ValueError(
                f"min_successful_iterations must be >= 1, got {min_successful_iterations}"
            )

        self.retry_count = retry_count
        self.min_successful_iterations = min_successful_iterations
        self.remaining_failure_budget = max(retry_count, 1)
        self.remaining_success_budget = min_successful_iterations
        self.successes = 0
        self.failures = 0

    def record_outcome(self, success: bool) -> None:
        """Record one test outcome.

        Raises:
            RuntimeError: If the revision is already decided
        """
        if self.is_decided():
            raise RuntimeError("Revision is already classified")

        if success:
            self.successes += 1
            self.remaining_success_budget -= 1
        else:
            self.failures += 1
            self.remaining_failure_budget -= 1

    def is_decided(self) -> bool:
        return self.remaining_success_budget == 0 or self.remaining_failure_budget == 0

    def verdict(self) -> CommitState:
        """Return the verdict.

        Raises:
            RuntimeError: If called before a verdict is reached
        """
        if not self.is_decided():
            raise RuntimeError("Revision is not classified yet")

        if self.remaining_success_budget == 0:
            return CommitState.GOOD
        return CommitState.BAD

    def __repr__(self) -> str:
        return (
            f"<RevisionClassifier(successes={self.successes}/{self.min_successful_iterations}, "
            f"failures={self.failures}/{max(self.retry_count, 1)})>"
        )
