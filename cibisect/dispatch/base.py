#!/usr/bin/env python3
"""Abstract base class for build dispatchers.

A dispatcher starts a downstream test build for a set of parameters and
reports its terminal status.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class BuildOutcome(Enum):
    """Terminal status of a downstream build."""

    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


class DispatchError(Exception):
    """Base exception for dispatcher errors."""


class DownstreamBuildCrashed(DispatchError):
    """Raised when a downstream build neither passed nor failed.

    The revision gets no verdict; an operator may want to skip or retry it.
    """

    def __init__(self, commit: str, outcome: BuildOutcome, detail: str = "") -> None:
        self.commit = commit
        self.outcome = outcome
        message = (
            f"Downstream build for revision {commit} ended as {outcome.value}, "
            f"you may want to skip it"
        )
        if detail:
            message += f" ({detail})"
        super().__init__(message)


@dataclass
class BuildHandle:
    """Reference to a dispatched build.

    Attributes:
        parameters: Parameters the build was started with
        backend: Dispatcher-specific handle (process, queue item, ...)
        extra: Free-form details about the build, such as a launch error
    """

    parameters: Dict[str, str]
    backend: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)


class BuildDispatcher(ABC):
    """Abstract base class for build dispatchers."""

    @abstractmethod
    def dispatch(self, parameters: Dict[str, str]) -> BuildHandle:
        """Start a downstream build.

        Args:
            parameters: Build parameters, including the revision to test

        Returns:
            Handle of the started build
        """

    @abstractmethod
    def wait(self, handle: BuildHandle) -> BuildOutcome:
        """Block until the build reaches a terminal status.

        Args:
            handle: Handle returned by dispatch

        Returns:
            Terminal BuildOutcome
        """

    def describe(self) -> Optional[str]:
        """Short human readable description, used by checks and logs."""
        return type(self).__name__
