"""Version-control bisection oracles."""

from cibisect.vcs.base import (
    BisectionResult,
    CommitPair,
    CommitState,
    OracleCommandError,
    OracleError,
    VcsOracle,
)
from cibisect.vcs.git import CommandOutput, GitBisectOracle


__all__ = [
    # Value types
    "BisectionResult",
    "CommitPair",
    "CommitState",
    # Base class and errors
    "VcsOracle",
    "OracleError",
    "OracleCommandError",
    # Git implementation
    "CommandOutput",
    "GitBisectOracle",
]
