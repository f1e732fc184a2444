"""Build dispatchers that run the downstream test for a candidate commit."""

from cibisect.dispatch.base import (
    BuildDispatcher,
    BuildHandle,
    BuildOutcome,
    DispatchError,
    DownstreamBuildCrashed,
)
from cibisect.dispatch.command import CommandDispatcher
from cibisect.dispatch.factory import create_dispatcher
from cibisect.dispatch.properties import PropertiesFileDispatcher


__all__ = [
    # Base classes and enums
    "BuildDispatcher",
    "BuildHandle",
    "BuildOutcome",
    "DispatchError",
    "DownstreamBuildCrashed",
    # Implementations
    "CommandDispatcher",
    "PropertiesFileDispatcher",
    "create_dispatcher",
]
