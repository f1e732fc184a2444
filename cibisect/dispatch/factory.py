#!/usr/bin/env python3
"""Factory for creating build dispatcher instances.

Provides centralized dispatcher instantiation based on configuration.
"""

from cibisect.config.config import DispatcherConfig
from cibisect.dispatch.base import BuildDispatcher


def create_dispatcher(config: DispatcherConfig) -> BuildDispatcher:
    """Create build dispatcher instance based on configuration.

    Args:
        config: Dispatcher configuration

    Returns:
        BuildDispatcher instance

    Raises:
        ValueError: If the dispatcher type is invalid or required settings are missing
    """
    if config.type == "command":
        if not config.command:
            raise ValueError("Command dispatcher configured but 'command' is missing")

        from cibisect.dispatch.command import CommandDispatcher

        return CommandDispatcher(config.command, workdir=config.workdir, timeout=config.timeout)

    if config.type == "properties":
        from cibisect.dispatch.properties import PropertiesFileDispatcher

        return PropertiesFileDispatcher(config.properties_file)

    raise ValueError(
        f"Unknown dispatcher type '{config.type}'. Valid types: 'command', 'properties'"
    )
