#!/usr/bin/env python3
"""Configuration classes for CI bisection.

This module contains the main configuration dataclasses used throughout cibisect.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class DispatcherConfig:
    """Configuration of the downstream build dispatcher.

    Attributes:
        type: Dispatcher type ("command" or "properties")
        command: Shell command running the downstream test (command type)
        workdir: Working directory of the command (optional)
        timeout: Seconds before a running command is killed (None waits forever)
        properties_file: Output file for the next build's parameters (properties type)
    """

    type: str = "command"
    command: Optional[str] = None
    workdir: Optional[str] = None
    timeout: Optional[int] = None
    properties_file: str = "bisect.properties"


@dataclass
class BisectConfig:
    """Bisection configuration.

    Attributes:
        search_identifier: Stable identifier shared by every build of one search
        good_commit: Known good commit (optional when resuming)
        bad_commit: Known bad commit (optional when resuming)
        repo_path: Path to the git work tree
        git_command: Git executable
        git_timeout: Timeout in seconds for each git command
        revision_parameter: Build parameter carrying the revision to test
        retry_count: Failing runs needed before a revision is declared bad
        min_successful_iterations: Passing runs needed before a revision is declared good
        continue_automatically: Loop until done instead of stopping after one step
        max_iterations: Safety limit on loop iterations
        state_dir: Directory for canonical decision logs
        scratch_dir: Directory for process-local scratch copies (system temp if None)
        db_path: Path to SQLite history database
        record_history: Keep the history ledger up to date
        parameters: Extra parameters passed to every downstream build
        dispatcher: Dispatcher configuration
    """

    search_identifier: str = "default"

    # Search endpoints
    good_commit: Optional[str] = None
    bad_commit: Optional[str] = None

    # Repository
    repo_path: str = "."
    git_command: str = "git"
    git_timeout: Optional[int] = 300

    # Classification
    revision_parameter: str = "COMMIT"
    retry_count: int = 1
    min_successful_iterations: int = 1

    # Loop control
    continue_automatically: bool = True
    max_iterations: int = 1000

    # State and database
    state_dir: str = ".cibisect"
    scratch_dir: Optional[str] = None
    db_path: str = ".cibisect/bisect.db"
    record_history: bool = True

    # Downstream builds
    parameters: Dict[str, str] = field(default_factory=dict)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
