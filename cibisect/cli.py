#!/usr/bin/env python3
"""cibisect - CI Bisection CLI Tool.

Main command-line interface for resumable git bisection driven by CI builds.
"""

import argparse
import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from cibisect.config import BisectConfig, DispatcherConfig
from cibisect.core import (
    BisectConfigurationError,
    BisectOrchestrator,
    BuildContext,
    ContinuationBridge,
    SearchLogAdapter,
)
from cibisect.core.checker import SystemChecker
from cibisect.dispatch import BuildOutcome, create_dispatcher
from cibisect.persistence import SessionStore, StateManager
from cibisect.vcs import CommitPair, GitBisectOracle


# Constants
DEFAULT_CONFIG_PATH = "bisect.yaml"

# Parameters set by the host CI for every build
GIT_COMMIT = "GIT_COMMIT"
GIT_PREVIOUS_SUCCESSFUL_COMMIT = "GIT_PREVIOUS_SUCCESSFUL_COMMIT"

# Configure logging
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")


def _resolve(config_dir: Path, section: Dict[str, Any], key: str) -> None:
    value = section.get(key)
    if not value:
        return

    path = Path(value)
    if not path.is_absolute():
        resolved_path = (config_dir / path).resolve()
        section[key] = str(resolved_path)
        logger.debug(f"Resolved {key} path: {value} -> {resolved_path}")


def load_config(config_path: str) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        SystemExit: If config file not found
    """
    path = Path(config_path)

    if not path.exists():
        logger.error(f"Config file not found: {config_path}")
        logger.info("Please create a config file, for example with:")
        logger.info("  cibisect init-config")
        sys.exit(1)

    with path.open() as f:
        config_dict = yaml.safe_load(f) or {}

    # Resolve relative paths in config relative to config file location
    config_dir = path.parent.resolve()

    repository = config_dict.setdefault("repository", {})
    _resolve(config_dir, repository, "path")
    if "path" not in repository:
        repository["path"] = str(config_dir)

    # State defaults live next to the config file, not in the working directory
    defaults = BisectConfig()
    state = config_dict.setdefault("state", {})
    state.setdefault("state_dir", defaults.state_dir)
    state.setdefault("database_path", defaults.db_path)
    for key in ("state_dir", "database_path", "scratch_dir"):
        _resolve(config_dir, state, key)

    dispatcher = config_dict.setdefault("dispatcher", {})
    for key in ("workdir", "properties_file"):
        _resolve(config_dir, dispatcher, key)

    return config_dict


def create_bisect_config(config_dict: Dict[str, Any], args: Any) -> BisectConfig:
    """Create BisectConfig from config dict and CLI args.

    Command-line values override the config file.

    Args:
        config_dict: Configuration dictionary from YAML
        args: Parsed command-line arguments

    Returns:
        BisectConfig object
    """
    repository = config_dict.get("repository", {})
    classification = config_dict.get("classification", {})
    state = config_dict.get("state", {})
    dispatcher = config_dict.get("dispatcher", {})

    defaults = BisectConfig()
    dispatcher_defaults = DispatcherConfig()

    parameters = {
        str(key): str(value) for key, value in (config_dict.get("parameters") or {}).items()
    }

    return BisectConfig(
        search_identifier=(
            getattr(args, "identifier", None)
            or config_dict.get("search_identifier", defaults.search_identifier)
        ),
        good_commit=getattr(args, "good_commit", None) or config_dict.get("good_commit"),
        bad_commit=getattr(args, "bad_commit", None) or config_dict.get("bad_commit"),
        repo_path=repository.get("path", defaults.repo_path),
        git_command=repository.get("git_command", defaults.git_command),
        git_timeout=repository.get("timeout", defaults.git_timeout),
        revision_parameter=config_dict.get("revision_parameter", defaults.revision_parameter),
        retry_count=classification.get("retry_count", defaults.retry_count),
        min_successful_iterations=classification.get(
            "min_successful_iterations", defaults.min_successful_iterations
        ),
        continue_automatically=config_dict.get(
            "continue_automatically", defaults.continue_automatically
        ),
        max_iterations=config_dict.get("max_iterations", defaults.max_iterations),
        state_dir=state.get("state_dir", defaults.state_dir),
        scratch_dir=state.get("scratch_dir"),
        db_path=state.get("database_path", defaults.db_path),
        record_history=state.get("record_history", defaults.record_history),
        parameters=parameters,
        dispatcher=DispatcherConfig(
            type=dispatcher.get("type", dispatcher_defaults.type),
            command=dispatcher.get("command"),
            workdir=dispatcher.get("workdir"),
            timeout=dispatcher.get("timeout"),
            properties_file=dispatcher.get(
                "properties_file", dispatcher_defaults.properties_file
            ),
        ),
    )


def build_orchestrator(
    config: BisectConfig,
) -> Tuple[BisectOrchestrator, Optional[StateManager]]:
    """Wire oracle, store, dispatcher and history ledger from configuration.

    Args:
        config: Bisect configuration

    Returns:
        Tuple of (orchestrator, history ledger or None)
    """
    oracle = GitBisectOracle(
        repo_path=config.repo_path,
        git_command=config.git_command,
        timeout=config.git_timeout,
    )
    store = SessionStore(config.state_dir, config.scratch_dir)
    dispatcher = create_dispatcher(config.dispatcher)
    history = StateManager(config.db_path) if config.record_history else None

    orchestrator = BisectOrchestrator(
        oracle,
        store,
        dispatcher,
        retry_count=config.retry_count,
        min_successful_iterations=config.min_successful_iterations,
        revision_parameter=config.revision_parameter,
        parameters=config.parameters,
        max_iterations=config.max_iterations,
        history=history,
        logger=SearchLogAdapter(logger, {"search": config.search_identifier}),
    )
    return orchestrator, history


def cmd_run(args: argparse.Namespace) -> int:
    """Run bisection in loop mode.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    print("=== Starting CI Bisection ===\n")

    config = create_bisect_config(load_config(args.config), args)

    if bool(config.good_commit) != bool(config.bad_commit):
        print("Error: Both good and bad commits must be given")
        print("Usage: cibisect run <good-commit> <bad-commit>")
        return 1

    commits = None
    if config.good_commit and config.bad_commit:
        commits = CommitPair(config.good_commit, config.bad_commit)

    continue_automatically = config.continue_automatically and not args.no_continue

    orchestrator, history = build_orchestrator(config)
    try:
        run = orchestrator.run(
            config.search_identifier,
            commits,
            continue_automatically=continue_automatically,
        )
    except BisectConfigurationError as exc:
        print(f"✗ {exc}")
        return 1
    finally:
        if history:
            history.close()

    print(f"\nSteps taken:     {len(run.steps)}")
    print(f"Tests started:   {run.tests_dispatched}")

    if run.is_done:
        print("\n✓ Bisection complete!")
        print(f"First bad commit: {run.result.commit}")
    else:
        print(f"\nNext commit to be tested: {run.result.commit}")
        print("Run again to continue the bisection")
    return 0


def _read_parameters(parameters_file: Optional[str]) -> Dict[str, str]:
    if not parameters_file:
        return dict(os.environ)

    with Path(parameters_file).open() as f:
        data = json.load(f)
    return {str(key): str(value) for key, value in data.items()}


def cmd_step(args: argparse.Namespace) -> int:
    """Run one chained bisection step for a finished build.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = create_bisect_config(load_config(args.config), args)
    parameters = _read_parameters(args.parameters_file)

    context = BuildContext(
        parameters=parameters,
        commit=args.commit or parameters.get(GIT_COMMIT),
        outcome=BuildOutcome(args.outcome),
        previous_good_commit=(
            args.previous_good or parameters.get(GIT_PREVIOUS_SUCCESSFUL_COMMIT)
        ),
    )

    orchestrator, history = build_orchestrator(config)
    try:
        step = ContinuationBridge(orchestrator).handle_build(config.search_identifier, context)
    except BisectConfigurationError as exc:
        print(f"✗ {exc}")
        return 1
    finally:
        if history:
            history.close()

    if step.action == "idle":
        print("Nothing to bisect")
    elif step.is_done:
        print(f"✓ Bisection complete! First bad commit: {step.result.commit}")
    elif step.action == "retried":
        print(f"Rebuilding commit {step.next_parameters.revision} before deciding on it")
    else:
        print(f"Triggered next build with commit {step.next_parameters.revision}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show bisection status.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = create_bisect_config(load_config(args.config), args)

    state = StateManager(config.db_path)
    try:
        if args.identifier:
            search = state.get_search(args.identifier)
        else:
            search = state.get_latest_search()

        if not search:
            print("No bisection search found")
            return 0

        print("=== Bisection Status ===\n")
        print(f"Search:       {search.identifier}")
        print(f"Mode:         {search.mode}")
        print(f"Status:       {search.status}")
        print(f"Good commit:  {search.good_commit}")
        print(f"Bad commit:   {search.bad_commit}")
        print(f"Started:      {search.start_time}")

        if search.end_time:
            print(f"Ended:        {search.end_time}")

        if search.error_message:
            print(f"Error:        {search.error_message}")

        if search.result_commit:
            print(f"\nFirst bad commit: {search.result_commit}")

        steps = state.get_steps(search.identifier)
        print(f"\nTotal steps: {len(steps)}")

        if steps:
            print("\nRecent steps:")
            for step in steps[-5:]:
                verdict = step.verdict or "crashed"
                print(
                    f"  {step.step_num:3d}. {step.commit_sha[:12]} | {verdict:7s} | "
                    f"{step.successes} passed, {step.failures} failed"
                )
    finally:
        state.close()

    return 0


def cmd_report(args: argparse.Namespace) -> int:
    """Generate bisection report.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = create_bisect_config(load_config(args.config), args)

    state = StateManager(config.db_path)
    try:
        identifier = args.identifier
        if not identifier:
            search = state.get_latest_search()
            if not search:
                print("No bisection search found")
                return 1
            identifier = search.identifier

        report = state.export_report(identifier, format=args.format)
    finally:
        state.close()

    if args.output:
        output_path = Path(args.output)
        with output_path.open("w") as f:
            f.write(report)
        print(f"Report saved to: {args.output}")
    else:
        print(report)

    return 0


def cmd_log(args: argparse.Namespace) -> int:
    """Print the decision log of a search.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 if no log exists)
    """
    config = create_bisect_config(load_config(args.config), args)
    store = SessionStore(config.state_dir, config.scratch_dir)

    log_text = store.canonical_log(config.search_identifier)
    if not log_text:
        print(f"No decision log for '{config.search_identifier}'")
        return 1

    print(log_text, end="")
    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    """Generate example configuration file.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    # Locate the example config file in the package
    source_file = Path(__file__).parent / "config" / "bisect.yaml.example"

    if not source_file.exists():
        print(f"Error: Example config file not found at {source_file}")
        print("This might indicate a corrupted installation.")
        return 1

    output_file = Path(args.output) if args.output else Path(DEFAULT_CONFIG_PATH)

    if output_file.exists() and not args.force:
        response = input(f"File '{output_file}' already exists. Overwrite? [y/N]: ")
        if response.lower() not in ["y", "yes"]:
            print("Aborted.")
            return 1

    try:
        shutil.copy(source_file, output_file)
    except OSError as exc:
        print(f"Error copying config file: {exc}")
        return 1

    print(f"✓ Example configuration created: {output_file}")
    print("\nNext steps:")
    print(f"  1. Edit {output_file} with your repository and test command")
    print("  2. Run: cibisect check")
    print("  3. Run: cibisect run <good-commit> <bad-commit>")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Check system dependencies and configuration.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if all checks passed, 1 if any check failed)
    """
    logger.info("Running system health checks...")

    try:
        config_dict = load_config(args.config)
    except SystemExit:
        logger.error("Failed to load configuration file")
        logger.error(f"Please ensure {args.config} exists and is valid YAML")
        return 1

    config = create_bisect_config(config_dict, args)
    checker = SystemChecker(config)

    all_passed = checker.run_all_checks()
    checker.print_results()

    if all_passed:
        logger.info("✓ All checks passed - system is ready for bisection")
        return 0

    logger.error("✗ Some checks failed - please address issues before running bisection")
    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        description="Resumable git bisection driven by CI builds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-c", "--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path"
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    parser_run = subparsers.add_parser("run", help="Run bisection in loop mode")
    parser_run.add_argument("good_commit", nargs="?", help="Known good commit (OLDER)")
    parser_run.add_argument("bad_commit", nargs="?", help="Known bad commit (NEWER)")
    parser_run.add_argument("--identifier", help="Search identifier (default: from config)")
    parser_run.add_argument(
        "--no-continue", action="store_true", help="Stop after testing one commit"
    )

    # step command
    parser_step = subparsers.add_parser(
        "step", help="Fold a finished build into a chained bisection"
    )
    parser_step.add_argument(
        "--outcome",
        required=True,
        choices=[outcome.value for outcome in BuildOutcome],
        help="Result of the finished build",
    )
    parser_step.add_argument("--commit", help="Commit the build ran on (default: $GIT_COMMIT)")
    parser_step.add_argument(
        "--previous-good",
        help="Last successful commit (default: $GIT_PREVIOUS_SUCCESSFUL_COMMIT)",
    )
    parser_step.add_argument(
        "--parameters-file", help="JSON file with build parameters (default: environment)"
    )
    parser_step.add_argument("--identifier", help="Search identifier (default: from config)")

    # status command
    parser_status = subparsers.add_parser("status", help="Show bisection status")
    parser_status.add_argument("--identifier", help="Search identifier (default: latest)")

    # report command
    parser_report = subparsers.add_parser("report", help="Generate bisection report")
    parser_report.add_argument("--identifier", help="Search identifier (default: latest)")
    parser_report.add_argument(
        "--format", choices=["text", "json"], default="text", help="Report format"
    )
    parser_report.add_argument("--output", "-o", help="Output file (default: stdout)")

    # log command
    parser_log = subparsers.add_parser("log", help="Print the decision log")
    parser_log.add_argument("--identifier", help="Search identifier (default: from config)")

    # init-config command
    parser_init_config = subparsers.add_parser(
        "init-config", help="Generate example configuration file"
    )
    parser_init_config.add_argument(
        "--output", "-o", help="Output file path (default: bisect.yaml)"
    )
    parser_init_config.add_argument(
        "--force", "-f", action="store_true", help="Overwrite existing file without prompting"
    )

    # check command
    subparsers.add_parser("check", help="Check system dependencies and configuration")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments (sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    # Route to command handlers
    try:
        if args.command == "run":
            return cmd_run(args)
        if args.command == "step":
            return cmd_step(args)
        if args.command == "status":
            return cmd_status(args)
        if args.command == "report":
            return cmd_report(args)
        if args.command == "log":
            return cmd_log(args)
        if args.command == "init-config":
            return cmd_init_config(args)
        if args.command == "check":
            return cmd_check(args)

        parser.print_help()
        return 1

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
