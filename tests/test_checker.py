"""Tests for SystemChecker."""

from cibisect.config.config import BisectConfig, DispatcherConfig
from cibisect.core.checker import SystemChecker


class KnownCommits:
    def __init__(self, *commits):
        self.commits = set(commits)

    def check_exists(self, revision):
        return revision in self.commits


def make_config(tmp_path, **kwargs):
    defaults = {
        "repo_path": str(tmp_path),
        "state_dir": str(tmp_path / "state"),
        "dispatcher": DispatcherConfig(type="command", command="./test.sh"),
    }
    defaults.update(kwargs)
    return BisectConfig(**defaults)


def test_dispatcher_checks(tmp_path):
    """Test dispatcher configuration checks."""
    ok = SystemChecker(make_config(tmp_path)).check_dispatcher()
    assert ok[0].passed

    missing = SystemChecker(
        make_config(tmp_path, dispatcher=DispatcherConfig(type="command"))
    ).check_dispatcher()
    assert not missing[0].passed

    unknown = SystemChecker(
        make_config(tmp_path, dispatcher=DispatcherConfig(type="jenkins"))
    ).check_dispatcher()
    assert not unknown[0].passed

    properties = SystemChecker(
        make_config(tmp_path, dispatcher=DispatcherConfig(type="properties"))
    ).check_dispatcher()
    assert properties[0].passed
    assert properties[0].warning


def test_state_dir_check(tmp_path):
    """Test that a state directory yet to be created is accepted."""
    results = SystemChecker(make_config(tmp_path)).check_state_dir()

    assert results[0].passed
    assert "will be created" in results[0].message


def test_commit_checks(tmp_path):
    """Test endpoint commit resolution."""
    config = make_config(tmp_path, good_commit="c0", bad_commit="zz")
    results = SystemChecker(config, oracle=KnownCommits("c0", "c9")).check_commits()

    assert [r.passed for r in results] == [True, False]


def test_unconfigured_commits_warn(tmp_path):
    """Test that missing endpoints only warn."""
    results = SystemChecker(make_config(tmp_path), oracle=KnownCommits()).check_commits()

    assert all(r.passed and r.warning for r in results)


def test_missing_repository(tmp_path):
    """Test that a missing repository directory fails the check."""
    config = make_config(tmp_path, repo_path=str(tmp_path / "missing"))
    results = SystemChecker(config).check_repository()

    assert not results[0].passed


def test_run_all_checks_reports_failure(tmp_path, capsys):
    """Test the aggregate result and printed summary."""
    config = make_config(
        tmp_path, repo_path=str(tmp_path / "missing"), dispatcher=DispatcherConfig(type="command")
    )
    checker = SystemChecker(config)

    assert not checker.run_all_checks()
    checker.print_results()

    out = capsys.readouterr().out
    assert "Summary:" in out
    assert "Some checks failed" in out
