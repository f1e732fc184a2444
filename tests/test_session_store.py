"""Tests for SessionStore."""

import pytest

from cibisect.persistence.store import SessionStore, SessionStoreError


def test_new_identifier_has_no_progress(store):
    """Test that an unused identifier starts from scratch."""
    handle = store.open("fresh")
    try:
        assert not store.has_prior_progress(handle)
        assert store.read(handle) == ""
        assert handle.canonical_path == store.state_dir / "fresh.log"
    finally:
        store.cleanup(handle)


def test_save_publishes_canonical_copy(store):
    """Test that saving overwrites the local copy and publishes it."""
    handle = store.open("search")
    store.save(handle, "git bisect start\n")
    store.save(handle, "git bisect start\ngit bisect good c0\n")

    assert store.read(handle) == "git bisect start\ngit bisect good c0\n"
    assert store.canonical_log("search") == "git bisect start\ngit bisect good c0\n"
    assert [p.name for p in store.state_dir.iterdir()] == ["search.log"]
    store.cleanup(handle)


def test_open_seeds_local_copy_from_canonical(store):
    """Test that a new process starts from the published log."""
    first = store.open("search")
    store.save(first, "git bisect start\n")
    store.cleanup(first)

    second = store.open("search")
    try:
        assert store.has_prior_progress(second)
        assert store.read(second) == "git bisect start\n"
        assert second.local_path != first.local_path
    finally:
        store.cleanup(second)


def test_empty_canonical_log_is_no_progress(store):
    """Test that an empty published log counts as a fresh start."""
    store.canonical_path("empty").write_text("")
    handle = store.open("empty")

    assert not store.has_prior_progress(handle)
    store.cleanup(handle)


def test_cleanup_keeps_canonical_copy(store):
    """Test that cleanup only removes the scratch copy."""
    handle = store.open("kept")
    store.save(handle, "git bisect start\n")
    store.cleanup(handle)
    store.cleanup(handle)

    assert not handle.local_path.exists()
    assert handle.canonical_path.exists()


def test_identifiers_are_isolated(store):
    """Test that two searches never share a log."""
    one = store.open("one")
    two = store.open("two")
    store.save(one, "git bisect good a\n")

    assert store.canonical_log("two") is None
    assert not store.has_prior_progress(two)
    store.cleanup(one)
    store.cleanup(two)


@pytest.mark.parametrize("identifier", ["", ".hidden", "../escape", "a/b"])
def test_invalid_identifier(store, identifier):
    """Test that identifiers unusable as file names are rejected."""
    with pytest.raises(SessionStoreError):
        store.open(identifier)


def test_state_dir_created(tmp_path):
    """Test that the state directory is created on demand."""
    store = SessionStore(tmp_path / "a" / "b")

    assert store.state_dir.is_dir()
    assert store.canonical_log("nothing") is None
