"""Tests for the development package fingerprint store."""

import json
import threading
import time
from unittest.mock import patch

import pytest
from git import Git
from git.exc import GitCommandError, GitCommandNotFound

from tandem.modules.multierror import MultiError
from tandem.modules.vcs import LS_REMOTE_TIMEOUT, VCSStore, VCSStoreError, git_ls_remote, parse_source


class FakeRemote:
    """ls-remote stand-in: url -> commit, optional per-url delay."""

    def __init__(self, commits, delays=None):
        self.commits = commits
        self.delays = delays or {}
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, url, branch):
        with self._lock:
            self.calls.append((url, branch))
        time.sleep(self.delays.get(url, 0))
        return self.commits.get(url, "")


def fp(sha, branch="HEAD", proto="https"):
    return {"protocols": [proto], "branch": branch, "sha": sha}


class TestParseSource:
    @pytest.mark.parametrize("source,expected", [
        ("git+https://github.com/foo/bar.git", ("github.com/foo/bar.git", "HEAD", ["https"])),
        ("bar::git+https://example.org/bar.git#branch=dev", ("example.org/bar.git", "dev", ["https"])),
        ("git://example.org/bar.git", ("example.org/bar.git", "HEAD", ["git"])),
        ("git+https://example.org/bar.git?signed#branch=main", ("example.org/bar.git", "main", ["https"])),
    ])
    def test_git_sources(self, source, expected):
        assert parse_source(source) == expected

    @pytest.mark.parametrize("source", [
        "https://example.org/bar-1.0.tar.gz",
        "git+https://example.org/bar.git#commit=abc123",
        "git+https://example.org/bar.git#tag=v1.0",
        "bar.patch",
    ])
    def test_non_tracked_sources(self, source):
        assert parse_source(source) == ("", "", [])


class TestNeedsUpdate:
    def test_all_equal(self, tmp_path):
        remote = FakeRemote({"https://a/x.git": "1", "https://b/y.git": "2"})
        store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=remote)
        assert not store.needs_update({"a/x.git": fp("1"), "b/y.git": fp("2")})

    def test_any_differs_regardless_of_completion_order(self, tmp_path):
        commits = {"https://a/x.git": "1", "https://b/y.git": "new", "https://c/z.git": "3"}
        fps = {"a/x.git": fp("1"), "b/y.git": fp("2"), "c/z.git": fp("3")}
        for slow in commits:
            remote = FakeRemote(commits, delays={slow: 0.05})
            store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=remote)
            assert store.needs_update(fps)

    def test_unreachable_remote_is_not_an_update(self, tmp_path):
        store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=FakeRemote({}))
        assert not store.needs_update({"a/x.git": fp("1")})

    def test_uses_stored_protocol_and_branch(self, tmp_path):
        remote = FakeRemote({"git://a/x.git": "1"})
        store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=remote)
        store.needs_update({"a/x.git": fp("1", branch="dev", proto="git")})
        assert remote.calls == [("git://a/x.git", "dev")]

    def test_to_upgrade(self, tmp_path):
        remote = FakeRemote({"https://a/x.git": "2", "https://b/y.git": "1"})
        store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=remote)
        store.store = {"x-git": {"a/x.git": fp("1")}, "y-git": {"b/y.git": fp("1")}}
        assert store.to_upgrade() == ["x-git"]
        assert store.to_upgrade(iter(["y-git"])) == []


class TestPersistence:
    def test_update_writes_file(self, tmp_path):
        path = tmp_path / "vcs.json"
        remote = FakeRemote({"https://example.org/foo.git": "abc"})
        store = VCSStore(str(path), ls_remote=remote)
        store.update("foo-git", ["git+https://example.org/foo.git", "foo.patch"])

        data = json.loads(path.read_text())
        assert data == {"foo-git": {"example.org/foo.git": fp("abc")}}
        assert "\t" in path.read_text()

        reloaded = VCSStore(str(path)).load()
        assert "foo-git" in reloaded
        assert reloaded.fingerprints("foo-git")["example.org/foo.git"]["sha"] == "abc"

    def test_update_without_git_sources_writes_nothing(self, tmp_path):
        path = tmp_path / "vcs.json"
        store = VCSStore(str(path), ls_remote=FakeRemote({}))
        store.update("foo", ["https://example.org/foo-1.0.tar.gz"])
        assert not path.exists()
        assert "foo" not in store

    def test_remove_package(self, tmp_path):
        path = tmp_path / "vcs.json"
        store = VCSStore(str(path))
        store.store = {"a-git": {"a/x.git": fp("1")}, "b-git": {"b/y.git": fp("2")}}
        assert store.remove_package(["a-git"])
        assert not store.remove_package(["a-git"])
        assert json.loads(path.read_text()) == {"b-git": {"b/y.git": fp("2")}}

    def test_clean_orphans(self, tmp_path):
        store = VCSStore(str(tmp_path / "vcs.json"))
        store.store = {"a-git": {}, "b-git": {}}
        assert store.clean_orphans(["b-git", "other"]) == ["a-git"]
        assert "a-git" not in store

    def test_load_missing_file(self, tmp_path):
        store = VCSStore(str(tmp_path / "nope.json")).load()
        assert store.store == {}

    def test_load_invalid_file(self, tmp_path):
        path = tmp_path / "vcs.json"
        path.write_text("not json")
        with pytest.raises(VCSStoreError):
            VCSStore(str(path)).load()


class TestWorkerErrors:
    def test_every_failed_write_is_reported(self, tmp_path):
        remote = FakeRemote({"https://a/x.git": "1", "https://b/y.git": "2"})
        store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=remote)
        attempts = []
        lock = threading.Lock()

        def failing_save():
            with lock:
                attempts.append(None)
                n = len(attempts)
            raise VCSStoreError(f"write failed #{n}")

        store.save = failing_save
        with pytest.raises(MultiError) as exc:
            store.update("foo-git", ["git+https://a/x.git", "git+https://b/y.git"])

        assert len(attempts) == 2
        assert sorted(str(e) for e in exc.value.errors) == ["write failed #1", "write failed #2"]

    def test_to_upgrade_checks_every_package_before_failing(self, tmp_path):
        checked = []
        lock = threading.Lock()

        def remote(url, branch):
            with lock:
                checked.append(url)
            if "broken" in url:
                raise RuntimeError(f"cannot reach {url}")
            return "2"

        store = VCSStore(str(tmp_path / "vcs.json"), ls_remote=remote)
        store.store = {
            "a-git": {"broken/a.git": fp("1")},
            "b-git": {"broken/b.git": fp("1")},
            "c-git": {"ok/c.git": fp("1")},
        }
        with pytest.raises(MultiError) as exc:
            store.to_upgrade()

        assert len(checked) == 3
        messages = sorted(str(e) for e in exc.value.errors)
        assert messages[0].startswith("a-git: cannot reach")
        assert messages[1].startswith("b-git: cannot reach")


class TestGitLsRemote:
    def test_first_field_is_the_commit(self):
        with patch.object(Git, "ls_remote", return_value="0123abcd\tHEAD\n") as ls:
            assert git_ls_remote("https://example.org/foo.git", "HEAD") == "0123abcd"
        args, kwargs = ls.call_args
        assert args == ("https://example.org/foo.git", "HEAD")
        assert kwargs["kill_after_timeout"] == LS_REMOTE_TIMEOUT
        assert kwargs["env"] == {"GIT_TERMINAL_PROMPT": "0"}

    def test_unknown_branch_is_inconclusive(self):
        with patch.object(Git, "ls_remote", return_value=""):
            assert git_ls_remote("https://example.org/foo.git", "gone") == ""

    def test_unreachable_remote_is_inconclusive(self):
        err = GitCommandError(["git", "ls-remote"], 128, b"fatal: could not read Username")
        with patch.object(Git, "ls_remote", side_effect=err):
            assert git_ls_remote("https://example.org/private.git", "HEAD") == ""

    def test_missing_git_binary_is_inconclusive(self):
        with patch.object(Git, "ls_remote", side_effect=GitCommandNotFound("git", "not found")):
            assert git_ls_remote("https://example.org/foo.git", "HEAD") == ""
