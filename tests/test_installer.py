"""Tests for the layered installer."""

import os

import pytest

from conftest import FakeDB, FakeRunner, make_archives, targets_of
from tandem.modules.config import RebuildMode
from tandem.modules.executor import CmdBuilder
from tandem.modules.installer import (
    BuildAction,
    BuildError,
    FailedAndIgnoredError,
    Installer,
    decide_build,
    merge_layers,
    parse_package_list,
)
from tandem.modules.multierror import MultiError
from tandem.modules.package import Package, PackageRef, Reason, Source
from tandem.modules.srcinfo import parse_srcinfo
from tandem.modules.vcs import VCSStore


def src(name, base=None, reason=Reason.EXPLICIT):
    return PackageRef(name=name, source=Source.AUR, reason=reason, version="1.0-1",
                      package_base=base or name)


def repo(name, reason=Reason.DEP, repository="extra", **kw):
    return PackageRef(name=name, source=Source.REPO, reason=reason, version="1.0-1",
                      repository=repository, **kw)


class Env:
    """Installer wired to a recording runner; ``fail`` decides which commands fail."""

    def __init__(self, config, log, tmp_path, db=None):
        self.config = config
        self.tmp_path = tmp_path
        self.packagelists = {}
        self.fail = lambda argv, cwd: False
        self.runner = FakeRunner(log, self.handle)
        self.cmd = CmdBuilder(config, self.runner, log)
        self.vcs = VCSStore(str(tmp_path / "vcs.json"), ls_remote=lambda url, branch: "")
        self.installer = Installer(config, self.cmd, db or FakeDB(), self.vcs, log)

    def base_dir(self, base, pkgnames):
        directory = str(self.tmp_path / "build" / base)
        self.packagelists[directory] = make_archives(directory, pkgnames)
        return directory

    def handle(self, cmd):
        if self.fail(cmd.argv, cmd.cwd):
            return 1, ""
        if "--packagelist" in cmd.argv:
            return 0, self.packagelists.get(cmd.cwd, "")
        return None

    def pacman(self, op):
        return [argv for argv in self.runner.pacman_calls() if argv[1] == op]


@pytest.fixture
def env(config, log, tmp_path):
    return Env(config, log, tmp_path)


class TestBuildDecision:
    def test_needed_and_installed_skips(self):
        for rebuild in RebuildMode:
            assert decide_build(True, rebuild, True, False, True) == BuildAction.SKIP

    def test_download_only_skips(self):
        assert decide_build(False, RebuildMode.ALL, False, True, True, download_only=True) == BuildAction.SKIP

    @pytest.mark.parametrize("rebuild,is_target,expected", [
        (RebuildMode.NO, True, BuildAction.PACKAGE),
        (RebuildMode.NO, False, BuildAction.PACKAGE),
        (RebuildMode.YES, True, BuildAction.BUILD),
        (RebuildMode.YES, False, BuildAction.PACKAGE),
        (RebuildMode.TREE, True, BuildAction.BUILD),
        (RebuildMode.TREE, False, BuildAction.PACKAGE),
        (RebuildMode.ALL, False, BuildAction.BUILD),
    ])
    def test_already_built(self, rebuild, is_target, expected):
        assert decide_build(False, rebuild, False, True, is_target) == expected

    def test_nothing_built_builds(self):
        assert decide_build(False, RebuildMode.NO, False, False, False) == BuildAction.BUILD

    def test_needed_installed_package_is_not_built(self, config, log, tmp_path):
        config.needed = True
        db = FakeDB(installed=[Package(name="foo", version="1.0-1")])
        env = Env(config, log, tmp_path, db=db)
        directory = env.base_dir("foo", ["foo"])

        pkgdests = env.installer.build_pkg(directory, "foo", is_target=True)

        assert pkgdests == {}
        assert not any("-cf" in c.argv for c in env.runner.calls)


class TestPackageList:
    def test_parse(self):
        out = ("/b/foo-bar-1.0-1-x86_64.pkg.tar.zst\n"
               "/b/foo-bar-debug-1.0-1-x86_64.pkg.tar.zst\n")
        pkgdests, version = parse_package_list(out)
        assert pkgdests == {
            "foo-bar": "/b/foo-bar-1.0-1-x86_64.pkg.tar.zst",
            "foo-bar-debug": "/b/foo-bar-debug-1.0-1-x86_64.pkg.tar.zst",
        }
        assert version == "1.0-1"

    def test_epoch_version(self):
        _, version = parse_package_list("/b/foo-2:3.1-4-any.pkg.tar.zst\n")
        assert version == "2:3.1-4"

    def test_garbage(self):
        with pytest.raises(BuildError):
            parse_package_list("nonsense\n")


def test_merge_layers_failed_entries_win():
    layer = {"a": src("a", reason=Reason.DEP), "c": src("c")}
    failed = {"a": src("a", reason=Reason.EXPLICIT)}
    merged = merge_layers(layer, failed)
    assert set(merged) == {"a", "c"}
    assert merged["a"].reason == Reason.EXPLICIT


class TestRepoLayer:
    def test_single_sync_transaction_and_reasons(self, env):
        layer = {"lib": repo("lib", repository="core"), "tool": repo("tool", reason=Reason.EXPLICIT)}
        env.installer.install([layer], {})

        sync = env.pacman("-S")
        assert len(sync) == 1
        assert targets_of(sync[0]) == ["core/lib", "extra/tool"]

        reasons = env.pacman("-D")
        assert targets_of(reasons[0]) == ["lib"]
        assert "--asdeps" in reasons[0]
        assert targets_of(reasons[1]) == ["tool"]
        assert "--asexplicit" in reasons[1]

    def test_upgrades_use_sysupgrade(self, env):
        env.config.needed = True
        layer = {"glibc": repo("glibc", is_upgrade=True), "new": repo("new")}
        env.installer.install([layer], {}, excluded=["linux"])
        sync = env.runner.pacman_calls()[0]
        assert sync[1] == "-Su"
        assert "--needed" in sync
        assert sync[sync.index("--ignore") + 1] == "linux"
        assert targets_of(sync) == ["extra/new"]

    def test_as_deps_overrides_explicit(self, env):
        env.config.as_deps = True
        env.installer.install([{"tool": repo("tool", reason=Reason.EXPLICIT)}], {})
        reasons = env.pacman("-D")
        assert len(reasons) == 1
        assert "--asdeps" in reasons[0]


class TestSourceLayers:
    def test_dependency_layers_then_target(self, env):
        dirs = {"r": env.base_dir("r", ["r"]), "p": env.base_dir("p", ["p"])}
        layers = [{"r": src("r", reason=Reason.DEP)}, {"p": src("p")}]
        env.installer.install(layers, dirs, targets=["p"])

        installs = env.pacman("-U")
        assert [[os.path.basename(t) for t in targets_of(c)] for c in installs] == [
            ["r-1.0-1-x86_64.pkg.tar.zst"], ["p-1.0-1-x86_64.pkg.tar.zst"]]
        assert env.installer.installed_sources == ["r", "p"]

    def test_database_cache_dropped_after_every_layer(self, config, log, tmp_path):
        db = FakeDB()
        env = Env(config, log, tmp_path, db=db)
        dirs = {"r": env.base_dir("r", ["r"]), "p": env.base_dir("p", ["p"])}
        env.fail = lambda argv, cwd: cwd == dirs["r"] and "-fC" in argv
        env.installer.install([{"r": src("r", reason=Reason.DEP)}, {"p": src("p")}], dirs)
        assert db.invalidations == 2

    def test_split_packages_roll_up_into_one_transaction(self, env):
        """a fails alone, then a and b go in together."""
        directory = env.base_dir("ab", ["a", "b"])
        dirs = {"ab": directory}
        layers = [{"a": src("a", base="ab")}, {"b": src("b", base="ab")}]

        attempts = []

        def fail(argv, cwd):
            if "-U" in argv:
                attempts.append(argv)
                return len(attempts) == 1
            return False

        env.fail = fail
        env.installer.install(layers, dirs, targets=["a", "b"])

        assert len(attempts) == 2
        assert len(targets_of(attempts[0])) == 1
        assert sorted(os.path.basename(t) for t in targets_of(attempts[1])) == [
            "a-1.0-1-x86_64.pkg.tar.zst", "b-1.0-1-x86_64.pkg.tar.zst"]
        assert env.installer.failed_and_ignored == {}

    def test_base_built_once_per_layer(self, env):
        directory = env.base_dir("ab", ["a", "b"])
        env.installer.install([{"a": src("a", base="ab"), "b": src("b", base="ab")}], {"ab": directory})
        packagelists = [c for c in env.runner.calls if "--packagelist" in c.argv]
        assert len(packagelists) == 1
        assert len(env.pacman("-U")) == 1

    def test_terminal_failure_keeps_unrelated_package(self, env):
        dirs = {"x": env.base_dir("x", ["x"]), "y": env.base_dir("y", ["y"])}
        env.fail = lambda argv, cwd: cwd == dirs["x"] and "--nobuild" in argv and "-fC" in argv

        env.installer.install([{"x": src("x"), "y": src("y")}], dirs, targets=["x", "y"])

        installs = env.pacman("-U")
        assert len(installs) == 1
        assert [os.path.basename(t) for t in targets_of(installs[0])] == ["y-1.0-1-x86_64.pkg.tar.zst"]
        assert set(env.installer.failed_and_ignored) == {"x"}

        failed, err = env.installer.compile_failed_and_ignored()
        assert isinstance(err, FailedAndIgnoredError)
        assert "x - " in str(err)
        assert list(failed) == ["x"]

    def test_early_layer_failure_rolls_forward(self, env):
        dirs = {"r": env.base_dir("r", ["r"]), "p": env.base_dir("p", ["p"])}
        env.fail = lambda argv, cwd: cwd == dirs["r"] and "-fC" in argv
        env.installer.install([{"r": src("r", reason=Reason.DEP)}, {"p": src("p")}], dirs)
        assert set(env.installer.failed_and_ignored) == {"r"}
        assert len(env.pacman("-U")) == 1

    def test_last_layer_install_failure_raises(self, env):
        dirs = {"p": env.base_dir("p", ["p"])}
        env.fail = lambda argv, cwd: "-U" in argv
        with pytest.raises(MultiError):
            env.installer.install([{"p": src("p")}], dirs)

    def test_missing_build_dir_is_recorded(self, env):
        env.installer.install([{"p": src("p")}], {})
        assert "p" in env.installer.failed_and_ignored

    def test_debug_package_installed_as_dependency(self, env):
        dirs = {"p": env.base_dir("p", ["p", "p-debug"])}
        env.installer.install([{"p": src("p")}], dirs)
        assert len(targets_of(env.pacman("-U")[0])) == 2
        asdeps = [c for c in env.pacman("-D") if "--asdeps" in c]
        assert targets_of(asdeps[0]) == ["p-debug"]

    def test_download_only_installs_nothing(self, env):
        env.config.download_only = True
        dirs = {"p": env.base_dir("p", ["p"])}
        env.installer.install([{"p": src("p")}], dirs)
        assert env.pacman("-U") == []
        assert env.installer.failed_and_ignored == {}


class TestVcsRecording:
    def test_installed_devel_package_is_recorded(self, config, log, tmp_path):
        env = Env(config, log, tmp_path)
        env.vcs = VCSStore(str(tmp_path / "vcs.json"), ls_remote=lambda url, branch: "abc")
        env.installer.vcs = env.vcs
        dirs = {"foo-git": env.base_dir("foo-git", ["foo-git"])}
        info = parse_srcinfo("pkgbase = foo-git\npkgver = r1\npkgrel = 1\n"
                             "source = git+https://example.org/foo.git\npkgname = foo-git\n")

        env.installer.install([{"foo-git": src("foo-git")}], dirs, srcinfos={"foo-git": info})

        assert env.vcs.fingerprints("foo-git")["example.org/foo.git"]["sha"] == "abc"

    def test_failed_package_is_not_recorded(self, config, log, tmp_path):
        env = Env(config, log, tmp_path)
        env.vcs = VCSStore(str(tmp_path / "vcs.json"), ls_remote=lambda url, branch: "abc")
        env.installer.vcs = env.vcs
        dirs = {"foo-git": env.base_dir("foo-git", ["foo-git"])}
        env.fail = lambda argv, cwd: "-fC" in argv
        info = parse_srcinfo("pkgbase = foo-git\npkgver = r1\npkgrel = 1\n"
                             "source = git+https://example.org/foo.git\npkgname = foo-git\n")

        env.installer.install([{"foo-git": src("foo-git")}], dirs, srcinfos={"foo-git": info})

        assert "foo-git" not in env.vcs
