"""End-to-end sync runs against fake databases and a recording runner."""

import os
from unittest.mock import MagicMock

import pytest

from conftest import FakeAUR, FakeDB, FakeRunner, aur_pkg, make_archives, repo_pkg, targets_of
from tandem.modules.executor import CmdBuilder
from tandem.modules.installer import FailedAndIgnoredError
from tandem.modules.multierror import MultiError
from tandem.modules.operation import OperationAborted, SyncOperation
from tandem.modules.resolver import PackagesNotFoundError
from tandem.modules.vcs import VCSStore


class World:
    def __init__(self, config, log, tmp_path, db=None, aur=None, confirm=None):
        self.config = config
        self.packagelists = {}
        self.fail_dirs = set()
        self.runner = FakeRunner(log, self.handle)
        self.cmd = CmdBuilder(config, self.runner, log)
        self.downloader = MagicMock()
        self.downloader.download.return_value = []
        self.vcs = VCSStore(str(tmp_path / "vcs.json"), ls_remote=lambda url, branch: "")
        self.op = SyncOperation(config, db or FakeDB(), aur or FakeAUR(), self.cmd, self.vcs,
                                log=log, confirm=confirm, downloader=self.downloader)

    def checkout(self, base, pkgnames, version="1.0", rel="1"):
        """Pretend the AUR repository of ``base`` was cloned and can be packaged."""
        directory = os.path.join(self.config.build_dir, base)
        self.packagelists[directory] = make_archives(directory, pkgnames, f"{version}-{rel}")
        lines = [f"pkgbase = {base}", f"pkgver = {version}", f"pkgrel = {rel}"]
        lines += [f"pkgname = {n}" for n in pkgnames]
        with open(os.path.join(directory, ".SRCINFO"), "w") as f:
            f.write("\n".join(lines) + "\n")
        return directory

    def handle(self, cmd):
        if cmd.cwd in self.fail_dirs and "-fC" in cmd.argv:
            return 1, ""
        if "--packagelist" in cmd.argv:
            return 0, self.packagelists.get(cmd.cwd, "")
        return None

    def pacman(self, op):
        return [argv for argv in self.runner.pacman_calls() if argv[1] == op]


def test_repo_target(config, log, tmp_path):
    world = World(config, log, tmp_path, db=FakeDB(sync=[repo_pkg("ripgrep")]))
    world.op.run(["ripgrep"])

    (sync,) = world.pacman("-S")
    assert targets_of(sync) == ["extra/ripgrep"]
    (reason,) = world.pacman("-D")
    assert "--asexplicit" in reason
    world.downloader.download.assert_called_once_with({}, [])


def test_aur_target_with_make_dependency(config, log, tmp_path):
    config.remove_make = True
    aur = FakeAUR([aur_pkg("p", "1.0-1", make_depends=["r"]), aur_pkg("r", "1.0-1")])
    world = World(config, log, tmp_path, aur=aur)
    dirs = {"p": world.checkout("p", ["p"]), "r": world.checkout("r", ["r"])}

    world.op.run(["p"])

    world.downloader.download.assert_called_once_with(dirs, ["p", "r"])
    installs = [[os.path.basename(t) for t in targets_of(c)] for c in world.pacman("-U")]
    assert installs == [["r-1.0-1-x86_64.pkg.tar.zst"], ["p-1.0-1-x86_64.pkg.tar.zst"]]
    (removal,) = world.pacman("-Rsu")
    assert targets_of(removal) == ["r"]
    assert [layer for layer in map(sorted, world.op.plan.layers)] == [["r"], ["p"]]


def test_failed_package_reported_after_others_install(config, log, tmp_path):
    aur = FakeAUR([aur_pkg("x"), aur_pkg("y")])
    world = World(config, log, tmp_path, aur=aur)
    world.fail_dirs.add(world.checkout("x", ["x"]))
    world.checkout("y", ["y"])

    with pytest.raises(MultiError) as exc:
        world.op.run(["x", "y"])

    assert any(isinstance(e, FailedAndIgnoredError) for e in exc.value.errors)
    installs = [[os.path.basename(t) for t in targets_of(c)] for c in world.pacman("-U")]
    assert installs == [["y-1.0-1-x86_64.pkg.tar.zst"]]


def test_declined_plan(config, log, tmp_path):
    seen = []

    def confirm(plan):
        seen.append(len(plan))
        return False

    world = World(config, log, tmp_path, db=FakeDB(sync=[repo_pkg("ripgrep")]), confirm=confirm)
    with pytest.raises(OperationAborted):
        world.op.run(["ripgrep"])
    assert seen == [1]
    world.downloader.download.assert_not_called()
    assert world.runner.pacman_calls() == []


def test_missing_dependency_stops_before_download(config, log, tmp_path):
    world = World(config, log, tmp_path, aur=FakeAUR([aur_pkg("p", depends=["ghost"])]))
    with pytest.raises(PackagesNotFoundError):
        world.op.run(["p"])
    world.downloader.download.assert_not_called()


def test_nothing_to_do(config, log, tmp_path):
    world = World(config, log, tmp_path)
    world.op.run([])
    assert world.op.prepare([]) is None
    assert world.runner.calls == []


def test_local_srcinfo_directory(config, log, tmp_path):
    src = tmp_path / "mine"
    src.mkdir()
    (src / ".SRCINFO").write_text("pkgbase = mine\npkgver = 0.1\npkgrel = 1\npkgname = mine\n")
    world = World(config, log, tmp_path)
    world.packagelists[str(src)] = make_archives(str(src), ["mine"], "0.1-1")

    world.op.run([], srcinfo_dirs=[str(src)])

    assert world.op.plan.build_dirs == {"mine": str(src)}
    world.downloader.download.assert_called_once_with({"mine": str(src)}, [])
    (install,) = world.pacman("-U")
    assert os.path.basename(targets_of(install)[0]) == "mine-0.1-1-x86_64.pkg.tar.zst"
