"""Shared fakes: package database, AUR client and a recording command runner."""

import os
from typing import Callable, Dict, List, Optional

import pytest

from tandem.modules.config import TandemConfig
from tandem.modules.errors import CommandError
from tandem.modules.executor import CmdBuilder, Command, CommandResult, Runner
from tandem.modules.localdb import PackageDB
from tandem.modules.logger import Logger
from tandem.modules.package import Package


class FakeDB(PackageDB):
    def __init__(self, installed=None, sync=None, foreign=None, upgrades=None):
        self.installed = {p.name: p for p in (installed or [])}
        self.sync = list(sync or [])
        self.foreign = list(foreign or [])
        self.upgrades = list(upgrades or [])
        self.invalidations = 0

    def local_package(self, name):
        return self.installed.get(name)

    def installed_packages(self):
        return dict(self.installed)

    def local_satisfier_exists(self, dep):
        return any(p.satisfies(dep) for p in self.installed.values())

    def sync_satisfier(self, dep):
        for pkg in sorted(self.sync, key=lambda p: p.name):
            if pkg.satisfies(dep):
                return pkg
        return None

    def sync_package_from_db(self, db, name):
        for pkg in self.sync:
            if pkg.name == name and pkg.repository == db:
                return pkg
        return None

    def package_group(self, name):
        return [p for p in self.sync if name in p.groups]

    def foreign_packages(self):
        return {n: self.installed[n] for n in self.foreign if n in self.installed}

    def repo_upgrades(self):
        return list(self.upgrades)

    def invalidate(self):
        self.invalidations += 1


class FakeAUR:
    """Serves a fixed set of AUR records and remembers what was asked."""

    def __init__(self, packages=None):
        self.packages = {p.name: p for p in (packages or [])}
        self.info_calls: List[List[str]] = []

    def info(self, names):
        names = list(names)
        self.info_calls.append(names)
        return {n: self.packages[n] for n in names if n in self.packages}

    def get(self, name):
        return self.info([name]).get(name)

    def search(self, term, by="name"):
        return [p for p in self.packages.values() if term in p.name]

    def search_providers(self, name):
        return sorted((p for p in self.packages.values() if p.satisfies(name)), key=lambda p: p.name)

    def find_providers(self, names, workers):
        return {n: self.search_providers(n) for n in names}


Handler = Callable[[Command], Optional[tuple]]


class FakeRunner(Runner):
    """
    Records every command instead of running it. ``handler(cmd)`` may return
    ``(returncode, stdout)``; anything else counts as success with no output.
    """

    def __init__(self, log, handler: Optional[Handler] = None):
        super().__init__(log)
        self.calls: List[Command] = []
        self.handler = handler

    def _run(self, cmd, capture, timeout, check):
        self.calls.append(cmd)
        rc, out = 0, ""
        if self.handler is not None:
            res = self.handler(cmd)
            if res is not None:
                rc, out = res
        if check and rc != 0:
            raise CommandError(cmd.argv, rc, "failed")
        return CommandResult(cmd.argv, rc, out, "", 0)

    def pacman_calls(self) -> List[List[str]]:
        """argv of every pacman call, starting at the pacman binary."""
        out = []
        for cmd in self.calls:
            if "pacman" in cmd.argv:
                out.append(cmd.argv[cmd.argv.index("pacman"):])
        return out


def targets_of(argv: List[str]) -> List[str]:
    return argv[argv.index("--") + 1:]


def make_archives(directory: str, names: List[str], version: str = "1.0-1") -> str:
    """Create fake package archives and return matching --packagelist output."""
    os.makedirs(directory, exist_ok=True)
    lines = []
    for name in names:
        path = os.path.join(directory, f"{name}-{version}-x86_64.pkg.tar.zst")
        with open(path, "w") as f:
            f.write("")
        lines.append(path)
    return "\n".join(lines) + "\n"


def aur_pkg(name, version="1.0-1", **kw) -> Package:
    kw.setdefault("repository", "aur")
    return Package(name=name, version=version, **kw)


def repo_pkg(name, version="1.0-1", repository="extra", **kw) -> Package:
    return Package(name=name, version=version, repository=repository, **kw)


@pytest.fixture
def config(tmp_path):
    cfg = TandemConfig(locations=[])
    cfg.build_dir = str(tmp_path / "build")
    cfg.vcs_file = str(tmp_path / "vcs.json")
    cfg.pacman_db_path = str(tmp_path / "pacman")
    cfg.max_concurrent_download = 2
    return cfg


@pytest.fixture
def log(config):
    return Logger("test", config)


@pytest.fixture
def runner(log):
    return FakeRunner(log)


@pytest.fixture
def cmd(config, runner, log):
    return CmdBuilder(config, runner, log)
