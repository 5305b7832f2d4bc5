# tandem/modules/upgrade.py
"""
Upgrade discovery.

 - repo packages: whatever ``pacman -Qu`` reports
 - foreign packages: looked up on the AUR, newer version (or, with
   ``time_update``, a newer last-modified than our build date) is an upgrade
 - devel packages: tracked in the VCSStore and upstream moved on

Everything found is put in a DependencyGraph through the resolver so that
new dependencies of upgraded packages are picked up too.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from tandem.modules import logger as _logger
from tandem.modules.aur import AURClient
from tandem.modules.graph import DependencyGraph
from tandem.modules.localdb import PackageDB
from tandem.modules.package import Package, PackageRef, Reason, Source
from tandem.modules.resolver import Grapher
from tandem.modules.vcs import VCSStore
from tandem.modules.version import vercmp

LATEST_COMMIT = "latest-commit"


@dataclass
class Upgrade:
    name: str
    base: str
    repository: str
    local_version: str
    remote_version: str
    reason: Reason = Reason.EXPLICIT
    is_devel: bool = False

    @property
    def source(self) -> Source:
        return Source.AUR if self.repository == "aur" else Source.REPO


def _reason_of(pkg: Package) -> Reason:
    return Reason.DEP if pkg.install_reason == Reason.DEP else Reason.EXPLICIT


class UpgradeService:
    def __init__(self, config, db: PackageDB, aur: AURClient, vcs: VCSStore, grapher: Grapher,
                 log: Optional[_logger.Logger] = None):
        self.config = config
        self.db = db
        self.aur = aur
        self.vcs = vcs
        self.grapher = grapher
        self.log = log or _logger.Logger("tandem.upgrade", config)
        self.ignore = set(config.ignore)
        self._aurdata: Dict[str, Package] = {}

    def _ignored(self, name: str, local: str, remote: str) -> bool:
        if name in self.ignore:
            self.log.warning(f"{name}: ignoring package upgrade ({local} => {remote})")
            return True
        return False

    # -------------------------
    # discovery
    # -------------------------
    def up_repo(self) -> List[Upgrade]:
        if not self.config.mode.at_least_repo():
            return []
        ups = []
        for pkg, local_version in self.db.repo_upgrades():
            if self._ignored(pkg.name, local_version, pkg.version):
                continue
            local = self.db.local_package(pkg.name)
            ups.append(Upgrade(
                name=pkg.name, base=pkg.base, repository=pkg.repository,
                local_version=local_version, remote_version=pkg.version,
                reason=_reason_of(local) if local else Reason.EXPLICIT))
        return ups

    def up_aur(self, remote: Dict[str, Package], aurdata: Dict[str, Package]) -> List[Upgrade]:
        ups = []
        for name, local in sorted(remote.items()):
            aur_pkg = aurdata.get(name)
            if aur_pkg is None:
                continue
            newer = vercmp(local.version, aur_pkg.version) < 0
            if not newer and self.config.time_update:
                newer = aur_pkg.last_modified > local.build_date > 0
            if not newer:
                continue
            if self._ignored(name, local.version, aur_pkg.version):
                continue
            ups.append(Upgrade(
                name=name, base=aur_pkg.base, repository="aur",
                local_version=local.version, remote_version=aur_pkg.version,
                reason=_reason_of(local)))
        return ups

    def up_devel(self, remote: Dict[str, Package], aurdata: Dict[str, Package],
                 skip: Iterable[str] = ()) -> List[Upgrade]:
        skip = set(skip)
        ups = []
        for name in self.vcs.to_upgrade([n for n in remote if n not in skip]):
            aur_pkg = aurdata.get(name)
            if aur_pkg is None:
                self.log.warning(f"ignoring package devel upgrade (no AUR info found): {name}")
                continue
            local = remote[name]
            if self._ignored(name, local.version, LATEST_COMMIT):
                continue
            ups.append(Upgrade(
                name=name, base=aur_pkg.base, repository="aur",
                local_version=local.version, remote_version=LATEST_COMMIT,
                reason=_reason_of(local), is_devel=True))
        return ups

    def list_upgrades(self) -> List[Upgrade]:
        ups = self.up_repo()
        self._aurdata = {}
        if not self.config.mode.at_least_aur():
            return ups

        self.log.info("searching AUR for updates...")
        remote = self.db.foreign_packages()
        self._aurdata = self.aur.info(sorted(remote))
        aur_ups = self.up_aur(remote, self._aurdata)
        ups += aur_ups

        if self.config.devel:
            self.log.info("checking development packages...")
            ups += self.up_devel(remote, self._aurdata, skip=[u.name for u in aur_ups])
            orphans = self.vcs.clean_orphans(remote)
            if orphans:
                self.log.debug(f"forgot fingerprints of {', '.join(orphans)}")

        missing = sorted(set(remote) - set(self._aurdata))
        if missing:
            self.log.warning(f"packages not in the AUR: {', '.join(missing)}")
        return ups

    # -------------------------
    # graph
    # -------------------------
    def graph_upgrades(self, graph: Optional[DependencyGraph] = None,
                       exclude: Iterable[str] = ()) -> DependencyGraph:
        graph = graph if graph is not None else DependencyGraph()
        for up in self.list_upgrades():
            ref = PackageRef(
                name=up.name, source=up.source, reason=up.reason,
                version=up.remote_version, local_version=up.local_version,
                package_base=up.base if up.source == Source.AUR else None,
                repository=up.repository, is_upgrade=True, is_devel=up.is_devel)
            if up.source == Source.AUR:
                self.grapher.graph_aur_target(self._aurdata[up.name], ref=ref, graph=graph)
            else:
                pkg = self.db.sync_package(up.name) or Package(name=up.name, version=up.remote_version,
                                                               repository=up.repository)
                self.grapher.graph_sync_pkg(pkg, ref=ref, graph=graph)

        for name in exclude:
            removed = graph.prune(name)
            if removed:
                self.log.info(f"excluded from upgrade: {', '.join(removed)}")
        return graph
