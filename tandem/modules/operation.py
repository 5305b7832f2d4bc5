# tandem/modules/operation.py
"""
End-to-end sync: resolve -> check -> plan -> download -> install -> hooks.

    op = SyncOperation(config, db, aur, cmd, vcs)
    op.run(["yay", "extra/ripgrep"])
    op.run([], upgrade=True, exclude=["linux"])
"""

from __future__ import annotations
import os
from typing import Callable, Dict, Iterable, List, Optional, Set

from tandem.modules import logger as _logger
from tandem.modules.aur import AURClient
from tandem.modules.download import Downloader
from tandem.modules.errors import TandemError
from tandem.modules.executor import CmdBuilder
from tandem.modules.graph import DependencyGraph
from tandem.modules.hooks import HookManager, clean_build_dirs_hook, remove_make_deps_hook
from tandem.modules.installer import Installer
from tandem.modules.localdb import PackageDB
from tandem.modules.multierror import MultiError
from tandem.modules.package import Reason, Source
from tandem.modules.planner import InstallPlan, Planner
from tandem.modules.resolver import Grapher, ProviderSelector, to_target
from tandem.modules.srcinfo import Srcinfo, SrcinfoError, load_srcinfo
from tandem.modules.upgrade import UpgradeService
from tandem.modules.vcs import VCSStore

ConfirmCallback = Callable[[InstallPlan], bool]


class OperationAborted(TandemError):
    pass


class SyncOperation:
    def __init__(self, config, db: PackageDB, aur: AURClient, cmd: CmdBuilder, vcs: VCSStore,
                 log: Optional[_logger.Logger] = None,
                 provider_selector: Optional[ProviderSelector] = None,
                 confirm: Optional[ConfirmCallback] = None,
                 downloader: Optional[Downloader] = None):
        self.config = config
        self.db = db
        self.aur = aur
        self.cmd = cmd
        self.vcs = vcs
        self.log = log or _logger.Logger("tandem", config)
        self.confirm = confirm
        self.grapher = Grapher(config, db, aur, self.log.child("resolver"), provider_selector)
        self.planner = Planner(config, self.log.child("planner"))
        self.downloader = downloader or Downloader(config, self.log.child("download"))
        self.hooks = HookManager(self.log.child("hooks"))
        self.installer = Installer(config, cmd, db, vcs, self.log.child("installer"), self.hooks)
        self.graph: Optional[DependencyGraph] = None
        self.plan: Optional[InstallPlan] = None
        self.conflicts: Dict[str, Set[str]] = {}

    # -------------------------
    # stages
    # -------------------------
    def resolve(self, targets: List[str], upgrade: bool = False,
                exclude: Iterable[str] = (), srcinfo_dirs: Iterable[str] = ()) -> DependencyGraph:
        graph = DependencyGraph()
        if upgrade:
            UpgradeService(self.config, self.db, self.aur, self.vcs, self.grapher,
                           self.log.child("upgrade")).graph_upgrades(graph, exclude=exclude)
        for directory in srcinfo_dirs:
            self.grapher.graph_from_srcinfo(os.path.abspath(directory), load_srcinfo(directory), graph)
        if targets:
            self.grapher.graph_from_targets(targets, graph)
        return graph

    def load_srcinfos(self, plan: InstallPlan) -> Dict[str, Srcinfo]:
        srcinfos: Dict[str, Srcinfo] = {}
        errs = MultiError()
        for base, directory in sorted(plan.build_dirs.items()):
            try:
                srcinfos[base] = load_srcinfo(directory)
            except SrcinfoError as e:
                errs.add(e)
        if errs.ret():
            raise errs
        return srcinfos

    def _register_hooks(self, plan: InstallPlan):
        if self.config.remove_make and not self.config.download_only:
            make_only = [ref.name for ref in plan.refs()
                         if ref.reason == Reason.MAKE_DEP and not ref.local_version
                         and ref.source in (Source.REPO, Source.AUR)]
            self.installer.add_post_install_hook(remove_make_deps_hook(self.cmd, make_only))
        if self.config.clean_after:
            aur_dirs = {base: d for base, d in plan.build_dirs.items()
                        if d.startswith(self.config.build_dir)}
            self.installer.add_post_install_hook(clean_build_dirs_hook(self.cmd, aur_dirs))

    # -------------------------
    # run
    # -------------------------
    def prepare(self, targets: List[str], upgrade: bool = False, exclude: Iterable[str] = (),
                srcinfo_dirs: Iterable[str] = ()) -> Optional[InstallPlan]:
        """Resolve and check everything; None when there is nothing to do."""
        graph = self.resolve(targets, upgrade=upgrade, exclude=exclude, srcinfo_dirs=srcinfo_dirs)
        self.graph = graph
        if len(graph) == 0:
            return None

        self.grapher.check_missing(graph)
        self.conflicts = self.grapher.check_conflicts(graph)

        self.plan = self.planner.plan(graph)
        return self.plan

    def run(self, targets: List[str], upgrade: bool = False, exclude: Iterable[str] = (),
            srcinfo_dirs: Iterable[str] = ()):
        """
        Resolve and install ``targets`` (plus upgrades when asked). Raises the
        aggregated error when something could not be installed.
        """
        exclude = list(exclude)
        plan = self.prepare(targets, upgrade=upgrade, exclude=exclude, srcinfo_dirs=srcinfo_dirs)
        if plan is None:
            self.log.success("there is nothing to do")
            return
        if self.confirm is not None and not self.confirm(plan):
            raise OperationAborted("aborted by user")

        aur_bases = sorted({ref.package_base or ref.name for ref in plan.refs()
                            if ref.source == Source.AUR})
        self.downloader.download(plan.build_dirs, aur_bases)
        srcinfos = self.load_srcinfos(plan)

        self._register_hooks(plan)

        errs = MultiError()
        try:
            self.installer.install(plan.layers, plan.build_dirs,
                                   targets=[to_target(t).name for t in targets],
                                   srcinfos=srcinfos, excluded=exclude)
        except MultiError as e:
            errs.add(e)

        _, failed = self.installer.compile_failed_and_ignored()
        if failed is not None:
            self.log.error(str(failed))
            errs.add(failed)

        try:
            self.installer.run_post_install_hooks()
        except MultiError as e:
            errs.add(e)

        if errs.ret():
            raise errs
        self.log.success("transaction completed")
