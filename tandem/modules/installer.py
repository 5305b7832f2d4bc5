# tandem/modules/installer.py
"""
Installer: executes an InstallPlan layer by layer.

Layers are attempted from 0 (packages without prerequisites) upwards, one at
a time:

 - repo packages of the layer go through a single ``pacman -S``, then their
   install reason is stamped with ``pacman -D``
 - source packages are prepared and built with makepkg (or skipped, see
   ``decide_build``), all archives of the layer go through a single
   ``pacman -U``, then reasons are stamped

When a layer fails, its packages are merged into the next layer and tried
again together with it (rollup). The last layer is tolerant: a package that
fails to build there is recorded in ``failed_and_ignored`` and the rest of the
layer is still installed.
"""

from __future__ import annotations
import enum
import os
from typing import Dict, Iterable, List, Optional, Set, Tuple

from tandem.modules import logger as _logger
from tandem.modules.config import RebuildMode, TargetMode
from tandem.modules.errors import CommandError, TandemError
from tandem.modules.executor import CmdBuilder
from tandem.modules.hooks import HookManager, PostInstallHook
from tandem.modules.localdb import PackageDB
from tandem.modules.multierror import MultiError
from tandem.modules.package import PackageRef, Reason, Source
from tandem.modules.srcinfo import Srcinfo
from tandem.modules.vcs import VCSStore

Layer = Dict[str, PackageRef]


# ---------------------------
# Errors
# ---------------------------
class BuildError(TandemError):
    pass


class NoPkgDestsFoundError(BuildError):
    def __init__(self, directory: str):
        self.directory = directory
        super().__init__(f"could not find any package archives listed in {directory}")


class PkgDestNotInListError(BuildError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"could not find {name} in the package list")


class FindPkgDestError(BuildError):
    def __init__(self, name: str, pkgdest: str):
        self.name = name
        self.pkgdest = pkgdest
        super().__init__(f"the PKGDEST for {name} is listed by makepkg but does not exist: {pkgdest}")


class InstallError(TandemError):
    pass


class RepoInstallError(InstallError):
    pass


class SetPkgReasonError(InstallError):
    def __init__(self, explicit: bool):
        self.explicit = explicit
        kind = "explicit" if explicit else "dependency"
        super().__init__(f"error updating package install reason to {kind}")


class FailedAndIgnoredError(TandemError):
    def __init__(self, errors: Dict[str, BaseException]):
        self.failed = dict(errors)
        self.errors = list(errors.values())
        lines = ["packages that need manual intervention:"]
        lines += [f"\t{name} - {err}" for name, err in sorted(self.failed.items())]
        super().__init__("\n".join(lines))


# ---------------------------
# Build decision
# ---------------------------
class BuildAction(enum.Enum):
    SKIP = "skip"          # nothing to install for this base
    PACKAGE = "package"    # archives already on disk, reuse them
    BUILD = "build"        # full makepkg run


MAKEPKG_PREPARE = ["--nobuild", "-fC", "--ignorearch"]
MAKEPKG_ARGS = {
    BuildAction.SKIP: ["-c", "--nobuild", "--noextract", "--ignorearch"],
    BuildAction.PACKAGE: ["-c", "--nobuild", "--noextract", "--ignorearch"],
    BuildAction.BUILD: ["-cf", "--noconfirm", "--noextract", "--noprepare", "--holdver", "--ignorearch"],
}


def skip_already_built(rebuild: RebuildMode, is_target: bool, archives_built: bool) -> bool:
    if not archives_built:
        return False
    if rebuild == RebuildMode.NO:
        return True
    if rebuild in (RebuildMode.YES, RebuildMode.TREE):
        return not is_target
    return False


def decide_build(needed: bool, rebuild: RebuildMode, installed_match: bool,
                 archives_built: bool, is_target: bool, download_only: bool = False) -> BuildAction:
    if (needed and installed_match) or download_only:
        return BuildAction.SKIP
    if skip_already_built(rebuild, is_target, archives_built):
        return BuildAction.PACKAGE
    return BuildAction.BUILD


def parse_package_list(output: str) -> Tuple[Dict[str, str], str]:
    """
    ``makepkg --packagelist`` output -> ({pkgname: archive path}, version).

    Archive names are ``pkgname-pkgver-pkgrel-arch.pkgext``; pkgname may
    contain dashes, the three trailing fields can not.
    """
    pkgdests: Dict[str, str] = {}
    version = ""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        fields = os.path.basename(line).split("-")
        if len(fields) < 4:
            raise BuildError(f"can not find package name: {line}")
        pkgdests["-".join(fields[:-3])] = line
        version = "-".join(fields[-3:-1])
    return pkgdests, version


def merge_layers(layer: Layer, failed: Layer) -> Layer:
    """Entries of the failed layer win on name collision."""
    merged = dict(layer)
    merged.update(failed)
    return merged


# ---------------------------
# Installer
# ---------------------------
class Installer:
    def __init__(self, config, cmd: CmdBuilder, db: PackageDB, vcs: VCSStore,
                 log: Optional[_logger.Logger] = None, hooks: Optional[HookManager] = None):
        self.config = config
        self.cmd = cmd
        self.db = db
        self.vcs = vcs
        self.log = log or _logger.Logger("tandem.installer", config)
        self.hooks = hooks or HookManager(self.log.child("hooks"))
        self.failed_and_ignored: Dict[str, BaseException] = {}
        self.targets: Set[str] = set()
        self.excluded: List[str] = []
        self.srcinfos: Dict[str, Srcinfo] = {}
        self.installed_sources: List[str] = []

    # ---------------------------
    # hooks and results
    # ---------------------------
    def add_post_install_hook(self, hook: Optional[PostInstallHook]):
        self.hooks.register(hook)

    def run_post_install_hooks(self):
        self.hooks.run()

    def compile_failed_and_ignored(self) -> Tuple[Dict[str, BaseException], Optional[FailedAndIgnoredError]]:
        if not self.failed_and_ignored:
            return self.failed_and_ignored, None
        return self.failed_and_ignored, FailedAndIgnoredError(self.failed_and_ignored)

    # ---------------------------
    # main loop
    # ---------------------------
    def install(self, layers: List[Layer], build_dirs: Dict[str, str],
                targets: Iterable[str] = (), srcinfos: Optional[Dict[str, Srcinfo]] = None,
                excluded: Iterable[str] = ()):
        """Run every layer; raises MultiError when the last layer fails."""
        self.targets = set(targets)
        self.srcinfos = dict(srcinfos or {})
        self.excluded = list(excluded)
        layers = [dict(layer) for layer in layers]

        errs = MultiError()
        for i, layer in enumerate(layers):
            last = i == len(layers) - 1
            try:
                self.handle_layer(layer, build_dirs, last)
            except TandemError as e:
                errs.add(e)
                if last:
                    raise errs
                self.log.warning(f"failed to install layer, rolling up to next layer: {e}")
                layers[i + 1] = merge_layers(layers[i + 1], layer)
                continue
            finally:
                # cached local queries are stale once pacman ran
                self.db.invalidate()
            if last:
                return

    def handle_layer(self, layer: Layer, build_dirs: Dict[str, str], last: bool):
        name_to_base: Dict[str, str] = {}
        sync_deps, sync_exp, sync_groups = set(), set(), set()
        src_deps, src_exp = set(), set()
        upgrade_sync = False

        for name, ref in layer.items():
            if ref.source.is_source_build:
                name_to_base[name] = ref.package_base or name
                if ref.reason == Reason.EXPLICIT and not self.config.as_deps:
                    src_exp.add(name)
                else:
                    src_deps.add(name)
            elif ref.source == Source.REPO:
                if ref.is_upgrade:
                    # pacman -Su picks it up
                    upgrade_sync = True
                    continue
                composite = f"{ref.repository}/{name}" if ref.repository else name
                if ref.is_group:
                    sync_groups.add(composite)
                elif ref.reason == Reason.EXPLICIT and not self.config.as_deps:
                    sync_exp.add(composite)
                else:
                    sync_deps.add(composite)

        self.log.debug(f"sync deps={sorted(sync_deps)} exp={sorted(sync_exp)} groups={sorted(sync_groups)} "
                       f"source deps={sorted(src_deps)} exp={sorted(src_exp)} upgrade={upgrade_sync}")

        try:
            self.install_sync_packages(sync_deps, sync_exp, sync_groups, upgrade_sync)
        except (CommandError, InstallError) as e:
            raise RepoInstallError(f"error installing repo packages: {e}") from e

        self.install_source_packages(src_deps, src_exp, name_to_base, build_dirs, last)

    # ---------------------------
    # repo packages
    # ---------------------------
    def install_sync_packages(self, deps: Set[str], exp: Set[str], groups: Set[str], upgrade: bool):
        targets = sorted(deps | exp | groups)
        if not targets and not upgrade:
            return

        args = ["-S"]
        if upgrade and self.config.mode != TargetMode.AUR:
            args = ["-Su"]
        if self.config.needed:
            args.append("--needed")
        if self.excluded:
            args += ["--ignore", ",".join(self.excluded)]

        self.cmd.show(self.cmd.pacman(args, targets))
        self.set_pkg_reason(sorted(deps), explicit=False)
        self.set_pkg_reason(sorted(exp), explicit=True)

    # ---------------------------
    # source packages
    # ---------------------------
    def is_dep(self, name: str, exp_names: Set[str]) -> bool:
        if self.config.as_deps:
            return True
        if self.config.as_explicit:
            return False
        return name not in exp_names

    def install_source_packages(self, deps: Set[str], exp: Set[str], name_to_base: Dict[str, str],
                                build_dirs: Dict[str, str], last: bool):
        names = sorted(deps | exp)
        if not names:
            return

        archives: List[str] = []
        reason_deps: List[str] = []
        reason_exp: List[str] = []
        installed: List[str] = []
        built: Dict[str, Dict[str, str]] = {}

        for name in names:
            base = name_to_base[name]
            try:
                if base not in built:
                    directory = build_dirs.get(base)
                    if directory is None:
                        raise BuildError(f"no build directory for {base}")
                    is_target = any(n in self.targets for n, b in name_to_base.items() if b == base)
                    built[base] = self.build_pkg(directory, base, is_target)
                pkgdests = built[base]
                if not pkgdests:
                    self.log.warning(f"nothing to install for {base}")
                    continue
                new_archives, has_debug = self.get_new_targets(pkgdests, name)
            except TandemError as e:
                if not last:
                    raise BuildError(f"error making: {base} - {e}") from e
                self.failed_and_ignored[name] = e
                self.log.error(f"error making: {base} - {e}")
                continue

            archives.extend(new_archives)
            installed.append(name)
            if self.is_dep(name, exp):
                reason_deps.append(name)
            else:
                reason_exp.append(name)
            if has_debug:
                reason_deps.append(f"{name}-debug")

        try:
            self.install_pkg_archive(archives)
        except CommandError as e:
            raise InstallError(f"error installing: {' '.join(archives)}") from e
        self.set_install_reason(reason_deps, reason_exp)

        if archives:
            self.installed_sources.extend(installed)
            self.update_vcs(installed, name_to_base)

    def build_pkg(self, directory: str, base: str, is_target: bool) -> Dict[str, str]:
        """Prepare and (maybe) build one base; returns {pkgname: archive} to install."""
        # pkgver bump
        self.cmd.show(self.cmd.makepkg(directory, *MAKEPKG_PREPARE))

        pkgdests, version = self.package_list(directory)
        installed_match = self.config.needed and all(
            self.db.is_correct_version_installed(name, version) for name in pkgdests)
        archives_built = all(os.path.exists(path) for path in pkgdests.values())

        action = decide_build(self.config.needed, self.config.rebuild, installed_match,
                              archives_built, is_target, self.config.download_only)
        if action == BuildAction.SKIP:
            pkgdests = {}
            if not self.config.download_only:
                self.log.warning(f"{base}-{version} is up to date -- skipping")
        elif action == BuildAction.PACKAGE:
            self.log.warning(f"{base}-{version} already made -- skipping build")
        else:
            self.log.info(f"building {base}-{version}")

        self.cmd.show(self.cmd.makepkg(directory, *MAKEPKG_ARGS[action]))

        if self.config.download_only:
            return {}
        return pkgdests

    def package_list(self, directory: str) -> Tuple[Dict[str, str], str]:
        res = self.cmd.capture(self.cmd.makepkg(directory, "--packagelist"))
        pkgdests, version = parse_package_list(res.stdout)
        if not pkgdests:
            raise NoPkgDestsFoundError(directory)
        return pkgdests, version

    def get_new_targets(self, pkgdests: Dict[str, str], name: str) -> Tuple[List[str], bool]:
        pkgdest = pkgdests.get(name)
        if pkgdest is None:
            raise PkgDestNotInListError(name)
        if not os.path.exists(pkgdest):
            raise FindPkgDestError(name, pkgdest)

        archives = [pkgdest]
        debug = pkgdests.get(f"{name}-debug")
        has_debug = debug is not None and os.path.exists(debug)
        if has_debug:
            archives.append(debug)
        return archives, has_debug

    def install_pkg_archive(self, archives: List[str]):
        if not archives:
            return
        args = ["-U"]
        if self.config.needed:
            args.append("--needed")
        self.cmd.show(self.cmd.pacman(args, archives))

    def set_install_reason(self, deps: List[str], exps: List[str]):
        self.set_pkg_reason(deps, explicit=False)
        self.set_pkg_reason(exps, explicit=True)

    def set_pkg_reason(self, names: List[str], explicit: bool):
        if not names:
            return
        # "core/foo" targets from the sync transaction
        plain = [n.split("/", 1)[-1] for n in names]
        flag = "--asexplicit" if explicit else "--asdeps"
        try:
            self.cmd.show(self.cmd.pacman(["-D", "-q", flag], plain, no_confirm=False))
        except CommandError as e:
            raise SetPkgReasonError(explicit) from e

    def update_vcs(self, names: List[str], name_to_base: Dict[str, str]):
        """Remember the upstream commits the just-installed packages were built from."""
        if self.config.download_only:
            return
        for name in names:
            info = self.srcinfos.get(name_to_base[name])
            if info is None:
                continue
            try:
                self.vcs.update(name, info.sources())
            except MultiError as e:
                self.log.error(f"could not record fingerprints for {name}: {e}")
