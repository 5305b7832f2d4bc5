# tandem/modules/hooks.py
from typing import Callable, Dict, Iterable, List, Optional

from tandem.modules import logger as _logger
from tandem.modules.errors import TandemError
from tandem.modules.executor import CmdBuilder
from tandem.modules.multierror import MultiError

PostInstallHook = Callable[[], None]


class HookManager:
    """
    Post-install hooks.

    Hooks run in registration order once the installer is done. A failing
    hook does not stop the others; every failure ends up in one MultiError.
    """

    def __init__(self, log: Optional[_logger.Logger] = None):
        self.hooks: List[PostInstallHook] = []
        self.log = log or _logger.Logger("tandem.hooks")

    # ---------------------------------------------------
    # registration
    # ---------------------------------------------------
    def register(self, hook: Optional[PostInstallHook]):
        if hook is None:
            return
        self.hooks.append(hook)
        self.log.debug(f"post-install hook registered: {getattr(hook, '__name__', hook)}")

    # ---------------------------------------------------
    # execution
    # ---------------------------------------------------
    def run(self):
        errs = MultiError()
        for hook in self.hooks:
            name = getattr(hook, "__name__", repr(hook))
            try:
                hook()
            except TandemError as e:
                self.log.error(f"hook {name} failed: {e}")
                errs.add(e)
        if errs.ret():
            raise errs

    def list_hooks(self) -> List[str]:
        return [getattr(h, "__name__", repr(h)) for h in self.hooks]


# ---------------------------------------------------
# built-in hooks
# ---------------------------------------------------
def remove_make_deps_hook(cmd: CmdBuilder, names: Iterable[str]) -> Optional[PostInstallHook]:
    """Uninstall packages that were only pulled in to build something."""
    names = sorted(set(names))
    if not names:
        return None

    def remove_make_deps():
        cmd.log.info(f"removing make dependencies: {', '.join(names)}")
        cmd.show(cmd.pacman(["-Rsu"], names))

    return remove_make_deps


def clean_build_dirs_hook(cmd: CmdBuilder, build_dirs: Dict[str, str]) -> Optional[PostInstallHook]:
    """Reset every build checkout, keeping built archives."""
    if not build_dirs:
        return None

    def clean_build_dirs():
        errs = MultiError()
        for base, directory in sorted(build_dirs.items()):
            cmd.log.debug(f"cleaning {base}")
            try:
                cmd.show(cmd.git(directory, "reset", "--hard", "HEAD"))
                cmd.show(cmd.git(directory, "clean", "-fx", "--exclude", "*.pkg.*"))
            except TandemError as e:
                errs.add(e)
        if errs.ret():
            raise errs

    return clean_build_dirs
