# tandem/modules/executor.py
"""
Building and running external commands (pacman, makepkg, git).

``CmdBuilder`` turns structured requests into ``Command`` values, adding the
configured binaries, flags and privilege elevation. ``Runner`` executes them,
either capturing output or passing it through to the terminal. Tests swap the
runner for a fake and look at the recorded commands.
"""

import os
import subprocess
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from tandem.modules import logger as _logger
from tandem.modules.errors import CommandError

# pacman operations that touch the system and need root
_ROOT_OPS = ("-S", "-U", "-R", "-D")
# -S modifiers that only read the sync databases
_READ_ONLY_SYNC = {"-s", "--search", "-i", "--info", "-l", "--list", "-g", "--groups",
                   "-p", "--print"}

LOCK_POLL_SECONDS = 3


class Command:
    def __init__(self, argv: Sequence[str], cwd: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None):
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env

    def __repr__(self):
        where = f" (cwd={self.cwd})" if self.cwd else ""
        return f"Command({' '.join(self.argv)}{where})"

    def __str__(self):
        return " ".join(self.argv)


class CommandResult:
    """Result of an executed command."""

    def __init__(self, command, returncode, stdout, stderr, duration):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.duration = duration
        self.timestamp = datetime.now().isoformat()

    def ok(self):
        return self.returncode == 0

    def to_dict(self):
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": self.duration,
            "timestamp": self.timestamp,
        }


class Runner:
    def __init__(self, log: Optional[_logger.Logger] = None, dry_run: bool = False):
        self.log = log or _logger.Logger("tandem.exec")
        self.dry_run = dry_run

    def _env(self, cmd: Command) -> Optional[Dict[str, str]]:
        if cmd.env is None:
            return None
        env = os.environ.copy()
        env.update(cmd.env)
        return env

    def _run(self, cmd: Command, capture: bool, timeout: Optional[float], check: bool) -> CommandResult:
        self.log.debug(f"running: {cmd!r}")
        # captured commands only read state, they run even in dry-run mode
        if self.dry_run and not capture:
            self.log.info(f"[DRY-RUN] would run: {cmd}")
            return CommandResult(cmd.argv, 0, "", "", 0)

        start = time.time()
        try:
            proc = subprocess.run(
                cmd.argv,
                cwd=cmd.cwd,
                env=self._env(cmd),
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.PIPE if capture else None,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(cmd.argv, -1, f"timed out after {e.timeout}s") from e
        except OSError as e:
            raise CommandError(cmd.argv, 127, str(e)) from e

        result = CommandResult(cmd.argv, proc.returncode, proc.stdout or "", proc.stderr or "",
                               time.time() - start)
        if check and not result.ok():
            raise CommandError(cmd.argv, result.returncode, result.stderr.strip())
        return result

    def capture(self, cmd: Command, timeout: Optional[float] = None, check: bool = True) -> CommandResult:
        return self._run(cmd, capture=True, timeout=timeout, check=check)

    def show(self, cmd: Command, timeout: Optional[float] = None) -> CommandResult:
        """Run with output going straight to the terminal."""
        return self._run(cmd, capture=False, timeout=timeout, check=True)


def pacman_needs_root(args: Sequence[str]) -> bool:
    if not args:
        return False
    op = args[0]
    if not any(op.startswith(r) for r in _ROOT_OPS):
        return False
    if op.startswith("-S"):
        # -Ss, -Si, ... and their long forms only read
        short = set(f"-{c}" for c in op[2:])
        if short & _READ_ONLY_SYNC or any(a in _READ_ONLY_SYNC for a in args[1:]):
            return False
    return True


class CmdBuilder:
    def __init__(self, config, runner: Optional[Runner] = None, log: Optional[_logger.Logger] = None):
        self.config = config
        self.log = log or _logger.Logger("tandem.exec", config)
        self.runner = runner or Runner(self.log)
        self.makepkg_flags: List[str] = list(config.makepkg_flags)

    # -------------------------
    # builders
    # -------------------------
    def git(self, directory: Optional[str], *args: str) -> Command:
        argv = [self.config.git_bin] + list(self.config.git_flags)
        if directory:
            argv += ["-C", directory]
        argv += list(args)
        return Command(argv, env={"GIT_TERMINAL_PROMPT": "0"})

    def makepkg(self, directory: str, *args: str) -> Command:
        argv = [self.config.makepkg_bin] + list(self.makepkg_flags)
        if self.config.makepkg_conf:
            argv += ["--config", self.config.makepkg_conf]
        argv += list(args)
        return Command(argv, cwd=directory)

    def add_makepkg_flag(self, flag: str):
        self.makepkg_flags.append(flag)

    def pacman(self, args: Sequence[str], targets: Sequence[str] = (),
               no_confirm: Optional[bool] = None, root: Optional[bool] = None) -> Command:
        """
        ``pacman <args> [--noconfirm] --config <conf> -- <targets>``, behind
        sudo when the operation changes the system and we are not root.
        """
        if no_confirm is None:
            no_confirm = self.config.no_confirm
        if root is None:
            root = pacman_needs_root(args)

        argv = [self.config.pacman_bin] + list(args)
        if no_confirm:
            argv.append("--noconfirm")
        argv += ["--config", self.config.pacman_conf, "--"]
        argv += list(targets)

        if root:
            self.wait_lock()
            if os.geteuid() != 0:
                argv = [self.config.sudo_bin] + list(self.config.sudo_flags) + argv
        return Command(argv)

    def wait_lock(self, poll: float = LOCK_POLL_SECONDS):
        """Block while another pacman holds the database lock."""
        lock = os.path.join(self.config.pacman_db_path, "db.lck")
        if not os.path.exists(lock):
            return
        self.log.warning(f"{lock} is present, there may be another pacman running; waiting")
        while os.path.exists(lock):
            time.sleep(poll)

    # -------------------------
    # execution
    # -------------------------
    def show(self, cmd: Command, timeout: Optional[float] = None) -> CommandResult:
        return self.runner.show(cmd, timeout=timeout)

    def capture(self, cmd: Command, timeout: Optional[float] = None, check: bool = True) -> CommandResult:
        return self.runner.capture(cmd, timeout=timeout, check=check)
