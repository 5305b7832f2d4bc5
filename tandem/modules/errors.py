# tandem/modules/errors.py
"""
Base exception types shared between modules.

Each module declares its own ``XxxError`` subclasses next to the code that
raises them; only the root and the command failure live here because every
layer can see them.
"""

from __future__ import annotations
from typing import List, Optional


class TandemError(Exception):
    """Root of every error raised by tandem."""


class CommandError(TandemError):
    """An external command (pacman, makepkg, git) exited with a non-zero status."""

    def __init__(self, command: List[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        msg = f"command failed ({returncode}): {' '.join(self.command)}"
        if self.stderr:
            msg += f"\n{self.stderr}"
        super().__init__(msg)


def exit_code_for(err: Optional[BaseException]) -> int:
    """Exit status mirroring the package manager when it caused the failure."""
    if err is None:
        return 0
    seen = set()
    stack = [err]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        if isinstance(cur, CommandError) and cur.returncode > 0:
            return cur.returncode
        stack.extend(getattr(cur, "errors", []) or [])
        if cur.__cause__ is not None:
            stack.append(cur.__cause__)
    return 1
