# tandem/modules/vcs.py
"""
Commit fingerprints for development (-git) packages.

For every git source of an installed devel package we remember the commit
the remote branch pointed at when we last built it:

    {
        "foo-git": {
            "github.com/foo/foo.git": {"protocols": ["https"], "branch": "HEAD", "sha": "..."}
        }
    }

A package needs a rebuild when any of its remotes now points somewhere else.
The file is rewritten on every change (temp file + rename).
"""

from __future__ import annotations
import json
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from git import Git
from git.exc import CommandError as GitError

from tandem.modules import logger as _logger
from tandem.modules.errors import TandemError
from tandem.modules.multierror import MultiError

LS_REMOTE_TIMEOUT = 5
MAX_WORKERS = 8

Fingerprint = Dict[str, object]


class VCSStoreError(TandemError):
    pass


def parse_source(source: str) -> Tuple[str, str, List[str]]:
    """
    ``[name::]proto+url[#branch=x]`` -> (url, branch, protocols).

    Returns ("", "", []) for non-git sources and for sources pinned with
    ``#commit=`` or ``#tag=``.
    """
    source = source.split("::")[-1]
    parts = source.split("://", 1)
    if len(parts) != 2:
        return "", "", []

    protocols = parts[0].split("+", 1)
    if "git" not in protocols:
        return "", "", []
    protocols = protocols[-1:]

    rest = parts[1].split("#", 1)
    url, branch = "", ""
    if len(rest) == 2:
        fragment = rest[1].split("=", 1)
        if fragment[0] != "branch":
            return "", "", []
        if len(fragment) == 2:
            url, branch = rest[0], fragment[1]
    else:
        url, branch = rest[0], "HEAD"

    url = url.split("?")[0]
    branch = branch.split("?")[0]
    if not url or not branch:
        return "", "", []
    return url, branch, protocols


def git_ls_remote(url: str, branch: str, timeout: float = LS_REMOTE_TIMEOUT) -> str:
    """Commit ``branch`` points at on ``url``, "" when the remote can not be asked."""
    try:
        out = Git().ls_remote(url, branch, kill_after_timeout=timeout,
                              env={"GIT_TERMINAL_PROMPT": "0"})
    except GitError:
        return ""
    fields = out.split()
    if len(fields) < 2:
        return ""
    return fields[0]


class VCSStore:
    def __init__(self, path: str, log: Optional[_logger.Logger] = None,
                 ls_remote: Optional[Callable[[str, str], str]] = None,
                 max_workers: int = MAX_WORKERS):
        self.path = path
        self.log = log or _logger.Logger("tandem.vcs")
        self._ls_remote = ls_remote or git_ls_remote
        self.max_workers = max_workers
        self._lock = threading.Lock()
        self.store: Dict[str, Dict[str, Fingerprint]] = {}

    # -------------------------
    # persistence
    # -------------------------
    def load(self) -> "VCSStore":
        if not os.path.exists(self.path):
            self.store = {}
            return self
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise VCSStoreError(f"failed to read vcs file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise VCSStoreError(f"failed to read vcs file {self.path}: not a JSON object")
        self.store = data
        return self

    def save(self):
        """Write the whole store atomically. Callers hold the lock."""
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".vcs-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self.store, f, indent="\t", sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise VCSStoreError(f"failed to write vcs file {self.path}: {e}") from e

    # -------------------------
    # queries
    # -------------------------
    def _commit(self, url: str, fp: Fingerprint) -> str:
        protocols = fp.get("protocols") or []
        if not protocols:
            return ""
        return self._ls_remote(f"{protocols[-1]}://{url}", str(fp.get("branch") or "HEAD"))

    def needs_update(self, fingerprints: Dict[str, Fingerprint]) -> bool:
        """True as soon as one remote points at a commit we have not built."""
        if not fingerprints:
            return False
        ex = ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(fingerprints))))
        futures = {ex.submit(self._commit, url, fp): url for url, fp in fingerprints.items()}
        try:
            for fut in as_completed(futures):
                commit = fut.result()
                if commit and commit != fingerprints[futures[fut]].get("sha"):
                    return True
            return False
        finally:
            # running ls-remote calls are bounded by their own timeout
            ex.shutdown(wait=False, cancel_futures=True)

    def to_upgrade(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Tracked packages (optionally limited to ``names``) with new upstream commits."""
        wanted = set(names) if names is not None else None
        with self._lock:
            tracked = {n: dict(fps) for n, fps in self.store.items()
                       if wanted is None or n in wanted}
        if not tracked:
            return []

        out = []
        errs = MultiError()
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(tracked)))) as ex:
            futures = {ex.submit(self.needs_update, fps): name for name, fps in tracked.items()}
            for fut in as_completed(futures):
                err = fut.exception()
                if err is not None:
                    errs.add(VCSStoreError(f"{futures[fut]}: {err}"))
                elif fut.result():
                    out.append(futures[fut])
        err = errs.ret()
        if err is not None:
            raise err
        return sorted(out)

    def fingerprints(self, name: str) -> Dict[str, Fingerprint]:
        with self._lock:
            return dict(self.store.get(name, {}))

    # -------------------------
    # mutation
    # -------------------------
    def update(self, pkg_name: str, sources: Iterable[str]):
        """Record the current remote commit of every git source of ``pkg_name``."""
        parsed = []
        for source in sources:
            url, branch, protocols = parse_source(source)
            if url:
                parsed.append((url, branch, protocols))
        if not parsed:
            return

        def check(url, branch, protocols):
            commit = self._ls_remote(f"{protocols[-1]}://{url}", branch)
            if not commit:
                return
            with self._lock:
                infos = self.store.setdefault(pkg_name, {})
                current = infos.get(url)
                if current and current.get("sha") == commit:
                    return
                infos[url] = {"protocols": list(protocols), "branch": branch, "sha": commit}
                self.log.info(f"found git repo: {url}")
                self.save()

        errs = MultiError()
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(parsed)))) as ex:
            futures = [ex.submit(check, *p) for p in parsed]
            for fut in as_completed(futures):
                errs.add(fut.exception())
        err = errs.ret()
        if err is not None:
            raise err

    def remove_package(self, names: Iterable[str]) -> bool:
        with self._lock:
            changed = False
            for name in names:
                if name in self.store:
                    del self.store[name]
                    changed = True
            if changed:
                self.save()
            return changed

    def clean_orphans(self, installed: Iterable[str]) -> List[str]:
        """Forget packages that are no longer installed."""
        installed = set(installed)
        with self._lock:
            orphans = sorted(n for n in self.store if n not in installed)
        if orphans:
            self.remove_package(orphans)
        return orphans

    def __contains__(self, name):
        with self._lock:
            return name in self.store
