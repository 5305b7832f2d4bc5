# tandem/modules/download.py
"""
download.py - fetch AUR package repositories before building.

- Clones ``<aur_url>/<base>.git`` into ``<build_dir>/<base>``.
- An existing clone is fetched and fast-forwarded instead.
- Bases are deduplicated; every base is handled by one worker of a bounded
  ThreadPoolExecutor.
- Every failure is collected, the caller gets one MultiError after all
  workers finished.
"""

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

from git import GitCommandError, InvalidGitRepositoryError, Repo

from tandem.modules import logger as _logger
from tandem.modules.errors import TandemError
from tandem.modules.multierror import MultiError


class DownloadError(TandemError):
    def __init__(self, base: str, reason: str):
        self.base = base
        super().__init__(f"failed to download {base}: {reason}")


class Downloader:
    def __init__(self, config, log: Optional[_logger.Logger] = None):
        self.config = config
        self.log = log or _logger.Logger("tandem.download", config)

    def repo_url(self, base: str) -> str:
        return f"{self.config.aur_url}/{base}.git"

    def _git_env(self) -> Dict[str, str]:
        return {"GIT_TERMINAL_PROMPT": "0"}

    def download_base(self, base: str, directory: str) -> bool:
        """Clone or update one base. Returns True when the checkout changed."""
        url = self.repo_url(base)
        try:
            if not os.path.isdir(os.path.join(directory, ".git")):
                self.log.info(f"cloning {base}")
                os.makedirs(os.path.dirname(directory) or ".", exist_ok=True)
                Repo.clone_from(url, directory, no_progress=True, env=self._git_env())
                return True

            repo = Repo(directory)
            before = repo.head.commit.hexsha if repo.head.is_valid() else None
            with repo.git.custom_environment(**self._git_env()):
                repo.remotes.origin.fetch()
                repo.git.merge("--no-edit", "--ff-only", "FETCH_HEAD")
            after = repo.head.commit.hexsha if repo.head.is_valid() else None
            if before != after:
                self.log.info(f"updated {base}")
            return before != after
        except (GitCommandError, InvalidGitRepositoryError, OSError, ValueError) as e:
            raise DownloadError(base, str(e)) from e

    def download(self, build_dirs: Dict[str, str], bases: Optional[Iterable[str]] = None) -> List[str]:
        """
        Sync every base in ``bases`` (default: all of ``build_dirs``) and
        return the bases whose checkout changed. Raises MultiError.
        """
        wanted = list(dict.fromkeys(bases if bases is not None else build_dirs))
        if not wanted:
            return []

        errs = MultiError()
        changed: List[str] = []
        workers = max(1, min(self.config.download_workers, len(wanted)))
        self.log.info(f"downloading {len(wanted)} package bases ({workers} workers)")

        with ThreadPoolExecutor(max_workers=workers) as ex:
            futures = {ex.submit(self.download_base, base, build_dirs[base]): base for base in wanted}
            for fut in as_completed(futures):
                base = futures[fut]
                try:
                    if fut.result():
                        changed.append(base)
                except DownloadError as e:
                    self.log.error(str(e))
                    errs.add(e)

        if errs.ret():
            raise errs
        return sorted(changed)
