# tandem/modules/localdb.py
"""
Access to the local and sync package databases.

``PackageDB`` is the interface the resolver, installer and upgrade code
depend on. ``PacmanDB`` implements it by calling pacman (``-Qi``, ``-Sddp``,
``-T``, ``-Sg``, ``-Qm``, ``-Qu``) and parsing the C-locale output.
"""

from __future__ import annotations
import datetime
import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from tandem.modules import logger as _logger
from tandem.modules.errors import CommandError, TandemError
from tandem.modules.executor import CmdBuilder
from tandem.modules.package import Package, Reason
from tandem.modules.version import satisfies, split_db_from_name

_C_LOCALE = {"LC_ALL": "C"}

_QI_LISTS = {
    "Groups": "groups",
    "Provides": "provides",
    "Depends On": "depends",
    "Optional Deps": "opt_depends",
    "Conflicts With": "conflicts",
    "Replaces": "replaces",
}

_QU_RE = re.compile(r"^(\S+)\s+(\S+)\s+->\s+(\S+)(\s+\[ignored\])?$")


class PackageDBError(TandemError):
    pass


class PackageDB:
    """What the rest of tandem needs to know about installed and repo packages."""

    def local_package(self, name: str) -> Optional[Package]:
        raise NotImplementedError

    def installed_packages(self) -> Dict[str, Package]:
        raise NotImplementedError

    def local_satisfier_exists(self, dep: str) -> bool:
        raise NotImplementedError

    def sync_satisfier(self, dep: str) -> Optional[Package]:
        raise NotImplementedError

    def sync_package_from_db(self, db: str, name: str) -> Optional[Package]:
        raise NotImplementedError

    def package_group(self, name: str) -> List[Package]:
        raise NotImplementedError

    def foreign_packages(self) -> Dict[str, Package]:
        raise NotImplementedError

    def repo_upgrades(self) -> List[Tuple[Package, str]]:
        """(sync package, installed version) for every outdated repo package."""
        raise NotImplementedError

    def sync_package(self, name: str) -> Optional[Package]:
        return self.sync_satisfier(name)

    def local_version(self, name: str) -> str:
        pkg = self.local_package(name)
        return pkg.version if pkg else ""

    def is_correct_version_installed(self, name: str, version: str) -> bool:
        pkg = self.local_package(name)
        return pkg is not None and pkg.version == version

    def invalidate(self):
        """Forget cached answers after a transaction changed the system."""


def _parse_build_date(raw: str) -> int:
    raw = " ".join(raw.split())
    for fmt in ("%a %b %d %H:%M:%S %Y", "%a %d %b %Y %I:%M:%S %p %Z"):
        try:
            return int(datetime.datetime.strptime(raw, fmt).timestamp())
        except ValueError:
            continue
    return 0


def parse_info_blocks(text: str, repository: str = "") -> List[Package]:
    """Parse ``pacman -Qi`` / ``-Si`` output into packages."""
    packages: List[Package] = []
    fields: Dict[str, str] = {}
    last_key = None

    def flush():
        if "Name" in fields:
            packages.append(_package_from_fields(fields, repository))
        fields.clear()

    for line in text.splitlines():
        if not line.strip():
            flush()
            last_key = None
            continue
        if line.startswith(" ") and last_key:
            fields[last_key] += "  " + line.strip()
            continue
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        last_key = key.strip()
        fields[last_key] = value.strip()
    flush()
    return packages


def _package_from_fields(fields: Dict[str, str], repository: str) -> Package:
    def listed(key):
        raw = fields.get(key, "")
        if not raw or raw == "None":
            return []
        if key == "Optional Deps":
            return [entry.strip() for entry in raw.split("  ") if entry.strip()]
        return raw.split()

    pkg = Package(
        name=fields["Name"],
        version=fields.get("Version", ""),
        base=fields.get("Base", "") or fields["Name"],
        description=fields.get("Description", ""),
        url=fields.get("URL", "") if fields.get("URL") != "None" else "",
        repository=fields.get("Repository", repository),
        arch=[fields["Architecture"]] if fields.get("Architecture") else [],
        build_date=_parse_build_date(fields.get("Build Date", "")),
    )
    for key, attr in _QI_LISTS.items():
        setattr(pkg, attr, listed(key))
    reason = fields.get("Install Reason", "")
    if reason.startswith("Explicitly"):
        pkg.install_reason = Reason.EXPLICIT
    elif reason:
        pkg.install_reason = Reason.DEP
    return pkg


class PacmanDB(PackageDB):
    def __init__(self, config, cmd: CmdBuilder, log: Optional[_logger.Logger] = None):
        self.config = config
        self.cmd = cmd
        self.log = log or _logger.Logger("tandem.db", config)
        self._lock = threading.Lock()
        self._installed: Optional[Dict[str, Package]] = None
        self._sync_cache: Dict[str, Optional[Package]] = {}

    def _query(self, args: List[str], targets: Iterable[str] = (), check: bool = True):
        cmd = self.cmd.pacman(args, list(targets), no_confirm=False, root=False)
        cmd.env = dict(_C_LOCALE)
        return self.cmd.capture(cmd, check=check)

    def invalidate(self):
        with self._lock:
            self._installed = None
            self._sync_cache.clear()

    # -------------------------
    # local database
    # -------------------------
    def installed_packages(self) -> Dict[str, Package]:
        with self._lock:
            if self._installed is None:
                res = self._query(["-Qi"], check=False)
                if not res.ok() and res.stdout.strip():
                    raise PackageDBError(f"pacman -Qi failed: {res.stderr.strip()}")
                self._installed = {p.name: p for p in parse_info_blocks(res.stdout, "local")}
            return self._installed

    def local_package(self, name: str) -> Optional[Package]:
        return self.installed_packages().get(name)

    def local_satisfier_exists(self, dep: str) -> bool:
        # pacman -T prints the deps that are *not* satisfied
        res = self._query(["-T"], [dep], check=False)
        if res.returncode == 0:
            return True
        if res.returncode == 127:
            return False
        raise CommandError(res.command, res.returncode, res.stderr)

    def foreign_packages(self) -> Dict[str, Package]:
        res = self._query(["-Qm"], check=False)
        names = [line.split()[0] for line in res.stdout.splitlines() if line.strip()]
        installed = self.installed_packages()
        return {n: installed[n] for n in names if n in installed}

    # -------------------------
    # sync databases
    # -------------------------
    def sync_satisfier(self, dep: str) -> Optional[Package]:
        with self._lock:
            if dep in self._sync_cache:
                return self._sync_cache[dep]

        # -Sddp resolves provides for us and prints only the chosen package
        res = self._query(["-Sddp", "--print-format", "%r/%n"], [dep], check=False)
        pkg = None
        if res.ok() and res.stdout.strip():
            db, name = split_db_from_name(res.stdout.strip().splitlines()[0])
            pkg = self.sync_package_from_db(db, name)
            if pkg is not None and not pkg.satisfies(dep):
                pkg = None

        with self._lock:
            self._sync_cache[dep] = pkg
        return pkg

    def sync_package_from_db(self, db: str, name: str) -> Optional[Package]:
        target = f"{db}/{name}" if db else name
        res = self._query(["-Si"], [target], check=False)
        if not res.ok():
            return None
        pkgs = parse_info_blocks(res.stdout, db)
        return pkgs[0] if pkgs else None

    def package_group(self, name: str) -> List[Package]:
        res = self._query(["-Sg"], [name], check=False)
        if not res.ok():
            return []
        members = [line.split()[1] for line in res.stdout.splitlines() if len(line.split()) == 2]
        return [Package(name=m, groups=[name]) for m in members]

    def repo_upgrades(self) -> List[Tuple[Package, str]]:
        res = self._query(["-Qu"], check=False)
        out = []
        for line in res.stdout.splitlines():
            m = _QU_RE.match(line.strip())
            if not m or m.group(4):
                continue
            name, old, new = m.group(1), m.group(2), m.group(3)
            sync = self.sync_package(name) or Package(name=name, version=new)
            if not satisfies(f"{name}={new}", sync.name, sync.version):
                sync.version = new
            out.append((sync, old))
        return out
